"""
Read-only data sources and the job runner consumed by this package.
Persistence and transport live behind these interfaces.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from .schema import Job, Message, Plan


class PlanSource(ABC):
    """Plan lookup; ownership is checked against Plan.owner_id."""

    @abstractmethod
    async def get_plan(self, plan_id: str) -> Optional[Plan]:
        """Return the plan or None if it does not exist (or is deleted)."""
        pass

    @abstractmethod
    async def list_plans(self) -> List[Plan]:
        """Return every non-deleted plan."""
        pass


class MessagesSource(ABC):

    @abstractmethod
    async def get_recent_messages(self, conversation_id: str, limit: int) -> List[Message]:
        """Return up to `limit` most recent messages, oldest first."""
        pass

    async def get_active_reference_ids(self, plan_id: str, since: datetime) -> Set[str]:
        """Ids of conversations and messages of the plan with activity since `since`."""
        return set()


class JobsSource(ABC):

    @abstractmethod
    async def get_recent_completed_jobs(self, plan_id: str, limit: int) -> List[Job]:
        """Return up to `limit` most recently completed jobs, newest first."""
        pass

    @abstractmethod
    async def get_last_completed_job(self, plan_id: str, job_type: str) -> Optional[Job]:
        pass


class JobRunner(ABC):
    """Background job submission. Enqueue, ack and retry are the runner's concern."""

    @abstractmethod
    async def submit(self, plan_id: str, user_id: str, job_type: str,
                     params: Dict[str, Any], priority: int = 0) -> str:
        """Enqueue a job and return its id without waiting for completion."""
        pass
