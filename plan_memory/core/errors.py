"""
Exception hierarchy for memory compression and context composition.
"""

from typing import Any, Dict, Optional


class PlanMemoryError(Exception):
    """Base exception carrying a machine-readable code and details."""

    def __init__(self, message: str, code: str = "PLAN_MEMORY_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details or {}


class ValidationError(PlanMemoryError):
    """Request rejected before any work started."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_FAILED", details)


class NotFoundError(PlanMemoryError):
    """Plan does not exist or is not visible to the caller."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class UpstreamError(PlanMemoryError):
    """Embedding or LLM collaborator failed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "UPSTREAM_FAILURE", details)


class ContextBuilderError(PlanMemoryError):
    """Unexpected failure inside one of the context builders."""
    pass
