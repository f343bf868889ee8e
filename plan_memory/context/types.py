"""
Per-source context results and the final composed prompt.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class ConversationContext:
    formatted: str
    token_count: int
    message_count: int
    truncated: bool = False
    lines: List[str] = field(default_factory=list)
    """Rendered message lines, oldest first, without the header"""


@dataclass
class PlanContext:
    formatted: str
    token_count: int
    truncated: bool = False


@dataclass
class EmbeddingContext:
    formatted: str
    token_count: int
    item_count: int
    truncated: bool = False


@dataclass
class FinalContext:
    """Composed prompt plus per-block token breakdown."""
    formatted: str
    token_count: int
    breakdown: Dict[str, int]
    conversation: Optional[ConversationContext] = None
    plan: Optional[PlanContext] = None
    embeddings: Optional[EmbeddingContext] = None
    omitted: List[str] = field(default_factory=list)
    """Sources that failed or were dropped to fit the budget"""
