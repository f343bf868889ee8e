"""
Context builders and the final prompt composer.
"""

from .types import ConversationContext, PlanContext, EmbeddingContext, FinalContext
from .conversation_builder import ConversationContextBuilder
from .plan_builder import PlanContextBuilder
from .embedding_builder import EmbeddingContextBuilder
from .composer import ContextComposer

__all__ = [
    'ConversationContext',
    'PlanContext',
    'EmbeddingContext',
    'FinalContext',
    'ConversationContextBuilder',
    'PlanContextBuilder',
    'EmbeddingContextBuilder',
    'ContextComposer'
]
