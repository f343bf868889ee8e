"""
Relevant-memory context: plan-scoped similarity search driven by the user's query.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from util.logging import logger
from ..core.config import ContextBuilderSettings, get_context_builder_settings
from ..core.errors import ContextBuilderError, UpstreamError
from ..core.tokens import estimate_tokens, trim_to_token_limit
from ..vector.embeddings import IEmbeddingProvider
from ..vector.index import IEmbeddingStore
from ..vector.types import SearchHit
from .types import EmbeddingContext


@dataclass(frozen=True)
class MemoryItem:
    content: str
    similarity: float
    ref_type: str
    ref_id: Optional[str] = None

    @classmethod
    def from_hit(cls, hit: SearchHit) -> "MemoryItem":
        return cls(
            content=hit.memory.content,
            similarity=hit.similarity,
            ref_type=hit.memory.ref_type,
            ref_id=hit.memory.ref_id,
        )


def format_memory_block(items: List[MemoryItem]) -> str:
    if not items:
        return ""

    parts = [f"## Relevant Memory ({len(items)} items)"]
    for item in items:
        parts.append(f"\n### Memory Item ({item.similarity * 100:.1f}% relevant, {item.ref_type})")
        if item.ref_id:
            parts.append(f"Reference ID: {item.ref_id}")
        parts.append(f"Content: {item.content}")
    return "\n".join(parts)


def fit_memory_items(items: List[MemoryItem], max_tokens: int):
    """
    Shrink a memory block to max_tokens.

    First every item's content is trimmed to an equal share of the budget;
    if the block is still over, the item count is cut proportionally
    (at least one item is kept).

    Returns:
        (formatted, kept_items, truncated)
    """
    formatted = format_memory_block(items)
    token_count = estimate_tokens(formatted)
    if token_count <= max_tokens or not items:
        return formatted, items, False

    share = max(0, max_tokens // len(items))
    items = [
        MemoryItem(trim_to_token_limit(item.content, share), item.similarity, item.ref_type, item.ref_id)
        if estimate_tokens(item.content) > share else item
        for item in items
    ]
    formatted = format_memory_block(items)
    token_count = estimate_tokens(formatted)

    if token_count > max_tokens:
        reduced = max(1, math.floor(len(items) * max_tokens / token_count))
        items = items[:reduced]
        formatted = format_memory_block(items)

    return formatted, items, True


class EmbeddingContextBuilder:
    """Builds the relevant-memory block; returns None when there is no query."""

    def __init__(self, store: IEmbeddingStore, embedder: IEmbeddingProvider,
                 settings: Optional[ContextBuilderSettings] = None):
        self.store = store
        self.embedder = embedder
        self.settings = settings or get_context_builder_settings()

    async def build_embedding_context(self, plan_id: str, query: Optional[str], top_k: Optional[int] = None,
                                      threshold: Optional[float] = None,
                                      max_tokens: Optional[int] = None) -> Optional[EmbeddingContext]:
        """
        Search plan memory for the query and format the hits.

        Raises:
            UpstreamError: the query itself could not be embedded
            ContextBuilderError: search or formatting failed
        """
        if not query or not query.strip():
            logger.log_context_event("embedding_context.build.skipped", status="skipped", details={
                "plan_id": plan_id, "reason": "no_query"
            })
            return None

        top_k = top_k or self.settings.embedding_top_k
        threshold = self.settings.embedding_threshold if threshold is None else threshold

        logger.log_context_event("embedding_context.build.start", details={
            "plan_id": plan_id, "query": query, "top_k": top_k, "threshold": threshold
        })

        query_vector = await self._embed_query(plan_id, query)

        try:
            hits = await self.store.search(plan_id, query_vector, top_k=top_k, threshold=threshold)
            items = [MemoryItem.from_hit(hit) for hit in hits]

            if max_tokens is not None:
                formatted, kept, truncated = fit_memory_items(items, max_tokens)
            else:
                formatted, kept, truncated = format_memory_block(items), items, False

            context = EmbeddingContext(
                formatted=formatted,
                token_count=estimate_tokens(formatted),
                item_count=len(kept),
                truncated=truncated,
            )

            logger.log_context_event("embedding_context.build.complete", details={
                "plan_id": plan_id,
                "embedding_count": len(hits),
                "item_count": context.item_count,
                "token_count": context.token_count
            })
            return context

        except Exception as e:
            logger.log_context_event("embedding_context.build.error", status="failed", details={
                "plan_id": plan_id, "error": str(e)
            }, level=logging.ERROR)
            raise ContextBuilderError(
                f"Failed to build embedding context: {e}",
                "EMBEDDING_CONTEXT_BUILD_FAILED",
                {"plan_id": plan_id}
            ) from e

    async def _embed_query(self, plan_id: str, query: str) -> np.ndarray:
        try:
            vectors = await self.embedder.embed([query])
        except UpstreamError:
            raise
        except Exception as e:
            raise UpstreamError(f"Query embedding failed: {e}", details={"plan_id": plan_id}) from e

        if not vectors or len(vectors[0]) == 0:
            raise UpstreamError("Query embedding returned no vector", details={"plan_id": plan_id})
        return np.asarray(vectors[0], dtype=np.float64)
