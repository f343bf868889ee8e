"""
Approximate token counting and trimming.

The estimate is model-agnostic: roughly four characters per token plus a
whitespace adjustment. It is meant to rarely overshoot, not to match any
particular tokenizer exactly.
"""

import math
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from .config import CONTEXT_BUILDER_TOKEN_BUDGET_DEFAULT

ELLIPSIS = "..."
CHARS_PER_TOKEN = 4
SHRINK_STEP = 10

_WHITESPACE = re.compile(r"\s")


@dataclass(frozen=True)
class ContextBudget:
    """Token allocation for one prompt assembly."""
    messages: int
    embeddings: int
    plan: int

    @property
    def total(self) -> int:
        return self.messages + self.embeddings + self.plan


def estimate_tokens(text: str) -> int:
    """Estimate token count: ceil(len/4) + floor(whitespace/3), at least 1 for non-empty text."""
    if not text:
        return 0

    base_estimate = math.ceil(len(text) / CHARS_PER_TOKEN)
    whitespace_count = len(_WHITESPACE.findall(text))

    return max(1, base_estimate + whitespace_count // 3)


def estimate_tokens_multiple(texts: List[str]) -> int:
    """Estimate tokens for multiple texts."""
    return sum(estimate_tokens(text) for text in texts)


def _cut_at_word_boundary(text: str) -> str:
    """Cut back to the last space if it lies within the final 20% of the text."""
    last_space = text.rfind(" ")
    if last_space > len(text) * 0.8:
        return text[:last_space]
    return text


def trim_to_token_limit(text: str, max_tokens: int) -> str:
    """
    Trim text so that its estimate, ellipsis included, fits max_tokens.

    Prefers to end at a word boundary and appends an ellipsis marker
    when anything was cut.
    """
    if not text:
        return text

    if estimate_tokens(text) <= max_tokens:
        return text

    if max_tokens <= 0:
        return ""

    trimmed = _cut_at_word_boundary(text[:max_tokens * CHARS_PER_TOKEN])

    while trimmed and estimate_tokens(trimmed.rstrip() + ELLIPSIS) > max_tokens:
        trimmed = _cut_at_word_boundary(trimmed[:-SHRINK_STEP])

    trimmed = trimmed.rstrip()
    if not trimmed:
        # Budget too small for any content plus the marker
        return ELLIPSIS if estimate_tokens(ELLIPSIS) <= max_tokens else ""

    return trimmed + ELLIPSIS


def trim_texts_to_token_limit(texts: List[str], max_tokens: int) -> List[str]:
    """
    Drop items from the start (oldest) until the rest fits max_tokens.

    The last remaining item is never dropped; if it alone exceeds the
    budget it is trimmed in place.
    """
    if not texts:
        return texts

    total_tokens = estimate_tokens_multiple(texts)
    if total_tokens <= max_tokens:
        return list(texts)

    result = list(texts)
    while total_tokens > max_tokens and len(result) > 1:
        removed = result.pop(0)
        total_tokens -= estimate_tokens(removed)

    if total_tokens > max_tokens:
        result[0] = trim_to_token_limit(result[0], max_tokens)

    return result


def calculate_token_budget(total_budget: int, priorities: Optional[Dict[str, Optional[int]]] = None) -> ContextBudget:
    """Split a total budget into messages/embeddings/plan, honouring per-category overrides."""
    priorities = priorities or {}

    def allocation(name: str) -> int:
        override = priorities.get(name)
        if override is not None:
            return int(override)
        return int(math.floor(total_budget * CONTEXT_BUILDER_TOKEN_BUDGET_DEFAULT[name]))

    return ContextBudget(
        messages=allocation("messages"),
        embeddings=allocation("embeddings"),
        plan=allocation("plan"),
    )
