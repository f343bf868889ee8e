"""
Final prompt assembly.

The three builders run concurrently; a failing builder contributes nothing.
When the joined prompt is over budget, blocks are trimmed in priority order:
embeddings first, then plan, then conversation. Blocks are joined as
plan, embeddings, conversation so the live conversation sits last.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

from util.logging import logger
from ..core.config import CONTEXT_BUILDER_MIN_TOKENS, ContextBuilderSettings, get_context_builder_settings
from ..core.requests import ComposeContextRequest, validate_request
from ..core.tokens import calculate_token_budget, estimate_tokens, trim_to_token_limit
from .conversation_builder import ConversationContextBuilder, render_conversation
from .embedding_builder import EmbeddingContextBuilder
from .plan_builder import PlanContextBuilder
from .types import ConversationContext, EmbeddingContext, FinalContext, PlanContext

BLOCK_SEPARATOR = "\n\n"
EMBEDDINGS_OVERFLOW_SHARE = 0.6


@dataclass(frozen=True)
class ComposeState:
    """Immutable snapshot of the three blocks during trimming."""
    conversation: Optional[ConversationContext] = None
    plan: Optional[PlanContext] = None
    embeddings: Optional[EmbeddingContext] = None
    omitted: Tuple[str, ...] = ()

    def render(self) -> str:
        blocks = [ctx.formatted for ctx in (self.plan, self.embeddings, self.conversation) if ctx and ctx.formatted]
        return BLOCK_SEPARATOR.join(blocks)

    def total(self) -> int:
        return estimate_tokens(self.render())

    def breakdown(self) -> Dict[str, int]:
        return {
            "conversation": self.conversation.token_count if self.conversation else 0,
            "plan": self.plan.token_count if self.plan else 0,
            "embeddings": self.embeddings.token_count if self.embeddings else 0,
        }


def _shrink_text_block(ctx, target: int):
    formatted = trim_to_token_limit(ctx.formatted, target)
    return replace(ctx, formatted=formatted, token_count=estimate_tokens(formatted), truncated=True)


def trim_embeddings(state: ComposeState, max_tokens: int) -> ComposeState:
    """Take ~60% of the overflow from embeddings, then keep going toward its floor while still over."""
    floor = CONTEXT_BUILDER_MIN_TOKENS["embeddings"]

    for share in (EMBEDDINGS_OVERFLOW_SHARE, 1.0):
        excess = state.total() - max_tokens
        ctx = state.embeddings
        if excess <= 0 or not ctx or ctx.token_count <= floor:
            return state
        target = max(floor, ctx.token_count - int(excess * share))
        if target < ctx.token_count:
            state = replace(state, embeddings=_shrink_text_block(ctx, target))

    return state


def trim_plan(state: ComposeState, max_tokens: int) -> ComposeState:
    excess = state.total() - max_tokens
    ctx = state.plan
    if excess <= 0 or not ctx or ctx.token_count <= CONTEXT_BUILDER_MIN_TOKENS["plan"]:
        return state

    target = max(CONTEXT_BUILDER_MIN_TOKENS["plan"], ctx.token_count - excess)
    return replace(state, plan=_shrink_text_block(ctx, target))


def trim_conversation(state: ComposeState, max_tokens: int) -> ComposeState:
    """Last resort: re-render the newest messages into a smaller block, header kept."""
    excess = state.total() - max_tokens
    ctx = state.conversation
    floor = CONTEXT_BUILDER_MIN_TOKENS["messages"]
    if excess <= 0 or not ctx or ctx.token_count <= floor:
        return state

    target = max(floor, ctx.token_count - excess)
    if not ctx.lines:
        return replace(state, conversation=_shrink_text_block(ctx, target))

    formatted, kept, _ = render_conversation(ctx.lines, target)
    conversation = replace(ctx, formatted=formatted, token_count=estimate_tokens(formatted),
                           message_count=len(kept), truncated=True, lines=kept)
    return replace(state, conversation=conversation)


def omit_block(state: ComposeState, name: str, max_tokens: int) -> ComposeState:
    if state.total() <= max_tokens or getattr(state, name) is None:
        return state
    return replace(state, **{name: None}, omitted=state.omitted + (name,))


def apply_token_budget(state: ComposeState, max_tokens: int) -> ComposeState:
    """Trim blocks in priority order; each step re-measures and stops once within budget."""
    state = trim_embeddings(state, max_tokens)
    state = trim_plan(state, max_tokens)
    state = trim_conversation(state, max_tokens)
    state = omit_block(state, "embeddings", max_tokens)
    return omit_block(state, "plan", max_tokens)


class ContextComposer:
    """Fans out to the three builders and merges their output under one budget."""

    def __init__(self, conversation_builder: ConversationContextBuilder, plan_builder: PlanContextBuilder,
                 embedding_builder: EmbeddingContextBuilder, settings: Optional[ContextBuilderSettings] = None):
        self.conversation_builder = conversation_builder
        self.plan_builder = plan_builder
        self.embedding_builder = embedding_builder
        self.settings = settings or get_context_builder_settings()

    async def compose_context(self, plan_id: str, conversation_id: Optional[str] = None, query: Optional[str] = None,
                              max_tokens: Optional[int] = None, priorities: Optional[Dict[str, Optional[int]]] = None,
                              include_conversation: bool = True, include_embeddings: bool = True,
                              include_plan: bool = True) -> FinalContext:
        """
        Compose the final prompt for one turn.

        Builder failures never propagate; the section is omitted instead.

        Raises:
            ValidationError: empty plan id, non-positive budget or unknown priority keys
        """
        validate_request(ComposeContextRequest, plan_id=plan_id, conversation_id=conversation_id,
                         query=query, max_tokens=max_tokens, priorities=priorities)
        max_tokens = max_tokens or self.settings.max_tokens
        budget = calculate_token_budget(max_tokens, priorities)

        logger.log_context_event("final_context.compose.start", details={
            "plan_id": plan_id, "conversation_id": conversation_id, "max_tokens": max_tokens
        })

        sources = {
            "conversation": (
                self.conversation_builder.build_conversation_context(conversation_id, max_tokens=budget.messages)
                if include_conversation and conversation_id else None
            ),
            "plan": (
                self.plan_builder.build_plan_context(plan_id, max_tokens=budget.plan)
                if include_plan else None
            ),
            "embeddings": (
                self.embedding_builder.build_embedding_context(plan_id, query, max_tokens=budget.embeddings)
                if include_embeddings else None
            ),
        }

        names = [name for name, coro in sources.items() if coro is not None]
        results = await asyncio.gather(*(sources[name] for name in names), return_exceptions=True)

        built = {}
        failed: List[str] = []
        for name, outcome in zip(names, results):
            if isinstance(outcome, Exception):
                failed.append(name)
                logger.log_context_event(f"final_context.{name}_failed", status="degraded", details={
                    "plan_id": plan_id, "conversation_id": conversation_id, "error": str(outcome)
                }, level=logging.WARNING)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            built[name] = outcome

        state = ComposeState(
            conversation=built.get("conversation"),
            plan=built.get("plan"),
            embeddings=built.get("embeddings"),
            omitted=tuple(failed),
        )
        state = apply_token_budget(state, max_tokens)

        formatted = state.render()
        final = FinalContext(
            formatted=formatted,
            token_count=estimate_tokens(formatted),
            breakdown=state.breakdown(),
            conversation=state.conversation,
            plan=state.plan,
            embeddings=state.embeddings,
            omitted=list(state.omitted),
        )

        logger.log_context_event("final_context.compose.complete", details={
            "plan_id": plan_id,
            "conversation_id": conversation_id,
            "token_count": final.token_count,
            "breakdown": final.breakdown,
            "omitted": final.omitted
        })
        return final
