"""
Conversation history context: recent messages, long ones summarized, trimmed to a budget.
"""

import logging
from dataclasses import replace
from typing import List, Optional, Tuple

from util.logging import logger
from ..core.config import ContextBuilderSettings, get_context_builder_settings
from ..core.errors import ContextBuilderError
from ..core.schema import Message
from ..core.sources import MessagesSource
from ..core.tokens import estimate_tokens, trim_texts_to_token_limit
from ..llm.client import ILLMClient
from .prompts import long_message_prompt
from .types import ConversationContext

CONVERSATION_HEADER = "## Conversation History\n\n"
MESSAGE_SEPARATOR = "\n\n"
ROLE_LABELS = {"user": "User", "assistant": "Assistant", "system": "System"}


def format_message_line(message: Message) -> str:
    role = ROLE_LABELS.get(message.role, message.role.capitalize())
    return f"{role}: {message.content}"


def render_conversation(lines: List[str], max_tokens: Optional[int] = None) -> Tuple[str, List[str], bool]:
    """
    Render message lines under the conversation header.

    With max_tokens, the oldest lines are dropped first and the newest line
    is trimmed in place if it alone does not fit; the line budget shrinks
    until the whole block, header included, measures within max_tokens.

    Returns:
        (formatted, kept_lines, truncated)
    """
    if not lines:
        return "", [], False

    if max_tokens is None:
        return CONVERSATION_HEADER + MESSAGE_SEPARATOR.join(lines), list(lines), False

    budget = max_tokens - estimate_tokens(CONVERSATION_HEADER)
    while True:
        kept = trim_texts_to_token_limit(lines, max(0, budget))
        kept = [line for line in kept if line]
        formatted = CONVERSATION_HEADER + MESSAGE_SEPARATOR.join(kept) if kept else ""
        overflow = estimate_tokens(formatted) - max_tokens
        if overflow <= 0 or budget <= 0:
            break
        budget -= max(1, overflow)

    truncated = len(kept) < len(lines) or (bool(kept) and kept[-1] != lines[-1])
    return formatted, kept, truncated


class ConversationContextBuilder:
    """Builds the conversation history block for a prompt."""

    def __init__(self, messages_source: MessagesSource, llm: Optional[ILLMClient] = None,
                 settings: Optional[ContextBuilderSettings] = None):
        self.messages_source = messages_source
        self.llm = llm
        self.settings = settings or get_context_builder_settings()

    async def build_conversation_context(self, conversation_id: str, limit: Optional[int] = None,
                                         max_tokens: Optional[int] = None, include_summaries: bool = True,
                                         long_message_threshold: Optional[int] = None) -> ConversationContext:
        """
        Build conversation context from recent messages.

        A token budget, when given, takes precedence over the message-count
        window. Summarizer failures keep the original message.
        """
        limit = limit or self.settings.message_limit
        threshold = long_message_threshold or self.settings.long_message_threshold

        logger.log_context_event("conversation_context.build.start", details={
            "conversation_id": conversation_id, "limit": limit, "max_tokens": max_tokens
        })

        try:
            messages = await self.messages_source.get_recent_messages(
                conversation_id, limit * self.settings.message_overfetch
            )
            if not messages:
                return ConversationContext(formatted="", token_count=0, message_count=0)

            if include_summaries:
                messages = await self._process_long_messages(messages, threshold)

            lines = [format_message_line(m) for m in messages]
            if max_tokens is not None:
                formatted, kept, truncated = render_conversation(lines, max_tokens)
            else:
                window = lines[-limit:]
                formatted, kept, _ = render_conversation(window)
                truncated = len(window) < len(lines)

            context = ConversationContext(
                formatted=formatted,
                token_count=estimate_tokens(formatted),
                message_count=len(kept),
                truncated=truncated,
                lines=kept,
            )

            logger.log_context_event("conversation_context.build.complete", details={
                "conversation_id": conversation_id,
                "message_count": context.message_count,
                "token_count": context.token_count,
                "truncated": truncated
            })
            return context

        except Exception as e:
            logger.log_context_event("conversation_context.build.error", status="failed", details={
                "conversation_id": conversation_id, "error": str(e)
            }, level=logging.ERROR)
            raise ContextBuilderError(
                f"Failed to build conversation context: {e}",
                "CONVERSATION_CONTEXT_BUILD_FAILED",
                {"conversation_id": conversation_id}
            ) from e

    async def _process_long_messages(self, messages: List[Message], threshold: int) -> List[Message]:
        processed = []
        for message in messages:
            tokens = estimate_tokens(message.content)
            if tokens <= threshold:
                processed.append(message)
                continue

            summary = await self._summarize_long_message(message, threshold)
            if summary is None:
                processed.append(message)
            else:
                processed.append(replace(message, content=f"[Summarized from {tokens} tokens] {summary}"))
        return processed

    async def _summarize_long_message(self, message: Message, threshold: int) -> Optional[str]:
        """Summary text, or None when the original should be kept."""
        if self.llm is None:
            return None

        raw = message.content.strip()
        completion_budget = max(48, int(threshold * 0.6))

        try:
            result = await self.llm.generate(
                long_message_prompt(raw, completion_budget),
                temperature=0.15,
                max_tokens=completion_budget
            )
        except Exception as e:
            logger.log_context_event("conversation_context.summarize_failed", status="degraded", details={
                "message_id": message.id, "error": str(e)
            }, level=logging.WARNING)
            return None

        summary = (result.text or "").strip()
        if not summary or len(summary) >= len(raw):
            logger.log_context_event("conversation_context.summary_discarded", status="degraded", details={
                "message_id": message.id, "summary_length": len(summary), "original_length": len(raw)
            }, level=logging.WARNING)
            return None
        return summary
