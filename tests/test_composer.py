"""
Final prompt composition under a token budget.
"""

import asyncio
from datetime import datetime

import numpy as np
import pytest

from plan_memory.context.composer import (
    ComposeState, ContextComposer, apply_token_budget, omit_block, trim_conversation, trim_embeddings
)
from plan_memory.context.conversation_builder import ConversationContextBuilder
from plan_memory.context.embedding_builder import EmbeddingContextBuilder
from plan_memory.context.plan_builder import PlanContextBuilder
from plan_memory.context.types import ConversationContext, EmbeddingContext, PlanContext
from plan_memory.core.errors import ContextBuilderError, ValidationError
from plan_memory.core.schema import Message
from plan_memory.core.tokens import estimate_tokens
from plan_memory.vector.index import InMemoryEmbeddingStore

from conftest import FakeMessagesSource, RecordingEmbedder, make_vector


def block(tokens, marker="a"):
    return marker * (4 * tokens)


class StubBuilders:
    """Builders that return fixed blocks and record the budgets they were given."""

    def __init__(self, conversation=600, plan=300, embeddings=400, fail=()):
        self.sizes = {"conversation": conversation, "plan": plan, "embeddings": embeddings}
        self.fail = set(fail)
        self.budgets = {}

    async def build_conversation_context(self, conversation_id, max_tokens=None):
        self.budgets["conversation"] = max_tokens
        if "conversation" in self.fail:
            raise ContextBuilderError("boom", "CONVERSATION_CONTEXT_BUILD_FAILED")
        text = block(self.sizes["conversation"], "c")
        return ConversationContext(formatted=text, token_count=estimate_tokens(text), message_count=3)

    async def build_plan_context(self, plan_id, max_tokens=None):
        self.budgets["plan"] = max_tokens
        if "plan" in self.fail:
            raise ContextBuilderError("boom", "PLAN_CONTEXT_BUILD_FAILED")
        text = block(self.sizes["plan"], "p")
        return PlanContext(formatted=text, token_count=estimate_tokens(text))

    async def build_embedding_context(self, plan_id, query, max_tokens=None):
        self.budgets["embeddings"] = max_tokens
        if "embeddings" in self.fail:
            raise ContextBuilderError("boom", "EMBEDDING_CONTEXT_BUILD_FAILED")
        text = block(self.sizes["embeddings"], "e")
        return EmbeddingContext(formatted=text, token_count=estimate_tokens(text), item_count=4)


def composer_for(stubs):
    return ContextComposer(stubs, stubs, stubs)


def compose(composer, **kwargs):
    kwargs.setdefault("conversation_id", "conv-1")
    kwargs.setdefault("query", "hotel")
    return asyncio.run(composer.compose_context("plan-1", **kwargs))


class TestComposeContext:

    def test_within_budget_is_untouched(self):
        stubs = StubBuilders(conversation=100, plan=100, embeddings=100)

        final = compose(composer_for(stubs), max_tokens=1000)

        assert final.breakdown == {"conversation": 100, "plan": 100, "embeddings": 100}
        assert final.omitted == []
        assert final.formatted == "\n\n".join([block(100, "p"), block(100, "e"), block(100, "c")])

    def test_embeddings_are_trimmed_first(self):
        stubs = StubBuilders(conversation=600, plan=300, embeddings=400)

        final = compose(composer_for(stubs), max_tokens=1000)

        assert final.breakdown["conversation"] == 600
        assert final.breakdown["plan"] == 300
        assert 90 <= final.breakdown["embeddings"] <= 100
        assert final.token_count <= 1000
        assert final.embeddings.truncated
        assert final.omitted == []

    def test_budget_is_split_across_builders(self):
        stubs = StubBuilders(conversation=10, plan=10, embeddings=10)

        compose(composer_for(stubs), max_tokens=1000, priorities={"plan": 250})

        assert stubs.budgets == {"conversation": 500, "plan": 250, "embeddings": 350}

    def test_failing_builder_is_omitted(self):
        stubs = StubBuilders(conversation=50, plan=50, embeddings=50, fail={"plan"})

        final = compose(composer_for(stubs), max_tokens=1000)

        assert final.omitted == ["plan"]
        assert final.plan is None
        assert final.breakdown["plan"] == 0
        assert block(50, "c") in final.formatted

    def test_all_builders_failing_gives_empty_prompt(self):
        stubs = StubBuilders(fail={"conversation", "plan", "embeddings"})

        final = compose(composer_for(stubs), max_tokens=1000)

        assert final.formatted == ""
        assert final.token_count == 0
        assert sorted(final.omitted) == ["conversation", "embeddings", "plan"]

    def test_conversation_needs_an_id(self):
        stubs = StubBuilders(conversation=50, plan=50, embeddings=50)

        final = compose(composer_for(stubs), conversation_id=None, max_tokens=1000)

        assert "conversation" not in stubs.budgets
        assert final.conversation is None

    def test_include_flags(self):
        stubs = StubBuilders(conversation=50, plan=50, embeddings=50)

        final = compose(composer_for(stubs), max_tokens=1000, include_plan=False, include_embeddings=False)

        assert list(stubs.budgets) == ["conversation"]
        assert final.formatted == block(50, "c")

    def test_hard_bound_omits_blocks(self):
        stubs = StubBuilders(conversation=100, plan=100, embeddings=100)

        final = compose(composer_for(stubs), max_tokens=150)

        assert final.token_count <= 150
        assert "embeddings" in final.omitted

    @pytest.mark.parametrize("kwargs", [
        {"max_tokens": 0},
        {"max_tokens": -5},
        {"priorities": {"attachments": 100}},
        {"priorities": {"plan": -1}},
    ])
    def test_invalid_requests(self, kwargs):
        with pytest.raises(ValidationError):
            compose(composer_for(StubBuilders()), **kwargs)

    def test_empty_plan_id(self):
        composer = composer_for(StubBuilders())
        with pytest.raises(ValidationError):
            asyncio.run(composer.compose_context(""))


class TestTrimmingSteps:

    def state(self, conversation=0, plan=0, embeddings=0, lines=None):
        conv_text = block(conversation, "c")
        return ComposeState(
            conversation=ConversationContext(conv_text, estimate_tokens(conv_text), 1, lines=lines or [])
            if conversation else None,
            plan=PlanContext(block(plan, "p"), plan) if plan else None,
            embeddings=EmbeddingContext(block(embeddings, "e"), embeddings, 1) if embeddings else None,
        )

    def test_embeddings_stop_at_floor(self):
        state = trim_embeddings(self.state(plan=500, embeddings=300), 400)

        assert 45 <= state.embeddings.token_count <= 50
        assert state.plan.token_count == 500

    def test_state_is_not_mutated(self):
        original = self.state(plan=500, embeddings=300)

        trimmed = apply_token_budget(original, 400)

        assert original.embeddings.token_count == 300
        assert trimmed is not original

    def test_conversation_keeps_newest_lines(self):
        lines = [f"User: question {i} " + "filler " * 30 for i in range(10)]
        text = "## Conversation History\n\n" + "\n\n".join(lines)
        conv = ConversationContext(text, estimate_tokens(text), 10, lines=lines)
        state = ComposeState(conversation=conv)

        trimmed = trim_conversation(state, 200)

        assert trimmed.conversation.truncated
        assert trimmed.conversation.lines[-1] == lines[-1]
        assert trimmed.conversation.token_count <= 200

    def test_omit_only_when_over_budget(self):
        state = self.state(plan=60, embeddings=60)

        assert omit_block(state, "embeddings", 1000) is state
        assert omit_block(state, "embeddings", 10).omitted == ("embeddings",)


def test_compose_with_real_builders(plan_source, context_settings):
    """The three builders wired together produce one ordered prompt."""
    embedder = RecordingEmbedder(dimension=16)
    query = "hotel"
    store = InMemoryEmbeddingStore([
        make_vector("m1", np.asarray(embedder.embed_text(query)), content="Hotel in Alfama")
    ])
    messages = FakeMessagesSource({"conv-1": [
        Message("m1", "conv-1", "user", "Which hotel did we pick?", datetime(2026, 10, 1, 9, 0)),
    ]})
    composer = ContextComposer(
        ConversationContextBuilder(messages, settings=context_settings),
        PlanContextBuilder(plan_source, settings=context_settings),
        EmbeddingContextBuilder(store, embedder, settings=context_settings),
        settings=context_settings,
    )

    final = asyncio.run(composer.compose_context("plan-1", conversation_id="conv-1", query=query))

    plan_at = final.formatted.index("## Plan: Lisbon trip")
    memory_at = final.formatted.index("## Relevant Memory")
    conversation_at = final.formatted.index("## Conversation History")
    assert plan_at < memory_at < conversation_at
    assert final.token_count == estimate_tokens(final.formatted)
    assert final.omitted == []
