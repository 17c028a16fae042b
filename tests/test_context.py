"""Tests for ContextBuilder: compression preamble and the rolling summary."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from zox.agent.context import ContextBuilder
from zox.agent.memory import ConversationMemory, Role, Turn
from zox.agent.prompts import CONTEXT_ACK
from zox.providers.base import ProviderCapabilities

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _memory(n: int) -> ConversationMemory:
    memory = ConversationMemory()
    for i in range(n):
        role = Role.USER if i % 2 == 0 else Role.MODEL
        memory.add(Turn(role, f"turn number {i} about the project"))
    return memory


class Recorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    async def __call__(self, event_type: str, data: dict) -> None:
        self.events.append((event_type, data))


# ---------------------------------------------------------------------------
# build()
# ---------------------------------------------------------------------------


class TestBuild:
    @pytest.mark.asyncio
    async def test_short_conversation_passes_through(self, retrieval):
        memory = _memory(12)
        turns = await ContextBuilder(retrieval).build(memory)
        assert turns == memory.all()

    @pytest.mark.asyncio
    async def test_long_conversation_compressed(self, retrieval):
        await retrieval.store("the deploy script lives in tools/deploy.sh", "conversation", "c:user")
        memory = _memory(14)
        turns = await ContextBuilder(retrieval).build(memory)

        assert len(turns) == 10
        assert turns[0].role == Role.USER
        assert turns[0].content.startswith("[Relevant Context]\n")
        assert turns[0].content.endswith("\n[End Context]")
        assert "tools/deploy.sh" in turns[0].content
        assert turns[1] == Turn(Role.MODEL, CONTEXT_ACK)
        assert turns[2:] == memory.all()[-8:]

    @pytest.mark.asyncio
    async def test_summary_section_first(self, retrieval):
        await retrieval.store("an indexed excerpt worth finding", "conversation", "c:user")
        builder = ContextBuilder(retrieval)
        builder.summary = "User is refactoring the parser."
        turns = await builder.build(_memory(14))

        preamble = turns[0].content
        assert preamble.index("Conversation so far: User is refactoring the parser.") < preamble.index(
            "an indexed excerpt"
        )

    @pytest.mark.asyncio
    async def test_nothing_to_add_sends_recent_only(self, retrieval):
        memory = _memory(14)
        turns = await ContextBuilder(retrieval, keep_recent=4).build(memory)
        assert turns == memory.all()[-4:]

    @pytest.mark.asyncio
    async def test_reset_forgets_summary(self, retrieval):
        builder = ContextBuilder(retrieval)
        builder.summary = "old"
        builder.reset()
        assert builder.summary is None


# ---------------------------------------------------------------------------
# refresh_summary()
# ---------------------------------------------------------------------------



def _provider(summarization: bool = True, summary: str | None = "User asked about files."):
    provider = MagicMock()
    provider.capabilities.return_value = ProviderCapabilities(
        supports_tools=True,
        supports_streaming=True,
        supports_cascade=False,
        supports_summarization=summarization,
        max_context_tokens=8192,
    )
    provider.summarize = AsyncMock(return_value=summary)
    return provider


class TestRefreshSummary:
    @pytest.mark.asyncio
    async def test_unsupported_provider(self, retrieval):
        provider = _provider(summarization=False)
        emit = Recorder()
        assert await ContextBuilder(retrieval).refresh_summary(_memory(8), provider, emit) is None
        provider.summarize.assert_not_called()
        assert emit.events == []

    @pytest.mark.asyncio
    async def test_too_few_turns(self, retrieval):
        provider = _provider()
        emit = Recorder()
        assert await ContextBuilder(retrieval).refresh_summary(_memory(5), provider, emit) is None
        provider.summarize.assert_not_called()

    @pytest.mark.asyncio
    async def test_first_summary_excludes_recent_turns(self, retrieval):
        provider = _provider()
        emit = Recorder()
        memory = _memory(6)
        builder = ContextBuilder(retrieval)

        summary = await builder.refresh_summary(memory, provider, emit)

        assert summary == "User asked about files."
        assert builder.summary == summary
        provider.summarize.assert_awaited_once_with(memory.all()[:3])
        assert emit.events == [
            ("context-summary-pending", {"pending": True}),
            ("context-summary", {"text": "User asked about files."}),
            ("context-summary-pending", {"pending": False}),
        ]

    @pytest.mark.asyncio
    async def test_existing_summary_kept_until_refresh_threshold(self, retrieval):
        provider = _provider(summary="newer")
        builder = ContextBuilder(retrieval)
        builder.summary = "older"

        assert await builder.refresh_summary(_memory(9), provider, Recorder()) == "older"
        provider.summarize.assert_not_called()

        assert await builder.refresh_summary(_memory(10), provider, Recorder()) == "newer"

    @pytest.mark.asyncio
    async def test_empty_summary_keeps_previous(self, retrieval):
        provider = _provider(summary=None)
        emit = Recorder()
        builder = ContextBuilder(retrieval)
        builder.summary = "older"

        assert await builder.refresh_summary(_memory(10), provider, emit) == "older"
        assert [t for t, _ in emit.events] == ["context-summary-pending", "context-summary-pending"]

    @pytest.mark.asyncio
    async def test_pending_cleared_on_failure(self, retrieval):
        provider = _provider()
        provider.summarize.side_effect = RuntimeError("summarizer down")
        emit = Recorder()

        with pytest.raises(RuntimeError):
            await ContextBuilder(retrieval).refresh_summary(_memory(6), provider, emit)
        assert emit.events[-1] == ("context-summary-pending", {"pending": False})
