"""Shared fixtures: deterministic embeddings, scripted model providers and an
event recorder standing in for the UI."""

from __future__ import annotations

import asyncio
import hashlib
import random
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
import pytest_asyncio

from zox.agent.approval import ApprovalSlot
from zox.agent.history import HistoryStore
from zox.agent.loop import AgentLoop
from zox.agent.memory import Turn
from zox.config import Settings
from zox.events import Event
from zox.providers.base import ModelProvider, ModelTier, ProviderCapabilities
from zox.retrieval.store import SemanticStore
from zox.tools.builtin import default_registry
from zox.tools.registry import ToolRegistry
from zox.tools.workspace import Workspace

# ---------------------------------------------------------------------------
# Mock embedding provider (PRNG-seeded, L2-normalized vectors)
# ---------------------------------------------------------------------------


class MockEmbeddingProvider:
    """Returns deterministic, L2-normalized embeddings seeded from text hash.

    Identical texts produce identical vectors; unrelated texts are close to
    orthogonal.
    """

    dimensions = 256

    def __init__(self) -> None:
        self.calls = 0

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        h = hashlib.sha256(text.encode()).hexdigest()
        rng = random.Random(h)
        vec = [rng.gauss(0, 1) for _ in range(self.dimensions)]
        norm = sum(x * x for x in vec) ** 0.5
        return [x / norm for x in vec]

    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Scripted model provider
# ---------------------------------------------------------------------------

# A reply is the full text, a list of fragments, an exception to raise when
# the stream is requested, or a callable returning a custom async iterator.
Reply = str | list[str] | BaseException | Callable[[], AsyncIterator[str]]


async def _fragments(parts: list[str]) -> AsyncIterator[str]:
    for part in parts:
        await asyncio.sleep(0)
        yield part


class ScriptedProvider(ModelProvider):
    """Plays back canned replies; the last reply repeats once the script runs out."""

    def __init__(
        self,
        replies: list[Reply],
        kind: str = "cloud",
        tier: ModelTier | None = ModelTier.AGENT,
        summarization: bool = False,
        summary: str | None = "User asked about files.",
    ) -> None:
        self.kind = kind
        self._replies = list(replies)
        self._tier = tier
        self._summarization = summarization
        self._summary = summary
        self.calls: list[tuple[str, str, list[Turn]]] = []
        self.closed = False

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_tools=True,
            supports_streaming=True,
            supports_cascade=False,
            supports_summarization=self._summarization,
            max_context_tokens=8192,
        )

    def active_tier(self) -> ModelTier | None:
        return self._tier

    def _next(self) -> Reply:
        if len(self._replies) > 1:
            return self._replies.pop(0)
        return self._replies[0]

    async def _open(self, method: str, system_prompt: str, turns: list[Turn]) -> AsyncIterator[str]:
        self.calls.append((method, system_prompt, list(turns)))
        reply = self._next()
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply()
        if isinstance(reply, str):
            reply = [reply]
        return _fragments(reply)

    async def chat(self, system_prompt: str, turns: list[Turn]) -> AsyncIterator[str]:
        return await self._open("chat", system_prompt, turns)

    async def agent(self, system_prompt: str, turns: list[Turn]) -> AsyncIterator[str]:
        return await self._open("agent", system_prompt, turns)

    async def summarize(self, turns: list[Turn]) -> str | None:
        return self._summary

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Event recorder
# ---------------------------------------------------------------------------


class RecordingBus:
    """Collects emitted events; optionally answers approval requests.

    approve=True/False answers every approval-request through the slot as
    soon as it is emitted; None leaves it pending. on_event runs for every
    event after it is recorded.
    """

    def __init__(
        self,
        approvals: ApprovalSlot | None = None,
        approve: bool | None = None,
        on_event: Callable[[Event], None] | None = None,
    ) -> None:
        self.events: list[Event] = []
        self.approvals = approvals
        self.approve = approve
        self.on_event = on_event

    async def emit(self, event: Event) -> None:
        self.events.append(event)
        if (
            event.type == "approval-request"
            and self.approve is not None
            and self.approvals is not None
        ):
            self.approvals.respond(self.approve)
        if self.on_event is not None:
            self.on_event(event)

    def types(self) -> list[str]:
        return [e.type for e in self.events]

    def data(self, event_type: str) -> list[dict[str, Any]]:
        return [e.data for e in self.events if e.type == event_type]

    def statuses(self) -> list[str]:
        return [d["text"] for d in self.data("status")]

    async def wait_for(self, event_type: str, count: int = 1, timeout: float = 2.0) -> None:
        async def _poll() -> None:
            while len(self.data(event_type)) < count:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_poll(), timeout)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_settings(tmp_path, **overrides) -> Settings:
    """Settings isolated from the environment's .env file."""
    values: dict[str, Any] = {
        "GEMINI_API_KEYS": "test-key-1,test-key-2",
        "workspace_dir": str(tmp_path / "workspace"),
        "history_dir": str(tmp_path / "history"),
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def mock_embeddings() -> MockEmbeddingProvider:
    """Mock embedding provider for tests needing deterministic vectors."""
    return MockEmbeddingProvider()


@pytest.fixture
def retrieval(mock_embeddings) -> SemanticStore:
    return SemanticStore(mock_embeddings)


@pytest.fixture
def workspace(tmp_path) -> Workspace:
    ws = Workspace(tmp_path / "workspace")
    ws.ensure()
    return ws


@pytest.fixture
def history(tmp_path) -> HistoryStore:
    return HistoryStore(tmp_path / "history")


@pytest.fixture
def approvals() -> ApprovalSlot:
    return ApprovalSlot()


@pytest.fixture
def bus(approvals) -> RecordingBus:
    return RecordingBus(approvals)


@pytest_asyncio.fixture
async def make_loop(tmp_path, retrieval, history, approvals, bus):
    """Factory building an AgentLoop around scripted cloud and local providers."""
    loops: list[AgentLoop] = []

    def _make(
        replies: list[Reply],
        local_replies: list[Reply] | None = None,
        summarization: bool = False,
        registry: ToolRegistry | None = None,
        **overrides,
    ) -> tuple[AgentLoop, dict[str, ScriptedProvider]]:
        settings = make_settings(tmp_path, **overrides)
        providers = {
            "cloud": ScriptedProvider(replies, kind="cloud", summarization=summarization),
            "local": ScriptedProvider(
                local_replies or ["<message>offline</message>"],
                kind="local",
                tier=ModelTier.LOCAL,
            ),
        }
        workspace = Workspace(settings.workspace_dir)
        workspace.ensure()
        loop = AgentLoop(
            settings,
            providers=lambda kind: providers[kind],
            registry=registry if registry is not None else default_registry(),
            workspace=workspace,
            retrieval=retrieval,
            bus=bus,
            history=history,
            approvals=approvals,
        )
        loops.append(loop)
        return loop, providers

    yield _make

    for loop in loops:
        await loop.stop()
