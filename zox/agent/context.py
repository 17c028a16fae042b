"""Context compression for long conversations.

Short conversations are sent whole. Past compress_after turns, the model
sees a retrieved-context preamble (semantic search on the latest user
turn, plus the rolling summary when one exists) followed by only the most
recent turns.

The rolling summary is refreshed in the background by providers that
support summarization; it is best-effort and never blocks a task.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from zox.agent.memory import ConversationMemory, Role, Turn
from zox.agent.prompts import CONTEXT_ACK
from zox.providers.base import ModelProvider
from zox.retrieval.store import CONTEXT_SEPARATOR, SemanticStore

logger = logging.getLogger(__name__)

Emit = Callable[[str, dict[str, Any]], Awaitable[None]]

SUMMARY_MIN_TURNS = 6
SUMMARY_REFRESH_TURNS = 10
SUMMARY_KEEP_RECENT = 3


class ContextBuilder:
    def __init__(
        self,
        retrieval: SemanticStore,
        compress_after: int = 12,
        keep_recent: int = 8,
        k: int = 5,
    ) -> None:
        self._retrieval = retrieval
        self.compress_after = compress_after
        self.keep_recent = keep_recent
        self.k = k
        self.summary: str | None = None

    def reset(self) -> None:
        self.summary = None

    async def build(self, memory: ConversationMemory) -> list[Turn]:
        """Turns to send for the next model call."""
        turns = memory.all()
        if len(turns) <= self.compress_after:
            return turns

        query = memory.last_user_content() or ""
        excerpts = await self._retrieval.search(query, self.k)
        recent = turns[-self.keep_recent:]

        sections = []
        if self.summary:
            sections.append(f"Conversation so far: {self.summary}")
        if excerpts:
            sections.append(CONTEXT_SEPARATOR.join(excerpts))
        if not sections:
            return recent

        logger.debug(
            "Compressed context: %d turns -> %d recent + %d excerpts",
            len(turns), len(recent), len(excerpts),
        )
        preamble = "[Relevant Context]\n" + "\n\n".join(sections) + "\n[End Context]"
        return [Turn(Role.USER, preamble), Turn(Role.MODEL, CONTEXT_ACK), *recent]

    async def refresh_summary(
        self,
        memory: ConversationMemory,
        provider: ModelProvider,
        emit: Emit,
    ) -> str | None:
        """Regenerate the rolling summary when enough new turns accumulated."""
        if not provider.capabilities().supports_summarization:
            return None
        turns = memory.all()
        if len(turns) < SUMMARY_MIN_TURNS:
            return self.summary
        if self.summary is not None and len(turns) < SUMMARY_REFRESH_TURNS:
            return self.summary

        await emit("context-summary-pending", {"pending": True})
        try:
            summary = await provider.summarize(turns[:-SUMMARY_KEEP_RECENT])
            if summary:
                self.summary = summary
                await emit("context-summary", {"text": summary})
        finally:
            await emit("context-summary-pending", {"pending": False})
        return self.summary
