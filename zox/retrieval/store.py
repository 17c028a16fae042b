"""In-memory semantic retrieval store.

Chunks are embedded on insert and scored by cosine similarity on search.
Inserts are serialized by an asyncio lock; searches scan a snapshot of the
chunk list and never take the lock.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol
from uuid import uuid4

import httpx

from zox.providers.base import ProviderError

logger = logging.getLogger(__name__)

MIN_CHUNK_CHARS = 10
MAX_CHUNK_CHARS = 512
CONTEXT_SEPARATOR = "\n---\n"


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


@dataclass(frozen=True)
class ContextChunk:
    content: str
    embedding: list[float]
    kind: str
    source: str
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """dot / (|a|*|b|); 0.0 for mismatched lengths or zero norms."""
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


class SemanticStore:
    """Append-only chunk index with top-k cosine search."""

    def __init__(self, embedder: Embedder) -> None:
        self._embedder = embedder
        self._chunks: list[ContextChunk] = []
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._chunks)

    async def store(self, content: str, kind: str, source: str) -> bool:
        """Embed and index content. Returns False when nothing was stored.

        Content under 10 characters (after trimming) is ignored; longer
        content is truncated to 512 characters before embedding. Embedding
        failures are logged and skipped.
        """
        trimmed = content.strip()
        if len(trimmed) < MIN_CHUNK_CHARS:
            return False
        text = trimmed[:MAX_CHUNK_CHARS]

        try:
            embedding = await self._embedder.embed(text)
        except (httpx.HTTPError, ProviderError, KeyError, ValueError) as e:
            logger.warning("Embedding failed for %s chunk from %s: %s", kind, source, e)
            return False
        if not embedding:
            return False

        chunk = ContextChunk(content=text, embedding=list(embedding), kind=kind, source=source)
        async with self._lock:
            self._chunks = [*self._chunks, chunk]
        return True

    async def store_turn(self, conversation_id: str, role: str, content: str) -> bool:
        return await self.store(content, "conversation", f"{conversation_id}:{role}")

    async def store_tool_result(self, tool: str, result: str) -> bool:
        return await self.store(result, "tool_result", tool)

    async def search(self, query: str, k: int = 5) -> list[str]:
        """Top-k chunk contents by cosine similarity, best first."""
        if not query.strip() or k <= 0:
            return []
        snapshot = self._chunks
        if not snapshot:
            return []

        try:
            query_embedding = await self._embedder.embed(query.strip()[:MAX_CHUNK_CHARS])
        except (httpx.HTTPError, ProviderError, KeyError, ValueError) as e:
            logger.warning("Query embedding failed: %s", e)
            return []

        scored = sorted(
            ((cosine_similarity(query_embedding, c.embedding), c) for c in snapshot),
            key=lambda pair: pair[0],
            reverse=True,
        )
        return [chunk.content for _, chunk in scored[:k]]

    async def relevant_context(self, query: str, k: int = 5) -> str:
        return CONTEXT_SEPARATOR.join(await self.search(query, k))

    def clear(self) -> None:
        self._chunks = []
