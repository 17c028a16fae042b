"""Generate embeddings for the retrieval store.

Two backends share the embed(text) contract:
  CloudEmbeddingProvider - Gemini embedContent endpoint
  LocalEmbeddingProvider - /api/embed on the local Ollama-compatible runtime

Both use httpx.AsyncClient for async HTTP with connection pooling.
"""

from __future__ import annotations

import logging

import httpx

from zox.providers.gemini import KeyManager

logger = logging.getLogger(__name__)


class CloudEmbeddingProvider:
    """Async embedding generation using the Gemini embedding model."""

    def __init__(
        self,
        keys: KeyManager,
        model: str = "text-embedding-004",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.model = model
        self._keys = keys
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=30.0)

    async def embed(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        response = await self._client.post(
            f"/models/{self.model}:embedContent",
            params={"key": self._keys.current()},
            json={
                "model": f"models/{self.model}",
                "content": {"parts": [{"text": text}]},
            },
        )
        if response.status_code == 429:
            self._keys.rotate()
        response.raise_for_status()
        return response.json()["embedding"]["values"]

    async def close(self) -> None:
        """Close the underlying httpx client."""
        await self._client.aclose()


class LocalEmbeddingProvider:
    """Async embedding generation against a local runtime (offline mode)."""

    def __init__(
        self,
        model: str = "all-minilm",
        base_url: str = "http://127.0.0.1:11434",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.model = model
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=30.0)

    async def embed(self, text: str) -> list[float]:
        response = await self._client.post(
            "/api/embed", json={"model": self.model, "input": text}
        )
        response.raise_for_status()
        embeddings = response.json().get("embeddings") or [[]]
        return embeddings[0]

    async def close(self) -> None:
        await self._client.aclose()
