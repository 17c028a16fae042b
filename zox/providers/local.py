"""On-device model served by a local Ollama-compatible runtime.

A single quantized model handles both chat and agent requests: no tiering,
no cascade, no summarization. The model is loaded lazily on first use and
guarded by a small state machine:

    UNLOADED -> LOADING -> READY | ERROR
    READY -> UNLOADING -> UNLOADED
    ERROR -> LOADING (retry on next use)

Loading is asking the runtime for an empty generation with a keep_alive;
unloading is the same request with keep_alive=0. Inference streams
newline-delimited JSON from /api/chat.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any

import httpx

from zox.agent.memory import Role, Turn
from zox.config import Settings
from zox.providers.base import (
    ModelLoadError,
    ModelProvider,
    ModelTier,
    ProviderCapabilities,
    ProviderError,
    TokenStream,
)

logger = logging.getLogger(__name__)


class LocalModelState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    UNLOADING = "unloading"
    ERROR = "error"


class LocalProvider(ModelProvider):
    kind = "local"

    def __init__(
        self,
        http: httpx.AsyncClient,
        model: str,
        context_tokens: int = 4096,
        keep_alive: str = "30m",
    ) -> None:
        self._http = http
        self.model = model
        self._context_tokens = context_tokens
        self._keep_alive = keep_alive
        self._state = LocalModelState.UNLOADED
        self._last_error: str | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> LocalModelState:
        return self._state

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_tools=True,
            supports_streaming=True,
            supports_cascade=False,
            supports_summarization=False,
            max_context_tokens=self._context_tokens,
        )

    def active_tier(self) -> ModelTier | None:
        return ModelTier.LOCAL

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ensure_loaded(self) -> None:
        """Load the model unless it is already READY. Concurrent callers share one load."""
        if self._state == LocalModelState.READY:
            return
        async with self._lock:
            if self._state == LocalModelState.READY:
                return
            self._state = LocalModelState.LOADING
            logger.info("Loading local model %s", self.model)
            try:
                response = await self._http.post(
                    "/api/generate",
                    json={"model": self.model, "prompt": "", "keep_alive": self._keep_alive},
                )
            except httpx.HTTPError as e:
                self._fail(f"Local runtime unreachable: {e}")
                raise ModelLoadError(self._last_error or "") from e
            if response.status_code != 200:
                self._fail(f"Failed to load {self.model} ({response.status_code}): {response.text[:200]}")
                raise ModelLoadError(self._last_error or "", response.status_code)
            self._state = LocalModelState.READY
            self._last_error = None
            logger.info("Local model %s ready", self.model)

    async def unload(self) -> None:
        async with self._lock:
            if self._state != LocalModelState.READY:
                return
            self._state = LocalModelState.UNLOADING
            try:
                await self._http.post(
                    "/api/generate",
                    json={"model": self.model, "prompt": "", "keep_alive": 0},
                )
            except httpx.HTTPError as e:
                logger.warning("Unload request failed for %s: %s", self.model, e)
            self._state = LocalModelState.UNLOADED
            logger.info("Local model %s unloaded", self.model)

    def _fail(self, message: str) -> None:
        self._state = LocalModelState.ERROR
        self._last_error = message
        logger.error(message)

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    async def chat(self, system_prompt: str, turns: list[Turn]) -> TokenStream:
        return await self._stream(system_prompt, turns, temperature=0.8)

    async def agent(self, system_prompt: str, turns: list[Turn]) -> TokenStream:
        return await self._stream(system_prompt, turns, temperature=0.4)

    async def _stream(self, system_prompt: str, turns: list[Turn], temperature: float) -> TokenStream:
        await self.ensure_loaded()
        payload = {
            "model": self.model,
            "messages": _build_messages(system_prompt, turns),
            "stream": True,
            "keep_alive": self._keep_alive,
            "options": {"temperature": temperature, "num_ctx": self._context_tokens},
        }
        request = self._http.build_request("POST", "/api/chat", json=payload)
        try:
            response = await self._http.send(request, stream=True)
        except httpx.HTTPError as e:
            raise ProviderError(f"Local runtime unreachable: {e}") from e
        if response.status_code != 200:
            body = (await response.aread()).decode(errors="replace")
            await response.aclose()
            raise ProviderError(
                f"Local inference failed ({response.status_code}): {body[:200]}",
                response.status_code,
            )
        return self._iter_fragments(response)

    async def _iter_fragments(self, response: httpx.Response) -> AsyncIterator[str]:
        try:
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                except ValueError:
                    logger.debug("Skipping malformed line from local runtime")
                    continue
                if data.get("error"):
                    raise ProviderError(f"Local inference failed: {data['error']}")
                text = (data.get("message") or {}).get("content", "")
                if text:
                    yield text
                if data.get("done"):
                    break
        except httpx.HTTPError as e:
            raise ProviderError(f"Local stream interrupted: {e}") from e
        finally:
            await response.aclose()


def _build_messages(system_prompt: str, turns: list[Turn]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for turn in turns:
        role = "assistant" if turn.role == Role.MODEL else "user"
        messages.append({"role": role, "content": turn.content})
    return messages


def build_local_provider(settings: Settings, http: httpx.AsyncClient) -> LocalProvider:
    return LocalProvider(
        http,
        model=settings.local_model,
        context_tokens=settings.local_context_tokens,
        keep_alive=settings.local_keep_alive,
    )
