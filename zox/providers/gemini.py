"""Streaming client for the Gemini API serving the Gemma model tiers.

Gemma models take no dedicated system field, so the system prompt is sent
as a leading user turn followed by a canned model acknowledgement. Streams
use streamGenerateContent?alt=sse; every `data:` line carries zero or more
text parts or an error object.

HTTP 429 rotates the API key and raises RateLimitError so the cascade can
step down one tier.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from zox.agent.memory import Role, Turn
from zox.providers.base import (
    InvalidCredentialError,
    ModelTier,
    ProviderError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

SYSTEM_ACK = "I understand the system instructions. I am ready to act as the AI coding agent."

_ROLE_MAP = {"user": "user", "tool": "user", "model": "model", "assistant": "model"}

_SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_NONE"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]


class KeyManager:
    """Round-robin API key rotation.

    The lock is only held for the index update, never across an await.
    """

    def __init__(self, keys: list[str]) -> None:
        self._keys = list(keys)
        self._index = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._keys)

    def current(self) -> str:
        with self._lock:
            if not self._keys:
                raise InvalidCredentialError("No API keys configured (set GEMINI_API_KEYS)")
            return self._keys[self._index]

    def rotate(self) -> str | None:
        with self._lock:
            if not self._keys:
                return None
            self._index = (self._index + 1) % len(self._keys)
            logger.info("Rotated to API key %d/%d", self._index + 1, len(self._keys))
            return self._keys[self._index]


@dataclass
class StreamEvent:
    """A single parsed SSE payload."""

    type: str  # text, error
    text: str = ""
    code: int | None = None


def build_contents(system_prompt: str, turns: list[Turn]) -> list[dict[str, Any]]:
    """Map turns onto the two-role wire scheme with the system prompt pair in front."""
    contents: list[dict[str, Any]] = []
    if system_prompt:
        contents.append({
            "role": "user",
            "parts": [{
                "text": f"SYSTEM INSTRUCTION:\n{system_prompt}\n\n"
                        "CONFIRM YOU UNDERSTAND BY ACKNOWLEDGING.",
            }],
        })
        contents.append({"role": "model", "parts": [{"text": SYSTEM_ACK}]})
    for turn in turns:
        role = turn.role.value if isinstance(turn.role, Role) else str(turn.role)
        contents.append({"role": _ROLE_MAP.get(role, "user"), "parts": [{"text": turn.content}]})
    return contents


def _parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse one SSE JSON payload into a StreamEvent.

    Error payloads arrive with HTTP 200 inside the stream. Payloads without
    text (usage metadata, finish reasons) return None.
    """
    if "error" in data:
        error = data.get("error") or {}
        return StreamEvent(
            type="error",
            text=str(error.get("message", "unknown error")),
            code=error.get("code"),
        )

    parts_text = []
    for candidate in data.get("candidates") or []:
        content = candidate.get("content") or {}
        for part in content.get("parts") or []:
            text = part.get("text")
            if text:
                parts_text.append(text)
    if not parts_text:
        return None
    return StreamEvent(type="text", text="".join(parts_text))


def _error_from_status(status_code: int, body: str) -> ProviderError:
    """Map an HTTP failure onto the provider error taxonomy."""
    message = body[:500]
    try:
        payload = json.loads(body)
        message = payload.get("error", {}).get("message", message)
    except (ValueError, AttributeError):
        pass

    if status_code == 429:
        return RateLimitError(f"Rate limited: {message}", status_code)
    if status_code in (401, 403) or (status_code == 400 and "API key" in message):
        return InvalidCredentialError(f"Invalid API key: {message}", status_code)
    return ProviderError(f"API error ({status_code}): {message}", status_code)


class GemmaClient:
    """One model tier on the Gemini API."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        keys: KeyManager,
        tier: ModelTier,
        model: str,
    ) -> None:
        self._http = http
        self._keys = keys
        self.tier = tier
        self.model = model

    def __repr__(self) -> str:
        return f"GemmaClient(tier={self.tier.name}, model={self.model})"

    def _generation_config(self, is_agent: bool) -> dict[str, Any]:
        return {
            "temperature": 0.4 if is_agent else 0.8,
            "topP": 0.95,
            "topK": 40,
            "maxOutputTokens": 8192,
        }

    async def stream(
        self,
        system_prompt: str,
        turns: list[Turn],
        is_agent: bool = False,
    ) -> AsyncIterator[str]:
        """Open a streaming completion and return an iterator of text fragments.

        Raises before returning if the request fails (429 included), so the
        caller can fail over without having consumed any output.
        """
        payload = {
            "contents": build_contents(system_prompt, turns),
            "generationConfig": self._generation_config(is_agent),
            "safetySettings": _SAFETY_SETTINGS,
        }
        request = self._http.build_request(
            "POST",
            f"/models/{self.model}:streamGenerateContent",
            params={"alt": "sse", "key": self._keys.current()},
            json=payload,
        )
        try:
            response = await self._http.send(request, stream=True)
        except httpx.HTTPError as e:
            raise ProviderError(f"Network error calling {self.model}: {e}") from e

        if response.status_code != 200:
            body = (await response.aread()).decode(errors="replace")
            await response.aclose()
            if response.status_code == 429:
                self._keys.rotate()
            raise _error_from_status(response.status_code, body)

        return self._iter_fragments(response)

    async def _iter_fragments(self, response: httpx.Response) -> AsyncIterator[str]:
        try:
            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                try:
                    data = json.loads(line[6:])
                except ValueError:
                    logger.debug("Skipping malformed SSE line from %s", self.model)
                    continue
                event = _parse_sse_event(data)
                if event is None:
                    continue
                if event.type == "error":
                    if event.code == 429:
                        self._keys.rotate()
                        raise RateLimitError(f"Rate limited: {event.text}", 429)
                    raise ProviderError(f"Stream error from {self.model}: {event.text}", event.code)
                yield event.text
        except httpx.HTTPError as e:
            raise ProviderError(f"Stream interrupted from {self.model}: {e}") from e
        finally:
            await response.aclose()

    async def generate(
        self,
        prompt: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        """One-shot, non-streaming completion."""
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        try:
            response = await self._http.post(
                f"/models/{self.model}:generateContent",
                params={"key": self._keys.current()},
                json=payload,
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"Network error calling {self.model}: {e}") from e

        if response.status_code != 200:
            if response.status_code == 429:
                self._keys.rotate()
            raise _error_from_status(response.status_code, response.text)

        event = _parse_sse_event(response.json())
        if event is None:
            return ""
        if event.type == "error":
            raise ProviderError(f"API error from {self.model}: {event.text}", event.code)
        return event.text

    async def classify(self, text: str) -> str:
        prompt = f'Classify as SIMPLE or COMPLEX: "{text[:100]}"'
        return await self.generate(prompt, temperature=0.0, max_tokens=5)

    async def summarize(self, turns: list[Turn]) -> str:
        recent = turns[-5:]
        transcript = " | ".join(
            f"{turn.role.value}: {turn.content[:100]}" for turn in recent
        )
        prompt = f"Summarize in 2 sentences: {transcript}"
        return await self.generate(prompt, temperature=0.2, max_tokens=100)
