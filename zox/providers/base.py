"""Model provider contract shared by the cloud cascade and the local model.

A provider streams text fragments for chat and agent requests. Streams are
returned by awaiting chat()/agent(): connection and HTTP-status failures
raise before the first fragment, mid-stream failures raise from the
iterator. Both raise ProviderError subclasses.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum

from zox.agent.memory import Turn

logger = logging.getLogger(__name__)

TokenStream = AsyncIterator[str]


class Complexity(str, Enum):
    SIMPLE = "simple"
    COMPLEX = "complex"


class ModelTier(Enum):
    """Model tiers with the short label shown to the user."""

    ROUTER = "1B"
    BASIC_CHAT = "4B"
    ADVANCED_CHAT = "12B"
    AGENT = "27B"
    SUMMARIZER = "2B"
    LOCAL = "Local"

    @property
    def label(self) -> str:
        return self.value


@dataclass(frozen=True)
class ProviderCapabilities:
    supports_tools: bool
    supports_streaming: bool
    supports_cascade: bool
    supports_summarization: bool
    max_context_tokens: int


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ProviderError(RuntimeError):
    """A model backend failed. Ends the current task."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(ProviderError):
    """HTTP 429 / quota exhausted. Retryable on another tier or key."""


class InvalidCredentialError(ProviderError):
    """API key rejected. Not retryable."""


class ModelLoadError(ProviderError):
    """The local model could not be loaded."""


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------


class ModelProvider(ABC):
    kind: str = ""

    @abstractmethod
    def capabilities(self) -> ProviderCapabilities: ...

    @abstractmethod
    async def chat(self, system_prompt: str, turns: list[Turn]) -> TokenStream:
        """Plain conversational completion."""

    @abstractmethod
    async def agent(self, system_prompt: str, turns: list[Turn]) -> TokenStream:
        """Tool-enabled completion; same streaming shape as chat()."""

    async def classify(self, text: str) -> Complexity | None:
        return None

    async def summarize(self, turns: list[Turn]) -> str | None:
        return None

    def active_tier(self) -> ModelTier | None:
        return None

    async def close(self) -> None:
        pass
