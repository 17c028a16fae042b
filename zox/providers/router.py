"""Complexity router for the cloud cascade.

Uses fast heuristics first, no LLM call needed:
  - inputs under 20 characters are SIMPLE
  - coding / debugging / analysis keywords are COMPLEX
  - greetings and short factual questions are SIMPLE
Only inputs matching none of these reach the router-tier model. Model
failures default to SIMPLE.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from zox.providers.base import Complexity, ProviderError

logger = logging.getLogger(__name__)

SHORT_INPUT_CHARS = 20

COMPLEX_KEYWORDS = (
    "create", "write", "modify", "edit", "fix", "debug", "implement", "build",
    "code", "function", "class", "file", "folder", "directory", "install",
    "run", "error", "bug", "issue", "why", "how does", "explain", "analyze",
    "compare", "difference",
)

SIMPLE_PATTERNS = (
    "hi", "hello", "hey", "thanks", "thank you", "bye", "goodbye",
    "ok", "okay", "yes", "no", "what is", "who is", "when",
)


class _Classifier(Protocol):
    async def classify(self, text: str) -> str: ...


def heuristic_complexity(text: str) -> Complexity | None:
    """Classify without a model call; None when undecided."""
    lowered = text.strip().lower()
    if len(lowered) < SHORT_INPUT_CHARS:
        return Complexity.SIMPLE
    if any(keyword in lowered for keyword in COMPLEX_KEYWORDS):
        return Complexity.COMPLEX
    if any(lowered == p or lowered.startswith(p) for p in SIMPLE_PATTERNS):
        return Complexity.SIMPLE
    return None


class ModelRouter:
    """Selects the chat tier for an input."""

    def __init__(self, classifier: _Classifier) -> None:
        self._classifier = classifier
        self.model_calls = 0

    async def classify(self, text: str) -> Complexity:
        decided = heuristic_complexity(text)
        if decided is not None:
            logger.debug("Router heuristic: %s", decided.value)
            return decided

        self.model_calls += 1
        try:
            reply = await self._classifier.classify(text)
        except (ProviderError, httpx.HTTPError, ValueError) as e:
            logger.warning("Router classification failed, defaulting to simple: %s", e)
            return Complexity.SIMPLE
        return Complexity.COMPLEX if "COMPLEX" in reply.upper() else Complexity.SIMPLE
