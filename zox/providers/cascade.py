"""Cloud cascade: tiered Gemma clients with rate-limit failover.

CascadeExecutor owns one GemmaClient per tier. A rate-limited tier steps
down (or across) exactly once:
  basic chat    -> advanced chat
  advanced chat -> basic chat
  agent         -> advanced chat
Any other error, or a second failure, is surfaced. Summaries use their own
tier without failover.

CloudProvider puts the router in front and implements ModelProvider.
"""

from __future__ import annotations

import logging

import httpx

from zox.agent.memory import Role, Turn
from zox.config import Settings
from zox.providers.base import (
    Complexity,
    ModelProvider,
    ModelTier,
    ProviderCapabilities,
    ProviderError,
    RateLimitError,
    TokenStream,
)
from zox.providers.gemini import GemmaClient, KeyManager
from zox.providers.router import ModelRouter

logger = logging.getLogger(__name__)

CLOUD_CAPABILITIES = ProviderCapabilities(
    supports_tools=True,
    supports_streaming=True,
    supports_cascade=True,
    supports_summarization=True,
    max_context_tokens=128000,
)

_CHAT_FALLBACK = {
    ModelTier.BASIC_CHAT: ModelTier.ADVANCED_CHAT,
    ModelTier.ADVANCED_CHAT: ModelTier.BASIC_CHAT,
}


class CascadeExecutor:
    """Runs requests against a tier with one-step rate-limit failover."""

    def __init__(self, clients: dict[ModelTier, GemmaClient]) -> None:
        self._clients = clients
        self.last_tier: ModelTier | None = None

    def client(self, tier: ModelTier) -> GemmaClient:
        return self._clients[tier]

    async def _with_failover(
        self,
        primary: ModelTier,
        fallback: ModelTier,
        system_prompt: str,
        turns: list[Turn],
        is_agent: bool,
    ) -> TokenStream:
        try:
            stream = await self._clients[primary].stream(system_prompt, turns, is_agent)
            self.last_tier = primary
            return stream
        except RateLimitError as e:
            logger.warning(
                "%s rate limited, falling back to %s: %s", primary.name, fallback.name, e
            )

        try:
            stream = await self._clients[fallback].stream(system_prompt, turns, is_agent)
        except ProviderError as e:
            raise ProviderError(
                f"All models failed ({primary.name} rate limited, {fallback.name}: {e})",
                e.status_code,
            ) from e
        self.last_tier = fallback
        return stream

    async def execute_chat(
        self, tier: ModelTier, system_prompt: str, turns: list[Turn]
    ) -> TokenStream:
        fallback = _CHAT_FALLBACK.get(tier, ModelTier.ADVANCED_CHAT)
        return await self._with_failover(tier, fallback, system_prompt, turns, is_agent=False)

    async def execute_agent(self, system_prompt: str, turns: list[Turn]) -> TokenStream:
        return await self._with_failover(
            ModelTier.AGENT, ModelTier.ADVANCED_CHAT, system_prompt, turns, is_agent=True
        )

    async def summarize(self, turns: list[Turn]) -> str:
        return await self._clients[ModelTier.SUMMARIZER].summarize(turns)


class CloudProvider(ModelProvider):
    """Router + cascade over the cloud Gemma tiers."""

    kind = "cloud"

    def __init__(self, cascade: CascadeExecutor, router: ModelRouter) -> None:
        self._cascade = cascade
        self._router = router
        self._active: ModelTier | None = None

    def capabilities(self) -> ProviderCapabilities:
        return CLOUD_CAPABILITIES

    def active_tier(self) -> ModelTier | None:
        return self._active

    async def chat(self, system_prompt: str, turns: list[Turn]) -> TokenStream:
        latest = next((t.content for t in reversed(turns) if t.role == Role.USER), "")
        complexity = await self._router.classify(latest)
        tier = ModelTier.ADVANCED_CHAT if complexity == Complexity.COMPLEX else ModelTier.BASIC_CHAT
        self._active = tier
        stream = await self._cascade.execute_chat(tier, system_prompt, turns)
        self._active = self._cascade.last_tier
        return stream

    async def agent(self, system_prompt: str, turns: list[Turn]) -> TokenStream:
        self._active = ModelTier.AGENT
        stream = await self._cascade.execute_agent(system_prompt, turns)
        self._active = self._cascade.last_tier
        return stream

    async def classify(self, text: str) -> Complexity | None:
        return await self._router.classify(text)

    async def summarize(self, turns: list[Turn]) -> str | None:
        try:
            summary = await self._cascade.summarize(turns)
        except ProviderError as e:
            logger.warning("Summary failed: %s", e)
            return None
        return summary.strip() or None


def build_cloud_provider(
    settings: Settings,
    http: httpx.AsyncClient,
    keys: KeyManager | None = None,
) -> CloudProvider:
    """Wire one client per tier around a shared key manager."""
    if keys is None:
        keys = KeyManager(settings.api_keys)
    models = {
        ModelTier.ROUTER: settings.router_model,
        ModelTier.BASIC_CHAT: settings.basic_model,
        ModelTier.ADVANCED_CHAT: settings.advanced_model,
        ModelTier.AGENT: settings.agent_model,
        ModelTier.SUMMARIZER: settings.summarizer_model,
    }
    clients = {tier: GemmaClient(http, keys, tier, model) for tier, model in models.items()}
    cascade = CascadeExecutor(clients)
    router = ModelRouter(clients[ModelTier.ROUTER])
    return CloudProvider(cascade, router)
