"""Model providers -- cloud cascade and local model behind one contract.

Public API:
    ModelProvider       - Abstract provider (chat/agent/classify/summarize)
    CloudProvider       - Router + tiered cascade with rate-limit failover
    LocalProvider       - Lazily loaded on-device model
    PROVIDER_BUILDERS   - Lookup table keyed by connection kind
    build_provider      - Construct a provider by kind
"""

from collections.abc import Callable

import httpx

from zox.config import Settings
from zox.providers.base import (
    Complexity,
    InvalidCredentialError,
    ModelLoadError,
    ModelProvider,
    ModelTier,
    ProviderCapabilities,
    ProviderError,
    RateLimitError,
)
from zox.providers.cascade import CascadeExecutor, CloudProvider, build_cloud_provider
from zox.providers.local import LocalModelState, LocalProvider, build_local_provider

ProviderBuilder = Callable[[Settings, httpx.AsyncClient], ModelProvider]

PROVIDER_BUILDERS: dict[str, ProviderBuilder] = {
    "cloud": build_cloud_provider,
    "local": build_local_provider,
}


def build_provider(kind: str, settings: Settings, http: httpx.AsyncClient) -> ModelProvider:
    try:
        builder = PROVIDER_BUILDERS[kind]
    except KeyError:
        raise ValueError(f"Unknown provider kind: {kind}") from None
    return builder(settings, http)


__all__ = [
    "CascadeExecutor",
    "CloudProvider",
    "Complexity",
    "InvalidCredentialError",
    "LocalModelState",
    "LocalProvider",
    "ModelLoadError",
    "ModelProvider",
    "ModelTier",
    "PROVIDER_BUILDERS",
    "ProviderCapabilities",
    "ProviderError",
    "RateLimitError",
    "build_provider",
]
