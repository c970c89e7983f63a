"""Provider lookup by name; one shared instance per provider."""

from __future__ import annotations

from threading import Lock
from typing import Dict, Optional

from loguru import logger

from support_rag.config import ProviderConfig
from support_rag.providers.base import AIProvider, create_provider
# Imported for its @register_provider side effect
from support_rag.providers import zhipu  # noqa: F401

_instances: Dict[str, AIProvider] = {}
_lock = Lock()


def get_provider(config: Optional[ProviderConfig] = None) -> AIProvider:
    """Return the shared provider for config.provider (default: configured provider)."""
    config = config or ProviderConfig()
    name = config.provider.lower()
    with _lock:
        provider = _instances.get(name)
        if provider is None:
            provider = create_provider(name)
            _instances[name] = provider
            logger.info(f"AI provider initialized: {name}")
        return provider


def set_provider(name: str, provider: AIProvider) -> None:
    """Install a provider instance (tests inject mock transports this way)."""
    with _lock:
        _instances[name.lower()] = provider


async def close_providers() -> None:
    with _lock:
        providers = list(_instances.values())
        _instances.clear()
    for provider in providers:
        await provider.aclose()
