"""
AI provider capability interface.

Every provider implements the same methods; code that needs a capability asks
the registry for a provider instead of branching on the provider name.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, FrozenSet, List, Optional, Type

from support_rag.config import ProviderConfig


class Capability(str, Enum):
    EMBEDDINGS = "embeddings"
    COMPLETION = "completion"
    VISION = "vision"
    SPEECH = "speech"


Message = Dict[str, Any]


class AIProvider(ABC):
    """Provider adapter. Credentials travel in the ProviderConfig of each call."""

    name: str = "base"
    capabilities: FrozenSet[Capability] = frozenset()

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @abstractmethod
    async def embed(self, texts: List[str], config: ProviderConfig) -> List[List[float]]:
        """One vector per input, in input order."""

    @abstractmethod
    def stream_chat(
        self,
        messages: List[Message],
        config: ProviderConfig,
        params: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[bytes]:
        """Raw SSE body bytes of a streaming chat completion, as received."""

    @abstractmethod
    async def complete(
        self,
        messages: List[Message],
        config: ProviderConfig,
        params: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Non-streaming chat completion text."""

    @abstractmethod
    async def analyze_image(self, image_url: str, prompt: str, config: ProviderConfig) -> str:
        """Answer a prompt about an image (data URI or URL)."""

    @abstractmethod
    async def transcribe(self, audio_b64: str, config: ProviderConfig, audio_format: str = "wav") -> str:
        """Speech to text."""

    async def aclose(self) -> None:
        return None


_REGISTRY: Dict[str, Callable[[], AIProvider]] = {}


def register_provider(name: str) -> Callable[[Type[AIProvider]], Type[AIProvider]]:
    """Class decorator: make a provider available under `name`."""
    def decorator(cls: Type[AIProvider]) -> Type[AIProvider]:
        _REGISTRY[name.lower()] = cls
        return cls
    return decorator


def registered_providers() -> List[str]:
    return sorted(_REGISTRY)


def create_provider(name: str) -> AIProvider:
    factory = _REGISTRY.get(name.lower())
    if factory is None:
        raise KeyError(f"Unknown AI provider '{name}' (registered: {registered_providers()})")
    return factory()
