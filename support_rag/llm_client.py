"""
Streaming chat completion client.

Sends a system + user prompt to the provider with stream=true and turns the
SSE byte stream into StreamChunks. Malformed frames are skipped, the final
chunk always has is_done=True, and cancelling the awaiting task closes the
connection without further callbacks.
"""

from __future__ import annotations

import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from loguru import logger

from support_rag import config as CFG
from support_rag.config import ProviderConfig
from support_rag.logging_config import log_llm_call
from support_rag.models import StreamChunk
from support_rag.providers.base import AIProvider
from support_rag.providers.registry import get_provider
from support_rag.streaming import ChunkCoalescer, OnChunk, SSEDecoder, deliver


def build_messages(system_prompt: str, user_prompt: str) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": user_prompt})
    return messages


class StreamingCompletionClient:
    """Chat completions over SSE, exposed as an async iterator or a callback."""

    def __init__(self, provider: Optional[AIProvider] = None, smoothing_ms: int = CFG.SMOOTHING_INTERVAL_MS):
        self._provider = provider
        self.smoothing_ms = smoothing_ms

    def provider_for(self, config: ProviderConfig) -> AIProvider:
        return self._provider if self._provider is not None else get_provider(config)

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        config: ProviderConfig,
        params: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Yield chunks in the order their bytes arrived.

        Raises whatever the provider raises before or during the stream
        (CredentialMissingError, ProviderError, ProviderNetworkError).
        """
        provider = self.provider_for(config)
        decoder = SSEDecoder()
        start = time.time()
        count = 0
        finish_reason: Optional[str] = None

        async with aclosing(provider.stream_chat(build_messages(system_prompt, user_prompt), config, params)) as body:
            async for raw in body:
                for chunk in decoder.feed(raw):
                    count += 1
                    yield chunk
                    if chunk.is_done:
                        finish_reason = chunk.finish_reason
                        break
                if decoder.done:
                    break

        if not decoder.done:
            for chunk in decoder.flush():
                count += 1
                yield chunk
                finish_reason = chunk.finish_reason if chunk.is_done else finish_reason

        if not decoder.done:
            # Body ended without [DONE] or finish_reason
            logger.warning("Completion stream closed without a terminal frame")
            count += 1
            yield StreamChunk(text="", is_done=True, finish_reason=None)

        log_llm_call(
            model=config.chat_model,
            latency_ms=int((time.time() - start) * 1000),
            finish_reason=finish_reason,
            chunks=count,
            skipped_frames=decoder.skipped_frames,
        )

    async def stream_complete(
        self,
        system_prompt: str,
        user_prompt: str,
        config: ProviderConfig,
        on_chunk: Optional[OnChunk] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, Optional[str]]:
        """
        Stream a completion into on_chunk(text, is_done, finish_reason).

        Returns:
            (full answer text, finish reason)
        """
        chunks = self.stream(system_prompt, user_prompt, config, params)
        if self.smoothing_ms > 0:
            chunks = ChunkCoalescer(self.smoothing_ms)(chunks)
        return await deliver(chunks, on_chunk)

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        config: ProviderConfig,
        params: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Non-streaming completion."""
        start = time.time()
        text = await self.provider_for(config).complete(build_messages(system_prompt, user_prompt), config, params)
        log_llm_call(model=config.chat_model, latency_ms=int((time.time() - start) * 1000), finish_reason="stop")
        return text
