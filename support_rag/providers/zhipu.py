#!/usr/bin/env python3
"""
Zhipu (GLM) provider adapter.

OpenAI-compatible REST surface under https://open.bigmodel.cn/api/paas/v4:
- POST /embeddings for embedding-3 vectors (dimensions=768)
- POST /chat/completions for chat, streaming chat (SSE), vision and speech

No retries here; callers decide whether to degrade. Every failure is raised as
one of the errors in support_rag.errors with the upstream status kept for logs.
"""
from __future__ import annotations

import time
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from loguru import logger

from support_rag import metrics
from support_rag.config import ProviderConfig
from support_rag.errors import (
    CredentialMissingError,
    ProviderError,
    ProviderNetworkError,
    error_from_response,
)
from support_rag.logging_config import log_error, redact_secrets
from support_rag.providers.base import AIProvider, Capability, Message, register_provider


def _cap_response(text: str, max_len: int = 300) -> str:
    return text if len(text) <= max_len else text[:max_len] + "..."


@register_provider("zhipu")
class ZhipuProvider(AIProvider):
    """Async httpx adapter for the Zhipu open platform."""

    name = "zhipu"
    capabilities = frozenset(
        {Capability.EMBEDDINGS, Capability.COMPLETION, Capability.VISION, Capability.SPEECH}
    )

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_connections: int = 20,
        max_keepalive: int = 10,
    ) -> None:
        """
        Args:
            transport: Optional httpx transport (tests pass httpx.MockTransport)
            max_connections: Connection pool size
            max_keepalive: Keepalive connections kept in the pool
        """
        self._transport = transport
        self._limits = httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_keepalive)
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the pooled async client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(limits=self._limits, transport=self._transport)
            logger.debug("Created async HTTP client for Zhipu")
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _headers(config: ProviderConfig) -> Dict[str, str]:
        if not config.has_credential:
            raise CredentialMissingError()
        return {
            "Authorization": f"Bearer {config.api_key.strip()}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _url(config: ProviderConfig, path: str) -> str:
        return f"{config.base_url.rstrip('/')}/{path.lstrip('/')}"

    @staticmethod
    def _network_error(exc: httpx.HTTPError, config: ProviderConfig, operation: str) -> ProviderNetworkError:
        timed_out = isinstance(exc, httpx.TimeoutException)
        reason = "timed out" if timed_out else f"{type(exc).__name__}: {redact_secrets(exc)}"
        log_error("provider_network_error", f"{operation} {reason}", base_url=config.base_url)
        return ProviderNetworkError(
            f"{operation} to {config.base_url} {reason}",
            base_url=config.base_url,
            timed_out=timed_out,
            cause=exc,
        )

    @staticmethod
    def _raise_for_status(resp: httpx.Response, body: str, operation: str) -> None:
        if resp.is_success:
            return
        err = error_from_response(resp.status_code, body, retry_after=resp.headers.get("retry-after"))
        # Upstream status and message go to logs only
        log_error(type(err).__name__, redact_secrets(_cap_response(err.message)), status=resp.status_code,
                  operation=operation)
        raise err

    async def _post_json(self, path: str, payload: Dict[str, Any], config: ProviderConfig, operation: str) -> Dict[str, Any]:
        headers = self._headers(config)
        url = self._url(config, path)
        start = time.time()
        try:
            resp = await self._get_client().post(url, json=payload, headers=headers, timeout=config.timeout_seconds)
        except httpx.HTTPError as e:
            metrics.track_provider_call(operation, "network_error", time.time() - start)
            raise self._network_error(e, config, operation) from e

        metrics.track_provider_call(operation, str(resp.status_code), time.time() - start)
        self._raise_for_status(resp, resp.text, operation)
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(f"{operation}: response is not JSON", status=resp.status_code, cause=e) from e

    @staticmethod
    def _message_content(data: Dict[str, Any]) -> str:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("chat completion response has no choices[0].message", cause=e) from e
        return content or ""

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    async def embed(self, texts: List[str], config: ProviderConfig) -> List[List[float]]:
        payload = {"model": config.embedding_model, "input": list(texts), "dimensions": config.embedding_dim}
        data = await self._post_json("/embeddings", payload, config, "embeddings")
        rows = data.get("data")
        if not isinstance(rows, list) or len(rows) != len(texts):
            raise ProviderError(
                f"embeddings: expected {len(texts)} vectors, got {len(rows) if isinstance(rows, list) else 0}"
            )
        # Honor explicit indexes when present; otherwise rows are already in input order
        if all(isinstance(r, dict) and "index" in r for r in rows):
            rows = sorted(rows, key=lambda r: r["index"])
        return [list(r.get("embedding") or []) for r in rows]

    async def stream_chat(
        self,
        messages: List[Message],
        config: ProviderConfig,
        params: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[bytes]:
        headers = self._headers(config)
        payload: Dict[str, Any] = {
            "model": config.chat_model,
            "messages": messages,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
        }
        payload.update(params or {})
        payload["stream"] = True
        start = time.time()
        try:
            async with self._get_client().stream(
                "POST", self._url(config, "/chat/completions"), json=payload, headers=headers,
                timeout=config.timeout_seconds,
            ) as resp:
                metrics.track_provider_call("chat_stream", str(resp.status_code), time.time() - start)
                if not resp.is_success:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    self._raise_for_status(resp, body, "chat_stream")
                async for raw in resp.aiter_bytes():
                    yield raw
        except httpx.HTTPError as e:
            raise self._network_error(e, config, "chat_stream") from e

    async def complete(
        self,
        messages: List[Message],
        config: ProviderConfig,
        params: Optional[Dict[str, Any]] = None,
    ) -> str:
        payload: Dict[str, Any] = {
            "model": config.chat_model,
            "messages": messages,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
        }
        payload.update(params or {})
        payload["stream"] = False
        data = await self._post_json("/chat/completions", payload, config, "chat")
        return self._message_content(data)

    async def analyze_image(self, image_url: str, prompt: str, config: ProviderConfig) -> str:
        """Try the configured vision model, then the free fallback model."""
        content = [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": image_url}},
        ]
        messages = [{"role": "user", "content": content}]
        models = [config.vision_model]
        if config.vision_fallback_model and config.vision_fallback_model != config.vision_model:
            models.append(config.vision_fallback_model)

        last_error: Optional[Exception] = None
        for model in models:
            try:
                data = await self._post_json("/chat/completions", {"model": model, "messages": messages}, config, "vision")
                return self._message_content(data)
            except CredentialMissingError:
                raise
            except (ProviderError, ProviderNetworkError) as e:
                logger.warning(f"Vision model {model} failed: {e.message}")
                last_error = e
        assert last_error is not None
        raise last_error

    async def transcribe(self, audio_b64: str, config: ProviderConfig, audio_format: str = "wav") -> str:
        messages = [{
            "role": "user",
            "content": [{"type": "input_audio", "input_audio": {"data": audio_b64, "format": audio_format}}],
        }]
        payload = {"model": config.speech_model, "messages": messages, "temperature": 0.1}
        data = await self._post_json("/chat/completions", payload, config, "speech")
        return self._message_content(data)
