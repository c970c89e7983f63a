#!/usr/bin/env python3
"""Centralized configuration with validation and sensible defaults."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv

from support_rag.errors import ConfigurationError

load_dotenv()


def _get_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name)
    return val if val is not None else (default or "")


def _parse_float(name: str, default: float) -> float:
    try:
        return float(_get_env(name, str(default)))
    except ValueError:
        return default


def _parse_int(name: str, default: int) -> int:
    try:
        return int(_get_env(name, str(default)))
    except ValueError:
        raise ConfigurationError(f"Invalid {name}; must be integer.")


# Provider
PROVIDER: str = _get_env("AI_PROVIDER", "zhipu").strip().lower()
ZHIPU_BASE_URL: str = _get_env("ZHIPU_BASE_URL", "https://open.bigmodel.cn/api/paas/v4").rstrip("/")

CHAT_MODEL: str = _get_env("CHAT_MODEL", "glm-4.7")
EMBEDDING_MODEL: str = _get_env("EMBEDDING_MODEL", "embedding-3")
VISION_MODEL: str = _get_env("VISION_MODEL", "GLM-4.6V")
VISION_FALLBACK_MODEL: str = _get_env("VISION_FALLBACK_MODEL", "GLM-4.6V-Flash")
SPEECH_MODEL: str = _get_env("SPEECH_MODEL", "glm-4-voice")

LLM_TEMPERATURE: float = _parse_float("LLM_TEMPERATURE", 0.1)
LLM_MAX_TOKENS: int = _parse_int("LLM_MAX_TOKENS", 1024)

# Embeddings
EMBEDDING_DIM: int = _parse_int("EMBEDDING_DIM", 768)
if EMBEDDING_DIM <= 0:
    raise ConfigurationError("EMBEDDING_DIM must be positive.")

# Retrieval
SIMILARITY_THRESHOLD: float = _parse_float("SIMILARITY_THRESHOLD", 0.3)
if not (-1.0 <= SIMILARITY_THRESHOLD <= 1.0):
    raise ConfigurationError("SIMILARITY_THRESHOLD must be in [-1,1].")
TOP_K: int = _parse_int("TOP_K", 5)
KEYWORD_TOP_K: int = _parse_int("KEYWORD_TOP_K", 5)
LAZY_VECTORIZE: bool = _get_env("LAZY_VECTORIZE", "true").strip().lower() in ("1", "true", "yes")

# Timeouts and streaming cadence
REQUEST_TIMEOUT_SECONDS: float = _parse_float("REQUEST_TIMEOUT_SECONDS", 60.0)
if REQUEST_TIMEOUT_SECONDS <= 0:
    raise ConfigurationError("REQUEST_TIMEOUT_SECONDS must be positive.")
SMOOTHING_INTERVAL_MS: int = _parse_int("SMOOTHING_INTERVAL_MS", 30)
CANNED_CHAR_DELAY_MS: int = _parse_int("CANNED_CHAR_DELAY_MS", 0)

# Retries for transient provider failures (attempts, first backoff in seconds)
RETRIES: int = _parse_int("RETRIES", 3)
if RETRIES < 1:
    raise ConfigurationError("RETRIES must be at least 1.")
BACKOFF: float = _parse_float("BACKOFF", 0.75)

# Embedding cache
EMBEDDING_CACHE_SIZE: int = _parse_int("EMBEDDING_CACHE_SIZE", 2048)
EMBEDDING_CACHE_TTL: int = _parse_int("EMBEDDING_CACHE_TTL", 1800)

# Circuit breaker
BREAKER_FAILURE_THRESHOLD: int = _parse_int("BREAKER_FAILURE_THRESHOLD", 3)
BREAKER_RECOVERY_SECONDS: float = _parse_float("BREAKER_RECOVERY_SECONDS", 30.0)

# Logging
LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO").upper()
LOG_FILE: str = _get_env("LOG_FILE", "")

# HTTP surface
HOST: str = _get_env("HOST", "0.0.0.0")
PORT: int = _parse_int("PORT", 8000)
CORS_ALLOWED_ORIGINS: List[str] = [
    s.strip() for s in _get_env("CORS_ALLOWED_ORIGINS", "http://localhost:5173").split(",") if s.strip()
]

# Zhipu keys look like "<id>.<secret>"; accept any reasonably long token without whitespace
_API_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._\-]{16,128}$")


def is_plausible_api_key(key: Optional[str]) -> bool:
    """Light format check; the provider is the final judge of validity."""
    if not key or not key.strip():
        return False
    return bool(_API_KEY_PATTERN.match(key.strip()))


@dataclass
class ProviderConfig:
    """Everything a single call needs to talk to the AI provider.

    Passed explicitly into every call instead of living on a shared client,
    so concurrent sessions can carry different credentials.
    """
    provider: str = PROVIDER
    api_key: Optional[str] = None
    base_url: str = ZHIPU_BASE_URL
    chat_model: str = CHAT_MODEL
    embedding_model: str = EMBEDDING_MODEL
    vision_model: str = VISION_MODEL
    vision_fallback_model: str = VISION_FALLBACK_MODEL
    speech_model: str = SPEECH_MODEL
    embedding_dim: int = EMBEDDING_DIM
    timeout_seconds: float = REQUEST_TIMEOUT_SECONDS
    temperature: float = LLM_TEMPERATURE
    max_tokens: int = LLM_MAX_TOKENS
    multimodal_enabled: bool = True

    @property
    def has_credential(self) -> bool:
        return is_plausible_api_key(self.api_key)

    @classmethod
    def from_env(cls, session_key: Optional[str] = None, **overrides) -> "ProviderConfig":
        """Resolve the API key: ZHIPU_API_KEY env var first, then the session override."""
        env_key = os.getenv("ZHIPU_API_KEY", "").strip()
        key = env_key or (session_key.strip() if session_key else "") or None
        return cls(api_key=key, **overrides)

    def redacted(self) -> dict:
        return {
            "provider": self.provider,
            "base_url": self.base_url,
            "chat_model": self.chat_model,
            "embedding_model": self.embedding_model,
            "vision_model": self.vision_model,
            "embedding_dim": self.embedding_dim,
            "timeout_seconds": self.timeout_seconds,
            "has_credential": self.has_credential,
        }


@dataclass
class RetrievalSettings:
    """Knobs for vector-first retrieval with keyword fallback."""
    similarity_threshold: float = SIMILARITY_THRESHOLD
    top_k: int = TOP_K
    keyword_top_k: int = KEYWORD_TOP_K
    embedding_dim: int = EMBEDDING_DIM
    lazy_vectorize: bool = LAZY_VECTORIZE


def health_summary() -> dict:
    """Return a health summary for /healthz and /config."""
    return {
        "provider": PROVIDER,
        "base_url": ZHIPU_BASE_URL,
        "chat_model": CHAT_MODEL,
        "embedding_model": EMBEDDING_MODEL,
        "embedding_dim": EMBEDDING_DIM,
        "similarity_threshold": SIMILARITY_THRESHOLD,
        "top_k": TOP_K,
        "lazy_vectorize": LAZY_VECTORIZE,
        "timeout_seconds": REQUEST_TIMEOUT_SECONDS,
        "smoothing_interval_ms": SMOOTHING_INTERVAL_MS,
        "credential_configured": is_plausible_api_key(os.getenv("ZHIPU_API_KEY")),
    }
