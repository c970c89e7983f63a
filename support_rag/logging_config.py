"""
Centralized logging configuration for the support chat pipeline.

Provides unified logging across all modules using loguru.
Supports both console and file output with structured logging.
"""

from __future__ import annotations

import json
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger

from support_rag import config as CFG

_SECRET_PATTERNS = [
    (re.compile(r"Bearer\s+[^\s\"']+", re.IGNORECASE), "Bearer ***"),
    (re.compile(r"(api[_-]?key[\"']?\s*[:=]\s*[\"']?)[^\s\"'&,]+", re.IGNORECASE), r"\1***"),
]


def redact_secrets(text: Any) -> str:
    """Mask bearer tokens and api keys in free text."""
    out = str(text)
    for pattern, repl in _SECRET_PATTERNS:
        out = pattern.sub(repl, out)
    return out


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure unified logging for the whole service.

    This should be called once at application startup.
    """
    level = (level or CFG.LOG_LEVEL).upper()

    # Remove default handler
    logger.remove()

    logger.add(
        sys.stderr,
        format=(
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level=level,
        colorize=True,
    )

    if CFG.LOG_FILE:
        logger.add(
            CFG.LOG_FILE,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name}:{function}:{line} - "
                "{message}"
            ),
            level=level,
            rotation="500 MB",
            retention="7 days",
            compression="zip",
        )

    logger.info(f"Logging configured: level={level}")


def log_structured(event_type: str, data: Dict[str, Any], level: str = "info") -> None:
    """
    Log structured data as JSON.

    Args:
        event_type: Type of event (e.g., 'retrieval_completed', 'error_occurred')
        data: Dictionary of data to log
        level: Log level (debug, info, warning, error, critical)
    """
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event_type,
        **data,
    }

    if log_entry.get("error"):
        log_entry["error"] = redact_secrets(log_entry["error"])
    if log_entry.get("message"):
        log_entry["message"] = redact_secrets(log_entry["message"])

    log_func = getattr(logger, level.lower(), logger.info)
    log_func(json.dumps(log_entry, ensure_ascii=False, default=str))


def log_retrieval(
    query: str,
    strategy: str,
    latency_ms: int,
    results_count: int,
    candidates: Optional[int] = None,
) -> None:
    """Log a retrieval call."""
    log_structured(
        "retrieval_completed",
        {
            "query": query[:100],  # Truncate long queries
            "strategy": strategy,
            "latency_ms": latency_ms,
            "results_count": results_count,
            "candidates": candidates,
        },
    )


def log_embedding(inputs: int, latency_ms: int, model: str, cache_hit: bool = False) -> None:
    """Log an embedding call."""
    log_structured(
        "embedding_generated",
        {
            "inputs": inputs,
            "model": model,
            "latency_ms": latency_ms,
            "cache_hit": cache_hit,
        },
        level="debug",
    )


def log_llm_call(
    model: str,
    latency_ms: int,
    finish_reason: Optional[str] = None,
    chunks: Optional[int] = None,
    skipped_frames: int = 0,
) -> None:
    """Log a completed chat completion call."""
    log_structured(
        "llm_call_completed",
        {
            "model": model,
            "latency_ms": latency_ms,
            "finish_reason": finish_reason,
            "chunks": chunks,
            "skipped_frames": skipped_frames,
        },
    )


def log_error(error_type: str, message: str, status: Optional[int] = None, **kwargs: Any) -> None:
    """Log an error with context."""
    log_structured(
        "error_occurred",
        {
            "error_type": error_type,
            "message": message,
            "status": status,
            **kwargs,
        },
        level="error",
    )
