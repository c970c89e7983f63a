"""
Circuit breaker for AI provider calls.

States:
- CLOSED: calls go to the provider
- OPEN: too many consecutive provider failures, the orchestrator answers
  from the canned path without touching the network
- HALF_OPEN: recovery timeout elapsed, a trial call is let through

A failure_filter lets callers decide which errors count; the orchestrator
counts provider failures only, never a missing or rejected credential.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from threading import RLock
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from loguru import logger

from support_rag import config as CFG
from support_rag.errors import CircuitOpenError

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    name: str = "provider"
    failure_threshold: int = CFG.BREAKER_FAILURE_THRESHOLD
    recovery_timeout_seconds: float = CFG.BREAKER_RECOVERY_SECONDS
    success_threshold: int = 1  # trial calls that must succeed in HALF_OPEN
    # Errors for which this returns False are not counted as failures
    failure_filter: Optional[Callable[[BaseException], bool]] = None


class CircuitBreaker:
    """Consecutive-failure breaker guarding one provider."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self._clock = clock
        self._lock = RLock()
        self._opened_at: Optional[float] = None
        self._half_open_successes = 0
        self.consecutive_failures = 0
        self.total_failures = 0
        self.total_successes = 0
        self.state_changes = 0

    def _maybe_half_open(self) -> None:
        if self.state == CircuitState.OPEN and self._opened_at is not None:
            elapsed = self._clock() - self._opened_at
            if elapsed >= self.config.recovery_timeout_seconds:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        if self.state == new_state:
            return
        logger.info(f"Circuit breaker '{self.config.name}': {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.state_changes += 1
        self._opened_at = self._clock() if new_state == CircuitState.OPEN else None
        self._half_open_successes = 0

    def allow(self) -> None:
        """Raise CircuitOpenError when calls must not reach the provider."""
        with self._lock:
            self._maybe_half_open()
            if self.state == CircuitState.OPEN:
                raise CircuitOpenError(
                    f"Circuit breaker '{self.config.name}' is OPEN", service=self.config.name
                )

    def is_open(self) -> bool:
        with self._lock:
            self._maybe_half_open()
            return self.state == CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            self.total_successes += 1
            self.consecutive_failures = 0
            if self.state == CircuitState.HALF_OPEN:
                self._half_open_successes += 1
                if self._half_open_successes >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        if error is not None and self.config.failure_filter is not None and not self.config.failure_filter(error):
            return
        with self._lock:
            self.total_failures += 1
            self.consecutive_failures += 1
            logger.warning(
                f"Circuit breaker '{self.config.name}' failure "
                f"({self.consecutive_failures}/{self.config.failure_threshold}): {error}"
            )
            # A failed trial call reopens immediately
            if self.state == CircuitState.HALF_OPEN or (
                self.consecutive_failures >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await func through the breaker, recording the outcome."""
        self.allow()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self.consecutive_failures = 0

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            self._maybe_half_open()
            return {
                "name": self.config.name,
                "state": self.state.value,
                "consecutive_failures": self.consecutive_failures,
                "failure_threshold": self.config.failure_threshold,
                "total_failures": self.total_failures,
                "total_successes": self.total_successes,
                "state_changes": self.state_changes,
            }


# ============================================================================
# Global Circuit Breaker Registry
# ============================================================================

_breakers: Dict[str, CircuitBreaker] = {}
_registry_lock = RLock()


def get_circuit_breaker(name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
    """Get or create a named circuit breaker."""
    with _registry_lock:
        breaker = _breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(config or CircuitBreakerConfig(name=name))
            _breakers[name] = breaker
        return breaker


def get_all_circuit_breakers() -> Dict[str, Dict[str, Any]]:
    with _registry_lock:
        return {name: b.get_status() for name, b in _breakers.items()}


def reset_all_circuit_breakers() -> None:
    """Forget every breaker (tests and admin resets)."""
    with _registry_lock:
        _breakers.clear()
