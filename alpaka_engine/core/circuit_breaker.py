"""
Circuit Breaker for model provider calls

Stops hammering a provider that keeps failing: after too many consecutive
failures, calls fail fast with ProviderError until a cool-down has passed.

States:
- CLOSED: Normal operation, requests go through
- OPEN: Too many failures, blocking requests (fast-fail)
- HALF_OPEN: Testing if the provider recovered (allows 1 request)

Example:
    breaker = get_circuit_breaker("openai")

    if breaker.is_open():
        raise ProviderError("openai circuit breaker is OPEN")

    try:
        result = await provider.generate(messages)
        breaker.record_success()
    except Exception:
        breaker.record_failure()
        raise
"""

import threading
import logging
from typing import Dict, Optional
from datetime import datetime

logger = logging.getLogger(__name__)


class CircuitBreakerState:
    """Circuit breaker states"""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """Circuit breaker for one provider backend."""

    def __init__(
        self,
        name: str = "provider",
        failure_threshold: int = 5,
        timeout: int = 300,
        half_open_max_calls: int = 1
    ):
        """
        Args:
            name: Backend name used in log lines
            failure_threshold: Number of consecutive failures before opening
            timeout: Seconds to wait before attempting recovery (HALF_OPEN)
            half_open_max_calls: Number of test calls allowed in HALF_OPEN state
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.half_open_max_calls = half_open_max_calls

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._half_open_calls = 0

        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def is_open(self) -> bool:
        """Check if circuit is open (blocking requests)"""
        with self._lock:
            if self._state == CircuitBreakerState.OPEN:
                if self._last_failure_time:
                    elapsed = (datetime.utcnow() - self._last_failure_time).total_seconds()
                    if elapsed >= self.timeout:
                        logger.info(f"CircuitBreaker[{self.name}]: OPEN -> HALF_OPEN (timeout passed)")
                        self._state = CircuitBreakerState.HALF_OPEN
                        self._half_open_calls = 0
                        return False
                return True

            if self._state == CircuitBreakerState.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    return True

            return False

    def record_success(self):
        """Record successful call (reset failure counter)"""
        with self._lock:
            self._failure_count = 0
            self._last_failure_time = None

            if self._state != CircuitBreakerState.CLOSED:
                logger.info(f"CircuitBreaker[{self.name}]: {self._state} -> CLOSED (success)")
                self._state = CircuitBreakerState.CLOSED
                self._half_open_calls = 0

    def record_failure(self):
        """Record failed call (increment failure counter)"""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.utcnow()

            # A failed test call re-opens immediately
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._state = CircuitBreakerState.OPEN
                logger.warning(
                    f"CircuitBreaker[{self.name}]: HALF_OPEN -> OPEN "
                    f"(test call failed, will retry in {self.timeout}s)"
                )
            elif self._state == CircuitBreakerState.CLOSED and self._failure_count >= self.failure_threshold:
                self._state = CircuitBreakerState.OPEN
                logger.error(
                    f"CircuitBreaker[{self.name}]: CLOSED -> OPEN "
                    f"({self._failure_count} consecutive failures, will retry in {self.timeout}s)"
                )

            if self._state == CircuitBreakerState.HALF_OPEN:
                self._half_open_calls += 1

    def reset(self):
        """Manually reset circuit breaker to CLOSED state"""
        with self._lock:
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._half_open_calls = 0

    def get_status(self) -> dict:
        """Get circuit breaker status (for monitoring)"""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "last_failure": self._last_failure_time.isoformat() if self._last_failure_time else None,
                "timeout_seconds": self.timeout,
            }


# ============================================================================
# PER-PROVIDER INSTANCES
# ============================================================================

_BREAKERS: Dict[str, CircuitBreaker] = {}
_BREAKERS_LOCK = threading.Lock()


def get_circuit_breaker(provider: str) -> CircuitBreaker:
    """Shared breaker for a provider name (created on first use)."""
    with _BREAKERS_LOCK:
        if provider not in _BREAKERS:
            _BREAKERS[provider] = CircuitBreaker(name=provider)
        return _BREAKERS[provider]


def reset_circuit_breakers() -> None:
    with _BREAKERS_LOCK:
        _BREAKERS.clear()
