"""
Store Circuit Breaker

Sits in front of remote store calls. After repeated transient failures
the breaker opens and calls fail fast with ``CircuitOpenError`` instead
of each waiting out the operation timeout.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

from ...core.clock import Clock, system_clock
from ...domain.cache.exceptions import CircuitOpenError, TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """
    Breaker thresholds.

    Only ``failure_exceptions`` trip the breaker; anything else (a
    serialization error, a bad command) passes through uncounted.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 2
    failure_exceptions: Tuple[Type[BaseException], ...] = (TransientStoreError,)


@dataclass
class CircuitBreakerMetrics:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    circuit_opens: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None

    @property
    def failure_rate(self) -> float:
        attempted = self.successful_calls + self.failed_calls
        return self.failed_calls / attempted if attempted else 0.0


class StoreCircuitBreaker:
    """
    CLOSED → OPEN after ``failure_threshold`` consecutive failures;
    OPEN → HALF_OPEN once ``recovery_timeout`` has elapsed since the last
    failure; HALF_OPEN → CLOSED after ``success_threshold`` successes, or
    straight back to OPEN on the first failure.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or CircuitBreakerConfig()
        self.clock = clock or system_clock
        self.metrics = CircuitBreakerMetrics()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self._lock = asyncio.Lock()

    def _move_to(self, state: CircuitState, **context: Any) -> None:
        previous, self.state = self.state, state
        self.success_count = 0
        if state == CircuitState.OPEN:
            self.metrics.circuit_opens += 1
            logger.warning(
                "Store circuit opened",
                extra={"from_state": previous.value, **context},
            )
        else:
            if state == CircuitState.CLOSED:
                self.failure_count = 0
            logger.info(
                f"Store circuit {previous.value} -> {state.value}",
                extra=context,
            )

    def _recovery_elapsed(self) -> bool:
        if self.last_failure_time is None:
            return True
        return self.clock.now() - self.last_failure_time >= self.config.recovery_timeout

    async def _admit(self) -> None:
        async with self._lock:
            self.metrics.total_calls += 1
            if self.state != CircuitState.OPEN:
                return
            if not self._recovery_elapsed():
                self.metrics.rejected_calls += 1
                raise CircuitOpenError()
            self._move_to(CircuitState.HALF_OPEN, failure_count=self.failure_count)

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` unless the circuit is open.

        Raises:
            CircuitOpenError: The circuit is open and still cooling down
        """
        await self._admit()
        try:
            result = await func(*args, **kwargs)
        except self.config.failure_exceptions as e:
            await self._on_failure(e)
            raise
        await self._on_success()
        return result

    async def _on_success(self) -> None:
        async with self._lock:
            self.metrics.successful_calls += 1
            self.metrics.last_success_time = self.clock.now()
            if self.state == CircuitState.CLOSED:
                self.failure_count = 0
                return
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED, successes=self.success_count)

    async def _on_failure(self, error: BaseException) -> None:
        async with self._lock:
            now = self.clock.now()
            self.metrics.failed_calls += 1
            self.metrics.last_failure_time = now
            self.last_failure_time = now
            error_type = type(error).__name__

            if self.state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN, trial_failed=True, error_type=error_type)
                return
            self.failure_count += 1
            if self.state == CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
                self._move_to(
                    CircuitState.OPEN,
                    failure_count=self.failure_count,
                    threshold=self.config.failure_threshold,
                    error_type=error_type,
                )

    def get_status(self) -> Dict[str, Any]:
        """Breaker state, counters and thresholds for health reporting."""
        metrics = self.metrics
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "metrics": {
                "total_calls": metrics.total_calls,
                "successful_calls": metrics.successful_calls,
                "failed_calls": metrics.failed_calls,
                "rejected_calls": metrics.rejected_calls,
                "failure_rate": metrics.failure_rate,
                "circuit_opens": metrics.circuit_opens,
            },
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "recovery_timeout": self.config.recovery_timeout,
                "success_threshold": self.config.success_threshold,
            },
        }

    async def reset(self) -> None:
        """Force the circuit closed and forget past failures."""
        async with self._lock:
            self.last_failure_time = None
            if self.state != CircuitState.CLOSED:
                self._move_to(CircuitState.CLOSED, manual=True)
            self.failure_count = 0
            self.success_count = 0
