"""
Per-mapping retry and circuit breaking.

Error counters and breaker states are keyed by mapping id, so a repository
that keeps failing only ever slows down or blocks its own events.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .context import MappingContext
from .errors import CircuitOpenError, CorrelationMissError, CounterpartMissingError, OperationTimeoutError

T = TypeVar("T")

log = logging.getLogger("red.forum_sync.resilience")


@dataclass
class ErrorMetrics:
    total_errors: int = 0
    consecutive_errors: int = 0
    last_error_time: Optional[datetime] = None
    error_types: Counter = field(default_factory=Counter)
    rejected: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_errors": self.total_errors,
            "consecutive_errors": self.consecutive_errors,
            "last_error_time": self.last_error_time.isoformat() if self.last_error_time else None,
            "error_types": dict(self.error_types),
            "rejected": self.rejected,
        }


@dataclass(frozen=True)
class RetryOptions:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0


class ErrorHandler:
    """Records per-mapping error metrics and runs operations with exponential backoff."""

    def __init__(
        self,
        options: Optional[RetryOptions] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.options = options or RetryOptions()
        self._sleep = sleep
        self._metrics: Dict[str, ErrorMetrics] = {}

    def handle_error(self, context: MappingContext, error: BaseException, operation: str) -> None:
        metrics = self._get_or_create(context.mapping_id)
        if isinstance(error, CircuitOpenError):
            metrics.rejected += 1
            context.logger.warning("%s rejected: circuit breaker open", operation)
            return

        metrics.total_errors += 1
        metrics.consecutive_errors += 1
        metrics.last_error_time = datetime.now(timezone.utc)
        metrics.error_types[type(error).__name__] += 1
        context.logger.error("Error in %s: %s", operation, error)

    def record_success(self, mapping_id: str) -> None:
        metrics = self._metrics.get(mapping_id)
        if metrics is not None:
            metrics.consecutive_errors = 0

    async def execute_with_retry(
        self,
        context: MappingContext,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        **overrides: Any,
    ) -> T:
        """
        Run ``fn`` and retry it with exponential backoff.

        ``overrides`` may replace any RetryOptions field for this call. The last
        error is re-raised once the retries are used up. Breaker rejections and
        missing objects (either a correlation row or the remote counterpart)
        are raised straight away; a missing object is not counted as an error.
        """
        options = replace(self.options, **overrides)
        delay = options.initial_delay
        attempt = 0
        while True:
            try:
                result = await fn()
            except (CorrelationMissError, CounterpartMissingError):
                raise
            except CircuitOpenError as e:
                self.handle_error(context, e, operation)
                raise
            except Exception as e:
                self.handle_error(context, e, operation)
                if attempt >= options.max_retries:
                    raise
                attempt += 1
                context.logger.warning(
                    "Retry %d/%d for %s after %.2fs", attempt, options.max_retries, operation, delay
                )
                await self._sleep(delay)
                delay = min(delay * options.backoff_multiplier, options.max_delay)
            else:
                self.record_success(context.mapping_id)
                return result

    def get_metrics(self, mapping_id: str) -> Optional[ErrorMetrics]:
        return self._metrics.get(mapping_id)

    def all_metrics(self) -> Dict[str, ErrorMetrics]:
        return dict(self._metrics)

    def reset_metrics(self, mapping_id: str) -> None:
        self._metrics.pop(mapping_id, None)

    def is_unhealthy(self, mapping_id: str, threshold: int = 10) -> bool:
        metrics = self._metrics.get(mapping_id)
        return metrics is not None and metrics.consecutive_errors >= threshold

    def _get_or_create(self, mapping_id: str) -> ErrorMetrics:
        metrics = self._metrics.get(mapping_id)
        if metrics is None:
            metrics = self._metrics[mapping_id] = ErrorMetrics()
        return metrics


class CircuitStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitState:
    status: CircuitStatus = CircuitStatus.CLOSED
    failures: int = 0
    opened_at: Optional[float] = None
    probe_in_flight: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "failures": self.failures}


class CircuitBreaker:
    """
    Per-mapping circuit breaker.

    closed: calls run; ``threshold`` consecutive failures open the circuit.
    open: calls fail fast with CircuitOpenError until ``reset_timeout`` has
    passed, then one probe call is let through (half-open). A successful probe
    closes the circuit, a failed one opens it again.
    Every call is bounded by ``timeout`` seconds; a timeout is a failure.
    """

    def __init__(
        self,
        threshold: int = 5,
        timeout: float = 60.0,
        reset_timeout: float = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.timeout = timeout
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._states: Dict[str, CircuitState] = {}

    async def execute(self, mapping_id: str, fn: Callable[[], Awaitable[T]]) -> T:
        state = self._get_state(mapping_id)

        if state.status is CircuitStatus.OPEN:
            if state.opened_at is not None and self._clock() - state.opened_at >= self.reset_timeout:
                state.status = CircuitStatus.HALF_OPEN
                log.info("Circuit for mapping %s is half-open, allowing one probe", mapping_id)
            else:
                raise CircuitOpenError(mapping_id)

        if state.status is CircuitStatus.HALF_OPEN:
            if state.probe_in_flight:
                raise CircuitOpenError(mapping_id)
            state.probe_in_flight = True

        try:
            try:
                result = await asyncio.wait_for(fn(), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                raise OperationTimeoutError(f"Operation timed out after {self.timeout}s") from e
        except (CorrelationMissError, CounterpartMissingError):
            # The remote answered
            self._on_success(mapping_id, state)
            raise
        except Exception:
            self._on_failure(mapping_id, state)
            raise
        finally:
            state.probe_in_flight = False

        self._on_success(mapping_id, state)
        return result

    def _on_success(self, mapping_id: str, state: CircuitState) -> None:
        if state.status is CircuitStatus.HALF_OPEN:
            log.info("Circuit for mapping %s closed after successful probe", mapping_id)
        state.status = CircuitStatus.CLOSED
        state.failures = 0
        state.opened_at = None

    def _on_failure(self, mapping_id: str, state: CircuitState) -> None:
        state.failures += 1
        if state.status is CircuitStatus.HALF_OPEN or state.failures >= self.threshold:
            state.status = CircuitStatus.OPEN
            state.opened_at = self._clock()
            log.warning("Circuit opened for mapping %s after %d failure(s)", mapping_id, state.failures)

    def state(self, mapping_id: str) -> CircuitState:
        return self._get_state(mapping_id)

    def is_open(self, mapping_id: str) -> bool:
        state = self._states.get(mapping_id)
        return state is not None and state.status is CircuitStatus.OPEN

    def reset(self, mapping_id: str) -> None:
        self._states.pop(mapping_id, None)

    def _get_state(self, mapping_id: str) -> CircuitState:
        state = self._states.get(mapping_id)
        if state is None:
            state = self._states[mapping_id] = CircuitState()
        return state


class Resilience:
    """
    Bundles the error handler, breaker and activity recording for one call site.

    ``guard`` is what the sync handlers use for every cross-system call: the
    call runs behind the mapping's breaker, and a success counts as activity
    for the mapping. Failures are counted by whichever retry loop is outside.
    """

    def __init__(self, error_handler: ErrorHandler, breaker: CircuitBreaker, health: Any = None) -> None:
        self.error_handler = error_handler
        self.breaker = breaker
        self.health = health

    async def guard(self, context: MappingContext, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            result = await self.breaker.execute(context.mapping_id, fn)
        except OperationTimeoutError:
            context.logger.warning("%s timed out after %ss", operation, self.breaker.timeout)
            raise
        if self.health is not None:
            self.health.record_activity(context.mapping_id)
        return result

    async def run(self, context: MappingContext, operation: str, fn: Callable[[], Awaitable[T]], **overrides: Any) -> T:
        """``guard`` under retry, for call sites that have no outer retry."""
        return await self.error_handler.execute_with_retry(
            context, operation, lambda: self.guard(context, operation, fn), **overrides
        )
