"""
Retry Policy - Boot Resilience (Noverna)

Purpose
-------
Bounded retry and readiness-wait primitives used while the core waits for
PostgreSQL and Redis to come up. Every wait has an explicit ceiling: a
maximum attempt count, an optional overall deadline, or a timeout. Nothing
here ever waits forever.

Responsibilities
----------------
- Execute async operations with retry logic (fixed or exponential delay)
- Classify errors as retriable or non-retriable
- Stop early when an overall deadline would be exceeded
- Poll a readiness predicate until it holds or a timeout elapses
- Emit structured logs for each attempt

Non-Responsibilities
--------------------
- Transaction management (caller owns transactions)
- Circuit breaking or rate limiting
- Deciding what a failed boot stage means (ApplicationContext does)

Architecture Notes
------------------
**Delay Strategy**:
- delay(attempt) = min(initial * multiplier ^ (attempt - 1), max) + jitter
- multiplier 1.0 gives the fixed delay the boot sequence uses

**Deadline**:
- Measured with time.monotonic() from the first attempt
- A retry whose sleep would cross the deadline is not attempted

Configuration
-------------
- CONNECT_RETRY_ATTEMPTS (default: 3)
- CONNECT_RETRY_DELAY_SECONDS (default: 5.0)

Usage Example
-------------
>>> policy = RetryPolicy.from_config()
>>> await policy.execute(database.initialize, operation_name="database.connect")
>>>
>>> ready = await wait_until(database.is_ready, timeout=15.0)
"""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar, Union

from redis.exceptions import RedisError
from sqlalchemy.exc import DBAPIError, OperationalError

from noverna.core.config.config import Config
from noverna.core.exceptions import is_transient_error
from noverna.core.logging.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Predicate = Callable[[], Union[bool, Awaitable[bool]]]


# ============================================================================
# Configuration
# ============================================================================


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes
    ----------
    max_attempts : int
        Maximum number of attempts (including initial attempt).
    initial_delay_seconds : float
        Delay before the second attempt.
    backoff_multiplier : float
        Growth factor per attempt; 1.0 means fixed delay.
    max_delay_seconds : float
        Ceiling for a single delay.
    jitter_seconds : float
        Maximum random jitter added to each delay.
    deadline_seconds : Optional[float]
        Overall budget across all attempts and delays.
    retriable_exceptions : Tuple[Type[BaseException], ...]
        Exception types considered retriable.
    """

    max_attempts: int = 3
    initial_delay_seconds: float = 5.0
    backoff_multiplier: float = 1.0
    max_delay_seconds: float = 30.0
    jitter_seconds: float = 0.0
    deadline_seconds: Optional[float] = None
    retriable_exceptions: Tuple[Type[BaseException], ...] = field(
        default=(OperationalError, DBAPIError, RedisError, OSError)
    )

    @classmethod
    def from_config(cls) -> RetryConfig:
        """Build the boot connect policy: fixed delay, bounded attempts."""
        return cls(
            max_attempts=Config.CONNECT_RETRY_ATTEMPTS,
            initial_delay_seconds=Config.CONNECT_RETRY_DELAY_SECONDS,
            backoff_multiplier=1.0,
        )


# ============================================================================
# Retry Policy
# ============================================================================


class RetryPolicy:
    """
    Execute async operations with bounded retry semantics.

    Public API
    ----------
    - execute(operation, operation_name, context) -> Execute with retries
    - compute_delay(attempt) -> Delay before the given retry
    - wait_until(predicate, timeout, interval) -> Readiness polling
    """

    def __init__(self, config: Optional[RetryConfig] = None) -> None:
        self._config = config or RetryConfig()

    @classmethod
    def from_config(cls) -> RetryPolicy:
        return cls(RetryConfig.from_config())

    @property
    def config(self) -> RetryConfig:
        return self._config

    def _is_retriable(self, exc: BaseException) -> bool:
        if isinstance(exc, self._config.retriable_exceptions):
            return True
        return isinstance(exc, Exception) and is_transient_error(exc)

    def compute_delay(self, attempt: int) -> float:
        """Delay in seconds after the given (1-indexed) failed attempt."""
        exponent = max(attempt - 1, 0)
        base = self._config.initial_delay_seconds * (
            self._config.backoff_multiplier ** exponent
        )
        capped = min(base, self._config.max_delay_seconds)

        jitter = (
            random.uniform(0, self._config.jitter_seconds)
            if self._config.jitter_seconds > 0
            else 0.0
        )

        return capped + jitter

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        operation_name: str,
        context: Optional[dict[str, Any]] = None,
    ) -> T:
        """
        Execute async operation with retry logic for transient failures.

        Raises
        ------
        BaseException
            The last exception when attempts are exhausted, the deadline
            would be exceeded, or the exception is not retriable.
        """
        ctx_extra = context.copy() if context else {}
        ctx_extra["operation"] = operation_name

        started = time.monotonic()
        attempt = 0

        while True:
            attempt += 1

            try:
                logger.debug(
                    "Executing operation with retry policy",
                    extra={**ctx_extra, "attempt": attempt},
                )
                return await operation()

            except Exception as exc:
                error_type = type(exc).__name__
                retriable = self._is_retriable(exc)
                will_retry = retriable and attempt < self._config.max_attempts

                delay = self.compute_delay(attempt) if will_retry else 0.0

                if will_retry and self._config.deadline_seconds is not None:
                    elapsed = time.monotonic() - started
                    if elapsed + delay > self._config.deadline_seconds:
                        will_retry = False

                logger.warning(
                    "Operation attempt failed",
                    extra={
                        **ctx_extra,
                        "attempt": attempt,
                        "max_attempts": self._config.max_attempts,
                        "error": str(exc),
                        "error_type": error_type,
                        "retriable": retriable,
                        "will_retry": will_retry,
                    },
                )

                if not will_retry:
                    logger.error(
                        "Operation retries exhausted or not retriable",
                        extra={
                            **ctx_extra,
                            "attempt": attempt,
                            "error_type": error_type,
                            "retriable": retriable,
                            "elapsed_seconds": round(time.monotonic() - started, 3),
                        },
                    )
                    raise

                logger.debug(
                    "Backing off before retry",
                    extra={**ctx_extra, "attempt": attempt, "delay_seconds": delay},
                )
                await asyncio.sleep(delay)

    @staticmethod
    async def wait_until(
        predicate: Predicate,
        *,
        timeout: float,
        interval: float = 0.1,
    ) -> bool:
        return await wait_until(predicate, timeout=timeout, interval=interval)


# ============================================================================
# Readiness Wait
# ============================================================================


async def wait_until(
    predicate: Predicate,
    *,
    timeout: float,
    interval: float = 0.1,
) -> bool:
    """
    Poll ``predicate`` until it returns True or ``timeout`` seconds elapse.

    The predicate may be sync or async. Returns False on timeout; a
    predicate that raises counts as "not ready yet".
    """
    deadline = time.monotonic() + max(timeout, 0.0)

    while True:
        try:
            outcome = predicate()
            if inspect.isawaitable(outcome):
                outcome = await outcome
            if outcome:
                return True
        except Exception as exc:
            logger.debug(
                "Readiness predicate raised; treating as not ready",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False

        await asyncio.sleep(min(interval, remaining))
