"""
Retry executor: classification-driven retry with exponential backoff.

Wraps calls to the analysis service, which is expected to recover from
overload but may take a while to do so.

INVARIANTS:
- Fatal errors propagate immediately, unchanged, after exactly one call
- Retryable errors are retried until max_attempts calls have been made
- Exhaustion raises RetryExhaustedError carrying the last observed message
- Delays follow min(base * growth**i + uniform(0, jitter), max_delay)
- The progress callback can never break or stall retry progress
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from gradeforge.config import settings
from gradeforge.models.failure import FailureKind, KnownError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorClass(str, Enum):
    """How the executor treats a failure."""

    RETRYABLE = "retryable"
    FATAL = "fatal"


ErrorClassifier = Callable[[BaseException], ErrorClass]
RetryCallback = Callable[[int, float], None]
SleepFunction = Callable[[float], Awaitable[None]]


class RetryExhaustedError(KnownError):
    """
    Raised when a retryable failure persisted through every attempt.

    This is terminal for the current stage; the card moves to a failure status.
    """

    def __init__(self, attempts: int, last_message: str):
        self.attempts = attempts
        self.last_message = last_message
        super().__init__(
            kind=FailureKind.SERVICE_UNAVAILABLE,
            message=(
                f"The analysis service did not recover after {attempts} attempts: {last_message}"
            ),
            detail=last_message,
            suggestion="Retry the card later.",
            status_code=503,
        )


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    Backoff configuration.

    Attributes:
        max_attempts: Total calls allowed, including the first
        base_delay: Delay before the first retry, in seconds (before jitter)
        max_delay: Upper bound on any single delay, in seconds
        growth: Multiplier applied per retry
        jitter: Upper bound of the uniform random addition, in seconds
    """

    max_attempts: int = 10
    base_delay: float = 1.0
    max_delay: float = 30.0
    growth: float = 2.0
    jitter: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            growth=settings.retry_growth,
            jitter=settings.retry_jitter,
        )

    def wait_strategy(self) -> wait_exponential_jitter:
        return wait_exponential_jitter(
            multiplier=self.base_delay,
            max=self.max_delay,
            exp_base=self.growth,
            jitter=self.jitter,
        )


class RetryExecutor:
    """
    Runs async operations under a RetryPolicy.

    The classifier decides, per exception, whether another attempt is allowed.
    `sleep` is injectable so tests can run without real delays.
    """

    def __init__(
        self,
        classifier: ErrorClassifier,
        policy: RetryPolicy | None = None,
        sleep: SleepFunction = asyncio.sleep,
    ):
        self.classifier = classifier
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        on_retry: RetryCallback | None = None,
        context: str = "operation",
    ) -> T:
        """
        Call `operation` until it succeeds, fails fatally, or attempts run out.

        Args:
            operation: Zero-argument coroutine function
            on_retry: Called with (attempt number, delay) before each retry sleep
            context: Label used in log messages

        Returns:
            The operation's result.

        Raises:
            RetryExhaustedError: If every attempt failed with a retryable error
            Exception: Any fatal error, unchanged
        """
        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=self.policy.wait_strategy(),
            retry=retry_if_exception(self._is_retryable),
            before_sleep=self._before_sleep(on_retry, context),
            reraise=False,
        )

        try:
            return await retrying(operation)
        except RetryError as e:
            last = e.last_attempt
            error = last.exception()
            message = str(error) or type(error).__name__
            logger.warning(
                "RETRY_EXHAUSTED",
                extra={
                    "context": context,
                    "attempts": last.attempt_number,
                    "last_error": message,
                },
            )
            raise RetryExhaustedError(last.attempt_number, message) from error

    def _is_retryable(self, error: BaseException) -> bool:
        return self.classifier(error) is ErrorClass.RETRYABLE

    def _before_sleep(
        self, on_retry: RetryCallback | None, context: str
    ) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            attempt = retry_state.attempt_number
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            outcome = retry_state.outcome
            error = outcome.exception() if outcome is not None else None
            logger.info(
                "Attempt %d failed for %s (%s). Retrying in %.1fs...",
                attempt,
                context,
                error,
                delay,
            )
            if on_retry is None:
                return
            try:
                on_retry(attempt, delay)
            except Exception:
                logger.exception("Retry progress callback failed for %s", context)

        return before_sleep
