"""
Retry-with-backoff for data-store calls.

Transient connection failures (dropped connections, failover, pool
exhaustion) are retried with exponential backoff. Anything else, including
constraint and syntax errors, propagates on the first attempt.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
)

from baseoff_import.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STORE_ERRORS: Tuple[Type[BaseException], ...] = (OperationalError, InterfaceError)


@dataclass(frozen=True)
class StoreRetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_STORE_ERRORS

    @classmethod
    def from_settings(cls) -> "StoreRetryPolicy":
        return cls(
            max_attempts=settings.store_max_attempts,
            base_delay=settings.store_retry_base_delay_seconds,
            max_delay=settings.store_retry_max_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        if attempt < 1:
            return 0.0
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.delay_for(retry_state.attempt_number)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Store call failed (attempt %d/%d), retrying in %.2fs: %s",
            retry_state.attempt_number,
            self.max_attempts,
            self.delay_for(retry_state.attempt_number),
            exc,
        )

    def call(self, operation: Callable[[], T], *, sleep: Optional[Callable[[float], None]] = None) -> T:
        """Run ``operation`` under this policy, re-raising the last error when attempts run out."""
        kwargs = {}
        if sleep is not None:
            kwargs["sleep"] = sleep
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=self._wait,
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=self._log_retry,
            reraise=True,
            **kwargs,
        )
        return retrying(operation)


NO_RETRY = StoreRetryPolicy(max_attempts=1)
