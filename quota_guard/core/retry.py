"""
Retry with exponential backoff for transient failures.

The limiter never retries on its own. Callers that want store calls
retried wrap the store in :class:`RetryingUsageStore` or call
:func:`with_retry` around their own operations.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from quota_guard.storage.models import UsageEvent, WindowUsage
from quota_guard.storage.repository import UsageStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = ("429", "500", "502", "503", "504")


@dataclass(frozen=True)
class RetryOptions:
    """Backoff settings; delays are in seconds."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")


class APIError(Exception):
    """Failure of an upstream call, tagged with whether retrying can help."""
    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


def is_retryable_error(exception: BaseException) -> bool:
    """Check if a failure is transient.

    Handles:
    - APIError carrying an explicit retryable flag
    - timeouts and dropped connections
    - SQLite lock contention
    - errors whose message mentions the network or a 429/5xx status
    """
    if isinstance(exception, APIError):
        return exception.retryable
    if isinstance(exception, (TimeoutError, ConnectionError)):
        return True

    message = str(exception).lower()
    if isinstance(exception, sqlite3.OperationalError):
        return "locked" in message or "busy" in message
    if "network" in message or "fetch" in message:
        return True
    return any(code in message for code in RETRYABLE_STATUS_CODES)


def with_retry(
    operation: Callable[[], T],
    options: Optional[RetryOptions] = None,
    sleep: Optional[Callable[[float], None]] = None
) -> T:
    """Call ``operation`` until it succeeds or a retry is pointless.

    Waits ``min(base_delay * backoff_multiplier ** (attempt - 1), max_delay)``
    between attempts. Non-retryable failures and the final failure are
    re-raised unchanged.

    Args:
        operation: Zero-argument callable to run
        options: Backoff settings
        sleep: Replacement for ``time.sleep``

    Returns:
        Whatever ``operation`` returns
    """
    opts = options or RetryOptions()
    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    retrying = Retrying(
        stop=stop_after_attempt(opts.max_attempts),
        wait=wait_exponential(
            multiplier=opts.base_delay,
            exp_base=opts.backoff_multiplier,
            max=opts.max_delay,
        ),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
        **kwargs,
    )
    return retrying(operation)


class RetryingUsageStore:
    """UsageStore wrapper that retries transient store failures."""

    def __init__(
        self,
        store: UsageStore,
        options: Optional[RetryOptions] = None,
        sleep: Optional[Callable[[float], None]] = None
    ):
        self.store = store
        self.options = options or RetryOptions()
        self._sleep = sleep

    def append(self, event: UsageEvent) -> UsageEvent:
        return with_retry(lambda: self.store.append(event), self.options, self._sleep)

    def window_usage(
        self,
        subject: str,
        operation: str,
        since: datetime,
        offset: int = 0
    ) -> WindowUsage:
        return with_retry(
            lambda: self.store.window_usage(subject, operation, since, offset),
            self.options,
            self._sleep,
        )

    def __getattr__(self, name):
        # Reporting queries pass straight through
        return getattr(self.store, name)
