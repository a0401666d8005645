"""
Guarded operation wrapper.

Checks quota before running a billed operation and records usage only
after it succeeded.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar, Union

from ..config.loader import Tier
from ..core.limiter import RateLimiter, RateLimitExceeded, RateLimitStatus
from ..storage.models import UsageEvent

T = TypeVar("T")


@dataclass(frozen=True)
class GuardedResult(Generic[T]):
    """Return value of the work plus the accounting it produced."""
    value: T
    event: UsageEvent
    status: RateLimitStatus


class GuardedOperation:
    """Rate-limited wrapper around one named operation.

    Failures are loud: a rejection raises before the work runs, and work
    or store errors propagate unchanged.
    """

    def __init__(self, limiter: RateLimiter, operation: str):
        """Initialize the guarded operation.

        Args:
            limiter: Limiter deciding admission and recording usage
            operation: Operation name charged for each run (required)

        Raises:
            ValueError: If operation is missing/empty
        """
        if not operation or not operation.strip():
            raise ValueError("operation is required and cannot be empty")

        self.limiter = limiter
        self.operation = operation

    def run(
        self,
        subject: str,
        work: Callable[[], T],
        tier: Union[Tier, str] = Tier.BASE,
        cost: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> GuardedResult[T]:
        """Run ``work`` if the subject has quota left, then record it.

        Args:
            subject: Subject the operation is charged against
            work: Zero-argument callable performing the operation
            tier: Subject tier
            cost: Optional cost recorded with the event
            metadata: Optional audit payload recorded with the event

        Returns:
            GuardedResult with the work's value, the recorded event and the
            quota snapshot taken after recording

        Raises:
            RateLimitExceeded: If the subject is out of quota; work is not called
            Work errors: Propagated without recording anything
            Store errors: Propagated without modification
        """
        admission = self.limiter.admit_or_reject(subject, self.operation, tier)
        if not admission.admitted:
            raise RateLimitExceeded(admission.rejection)

        value = work()

        event = self.limiter.record(subject, self.operation, cost=cost, metadata=metadata)
        status = self.limiter.check(subject, self.operation, tier)
        return GuardedResult(value=value, event=event, status=status)
