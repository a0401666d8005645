"""
Usage accounting and rate limiting.

Admission is decided by counting a subject's recorded events for an
operation inside a rolling window and comparing the count against the
rule for the subject's tier.

Call pattern:
1. ``admit_or_reject`` before the protected work (pure read)
2. run the work
3. ``record`` once the work succeeded
4. ``check`` again for the post-record quota snapshot

The count and the later insert are not coordinated: two concurrent
requests for the same subject can both be admitted while only one slot
was left. Callers needing exact enforcement have to serialise per
subject and operation themselves.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from quota_guard.config.loader import DEFAULT_RULE_TABLE, RateLimitRule, RuleTable, Tier
from quota_guard.storage.models import UsageEvent
from quota_guard.storage.repository import UsageStore, to_utc

logger = logging.getLogger(__name__)

# Remaining budget reported for operations without any rule
UNLIMITED_REMAINING = math.inf

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ceil_seconds(seconds: float) -> int:
    return max(0, math.ceil(seconds))


@dataclass(frozen=True)
class RateLimitStatus:
    """Quota snapshot produced by a single check."""
    admitted: bool
    remaining: Union[int, float]
    reset_at: datetime
    checked_at: datetime
    limit: Optional[int] = None
    rule: Optional[RateLimitRule] = None
    count: int = 0
    oldest: Optional[datetime] = None

    @property
    def unlimited(self) -> bool:
        """True when no rule applies to the operation."""
        return self.rule is None

    @property
    def reset_epoch(self) -> int:
        """reset_at as Unix seconds, rounded up."""
        return math.ceil(self.reset_at.timestamp())


@dataclass(frozen=True)
class Rejection:
    """Structured negative admission decision."""
    subject: str
    operation: str
    tier: Tier
    reset_at: datetime
    retry_after: int
    limit: int
    remaining: int = 0

    @property
    def reset_epoch(self) -> int:
        return math.ceil(self.reset_at.timestamp())


@dataclass(frozen=True)
class Admission:
    """Result of admit_or_reject: proceed, or a rejection to surface."""
    status: RateLimitStatus
    rejection: Optional[Rejection] = None

    @property
    def admitted(self) -> bool:
        return self.rejection is None


class RateLimitExceeded(Exception):
    """Raised by callers that turn a rejection into control flow."""
    def __init__(self, rejection: Rejection):
        super().__init__(
            f"Rate limit exceeded for {rejection.operation} "
            f"(tier {rejection.tier.value}), retry after {rejection.retry_after}s"
        )
        self.rejection = rejection


class RateLimiter:
    """Tier-aware fixed-quota limiter over a rolling window.

    Args:
        store: Usage store holding recorded events
        rules: Rule table; the built-in table when omitted
        clock: Callable returning the current time as an aware UTC datetime
    """

    def __init__(
        self,
        store: UsageStore,
        rules: RuleTable = DEFAULT_RULE_TABLE,
        clock: Clock = utcnow
    ):
        self.store = store
        self.rules = rules
        self.clock = clock

    def _now(self) -> datetime:
        return to_utc(self.clock())

    def check(
        self,
        subject: str,
        operation: str,
        tier: Union[Tier, str] = Tier.BASE
    ) -> RateLimitStatus:
        """Decide whether ``subject`` may perform ``operation`` right now.

        Pure read: no event is written.

        Args:
            subject: Subject the operation is charged against
            operation: Operation name
            tier: Subject tier; selects the rule

        Returns:
            RateLimitStatus snapshot. Operations without rules are always
            admitted with unbounded remaining budget.

        Raises:
            ValueError: If the tier name is unknown
            Store errors: Propagated without modification
        """
        tier = Tier.parse(tier)
        now = self._now()

        rule = self.rules.resolve(operation, tier)
        if rule is None:
            return RateLimitStatus(
                admitted=True,
                remaining=UNLIMITED_REMAINING,
                reset_at=now,
                checked_at=now
            )

        window_start = now - rule.window
        usage = self.store.window_usage(subject, operation, window_start)

        remaining = max(0, rule.max_requests - usage.count)
        return RateLimitStatus(
            admitted=remaining > 0,
            remaining=remaining,
            # Always one window from now, not from the oldest counted event
            reset_at=now + rule.window,
            checked_at=now,
            limit=rule.max_requests,
            rule=rule,
            count=usage.count,
            oldest=usage.oldest
        )

    def admit_or_reject(
        self,
        subject: str,
        operation: str,
        tier: Union[Tier, str] = Tier.BASE
    ) -> Admission:
        """Check quota and package the outcome for the caller.

        Performs no write; recording is the caller's job once the
        protected work has succeeded.
        """
        tier = Tier.parse(tier)
        status = self.check(subject, operation, tier)
        if status.admitted:
            return Admission(status=status)

        rejection = Rejection(
            subject=subject,
            operation=operation,
            tier=tier,
            reset_at=status.reset_at,
            retry_after=self._retry_after(subject, operation, status),
            limit=status.limit,
            remaining=int(status.remaining)
        )
        logger.warning(
            "Rate limit exceeded: subject=%s operation=%s tier=%s count=%d limit=%d",
            subject,
            operation,
            tier.value,
            status.count,
            status.limit,
            extra={"subject": subject, "operation": operation, "tier": tier.value},
        )
        return Admission(status=status, rejection=rejection)

    def _retry_after(self, subject: str, operation: str, status: RateLimitStatus) -> int:
        """Seconds until a slot frees up.

        A slot frees once enough counted events have aged out to bring the
        count below the limit. At exactly the limit that is the oldest
        event; above it (unchecked records, concurrent admissions) it is the
        event ``count - limit`` places after the oldest.

        The window start is inclusive, so an event landing exactly on it is
        still counted: after waiting the rounded-up value a client can sit on
        that boundary and needs a further instant.
        """
        frees_after = status.oldest
        if status.rule is not None and status.count > status.limit:
            usage = self.store.window_usage(
                subject,
                operation,
                status.checked_at - status.rule.window,
                status.count - status.limit
            )
            frees_after = usage.oldest
        if frees_after is not None and status.rule is not None:
            frees_at = to_utc(frees_after) + status.rule.window
            return _ceil_seconds((frees_at - status.checked_at).total_seconds())
        return _ceil_seconds((status.reset_at - status.checked_at).total_seconds())

    def record(
        self,
        subject: str,
        operation: str,
        cost: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> UsageEvent:
        """Append a usage event stamped with the current time.

        Args:
            subject: Subject the operation is charged against
            operation: Operation name
            cost: Optional cost in an external currency unit
            metadata: Optional JSON-serialisable audit payload

        Returns:
            The persisted UsageEvent

        Raises:
            ValueError: If subject or operation is empty
            Store errors: Propagated without modification
        """
        if not subject or not subject.strip():
            raise ValueError("subject is required and cannot be empty")
        if not operation or not operation.strip():
            raise ValueError("operation is required and cannot be empty")

        event = UsageEvent(
            subject=subject,
            operation=operation,
            occurred_at=self._now(),
            cost=cost,
            metadata=dict(metadata) if metadata is not None else None
        )
        stored = self.store.append(event)
        logger.debug(
            "Recorded usage event %s for %s/%s",
            stored.id,
            subject,
            operation,
            extra={"subject": subject, "operation": operation},
        )
        return stored
