"""
Data models for storage layer.

Defines the usage ledger record and window aggregates.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


def new_event_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one accounted operation.

    Append-only: events are written once when an operation is admitted
    and never updated or deleted afterwards.
    """
    subject: str
    operation: str
    occurred_at: datetime
    cost: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=new_event_id)


@dataclass(frozen=True)
class WindowUsage:
    """Events counted for one subject and operation since a window start.

    ``oldest`` is the oldest counted timestamp, or the one at the offset
    the store was asked for.
    """
    count: int
    oldest: Optional[datetime] = None
