"""Request and response bodies for the usage service."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from quota_guard.storage.models import UsageEvent


class UsageRequest(BaseModel):
    """Body of a usage recording request."""

    tier: str = "BASE"
    cost: Optional[float] = Field(default=None, ge=0)
    metadata: Optional[Dict[str, Any]] = None


class UsageEventOut(BaseModel):
    id: str
    subject: str
    operation: str
    occurred_at: datetime
    cost: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def from_event(cls, event: UsageEvent) -> "UsageEventOut":
        return cls(
            id=event.id,
            subject=event.subject,
            operation=event.operation,
            occurred_at=event.occurred_at,
            cost=event.cost,
            metadata=event.metadata,
        )


class LimitStatusOut(BaseModel):
    """Quota snapshot; ``limit`` and ``remaining`` are null when unlimited."""

    subject: str
    operation: str
    tier: str
    admitted: bool
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_time: datetime


class UsageListOut(BaseModel):
    subject: str
    events: List[UsageEventOut]
