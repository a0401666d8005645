"""
Repository pattern for data access.

Handles persistence of the append-only usage ledger and the window
counts the rate limiter decides on.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageEvent, WindowUsage

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = "id, subject, operation, occurred_at, cost, metadata"


class UsageStore(Protocol):
    """Minimal store interface the rate limiter depends on."""

    def append(self, event: UsageEvent) -> UsageEvent:
        ...

    def window_usage(
        self,
        subject: str,
        operation: str,
        since: datetime,
        offset: int = 0
    ) -> WindowUsage:
        ...


def to_utc(value: datetime) -> datetime:
    """Normalise a datetime to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _encode_timestamp(value: datetime) -> str:
    # Fixed-width ISO text so lexical order matches chronological order
    return to_utc(value).isoformat(timespec="microseconds")


def _decode_timestamp(value: str) -> datetime:
    return to_utc(datetime.fromisoformat(value))


def _row_to_event(row) -> UsageEvent:
    return UsageEvent(
        id=row[0],
        subject=row[1],
        operation=row[2],
        occurred_at=_decode_timestamp(row[3]),
        cost=row[4],
        metadata=json.loads(row[5]) if row[5] is not None else None
    )


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_event table if it doesn't exist.

    This creates an append-only ledger for immutable usage events.
    No UPDATE or DELETE operations should ever be performed on this table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_event (
                id TEXT PRIMARY KEY,
                subject TEXT NOT NULL,
                operation TEXT NOT NULL,
                occurred_at TEXT NOT NULL,
                cost REAL,
                metadata TEXT
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_usage_event_window
            ON usage_event (subject, operation, occurred_at)
        """)
        conn.commit()
    finally:
        conn.close()


class UsageRepository:
    """SQLite-backed usage ledger.

    Every call opens its own connection, so one repository instance can be
    shared by concurrent request handlers. Nothing here coordinates a
    count with the insert that follows it.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def append(self, event: UsageEvent) -> UsageEvent:
        """Insert a single usage event into the append-only ledger.

        Args:
            event: The usage event to record

        Returns:
            The stored event

        Raises:
            sqlite3.Error: Propagated without modification
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO usage_event ({_EVENT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                event.id,
                event.subject,
                event.operation,
                _encode_timestamp(event.occurred_at),
                event.cost,
                json.dumps(event.metadata) if event.metadata is not None else None
            ))
            conn.commit()
        finally:
            conn.close()
        logger.debug("Stored usage event %s", event.id)
        return event

    def window_usage(
        self,
        subject: str,
        operation: str,
        since: datetime,
        offset: int = 0
    ) -> WindowUsage:
        """Count events for a subject and operation at or after ``since``.

        Args:
            subject: Subject the events are charged against
            operation: Operation name
            since: Inclusive window start
            offset: Number of counted events, oldest first, to skip before
                picking the reported timestamp

        Returns:
            WindowUsage with the count and the timestamp of the counted event
            at ``offset`` (the oldest by default)
        """
        if offset < 0:
            raise ValueError("offset must be >= 0")
        window = (subject, operation, _encode_timestamp(since))
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT
                    (SELECT COUNT(*)
                     FROM usage_event
                     WHERE subject = ? AND operation = ? AND occurred_at >= ?),
                    (SELECT occurred_at
                     FROM usage_event
                     WHERE subject = ? AND operation = ? AND occurred_at >= ?
                     ORDER BY occurred_at
                     LIMIT 1 OFFSET ?)
            """, window + window + (offset,))
            count, oldest = cursor.fetchone()
        finally:
            conn.close()
        return WindowUsage(
            count=count or 0,
            oldest=_decode_timestamp(oldest) if oldest is not None else None
        )

    def get_recent_events(
        self,
        subject: Optional[str] = None,
        operation: Optional[str] = None,
        days: Optional[int] = None,
        limit: int = 1000
    ) -> List[UsageEvent]:
        """Get recent usage events with optional filtering.

        Args:
            subject: Optional filter for a specific subject
            operation: Optional filter for a specific operation
            days: Optional number of days to look back
            limit: Maximum number of events to return

        Returns:
            List of usage events ordered by occurred_at (newest first)
        """
        query = f"SELECT {_EVENT_COLUMNS} FROM usage_event"
        params = []
        conditions = []

        if subject:
            conditions.append("subject = ?")
            params.append(subject)
        if operation:
            conditions.append("operation = ?")
            params.append(operation)
        if days is not None:
            cutoff = datetime.now(timezone.utc) - timedelta(days=days)
            conditions.append("occurred_at >= ?")
            params.append(_encode_timestamp(cutoff))

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY occurred_at DESC LIMIT ?"
        params.append(limit)

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            return [_row_to_event(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_usage_stats(
        self,
        subject: Optional[str] = None,
        operation: Optional[str] = None,
        days: int = 30
    ) -> Dict[str, float]:
        """Get usage statistics for the specified time period.

        Events without a cost count as requests but add nothing to the
        cost totals.

        Returns:
            Dictionary with total_requests, total_cost and avg_cost
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        query = """
            SELECT
                COUNT(*) as total_requests,
                SUM(cost) as total_cost,
                AVG(cost) as avg_cost
            FROM usage_event
            WHERE occurred_at >= ?
        """
        params = [_encode_timestamp(cutoff)]

        if subject:
            query += " AND subject = ?"
            params.append(subject)
        if operation:
            query += " AND operation = ?"
            params.append(operation)

        conn = get_connection(self.db_path)
        try:
            row = conn.execute(query, params).fetchone()
        finally:
            conn.close()

        return {
            "total_requests": row[0] or 0,
            "total_cost": float(row[1] or 0),
            "avg_cost": float(row[2] or 0)
        }

    def get_operation_counts(self, subject: str, days: int = 30) -> Dict[str, int]:
        """Count a subject's events per operation over the last ``days``."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT operation, COUNT(*)
                FROM usage_event
                WHERE subject = ? AND occurred_at >= ?
                GROUP BY operation
                ORDER BY operation
            """, (subject, _encode_timestamp(cutoff)))
            return {operation: count for operation, count in cursor.fetchall()}
        finally:
            conn.close()
