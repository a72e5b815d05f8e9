"""Delivery log storage.

The engine only needs three operations from whatever holds delivery
records: append, a filtered newest-first query, and a filtered count.
``LogStore`` is that contract; two reference backends are provided.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel

from ..core.settings import settings_manager
from ..webhooks.exceptions import LogStoreError
from ..webhooks.models import DeliveryEvent, DeliveryStatus, ensure_utc

logger = logging.getLogger(__name__)


class DeliveryLogFilter(BaseModel):
    """Filter over delivery events. Unset fields do not constrain.

    ``triggered_from`` is inclusive and ``triggered_before`` exclusive,
    so consecutive ranges never double-count an event.
    """

    webhook_id: Optional[str] = None
    webhook_ids: Optional[List[str]] = None
    statuses: Optional[List[DeliveryStatus]] = None
    event_type: Optional[str] = None
    is_test: Optional[bool] = None
    triggered_from: Optional[datetime] = None
    triggered_before: Optional[datetime] = None

    def is_empty_selection(self) -> bool:
        """True when the filter can match nothing (empty ID or status list)."""
        return (self.webhook_ids is not None and not self.webhook_ids) or (
            self.statuses is not None and not self.statuses
        )

    def matches(self, event: DeliveryEvent) -> bool:
        if self.webhook_id is not None and event.webhook_id != self.webhook_id:
            return False
        if self.webhook_ids is not None and event.webhook_id not in self.webhook_ids:
            return False
        if self.statuses is not None and event.status not in self.statuses:
            return False
        if self.event_type is not None and event.event_type != self.event_type:
            return False
        if self.is_test is not None and event.is_test != self.is_test:
            return False
        triggered_at = ensure_utc(event.triggered_at)
        if self.triggered_from is not None and triggered_at < ensure_utc(self.triggered_from):
            return False
        if self.triggered_before is not None and triggered_at >= ensure_utc(self.triggered_before):
            return False
        return True


class LogStore(ABC):
    """Abstract delivery log backend."""

    @abstractmethod
    def append(self, event: DeliveryEvent) -> str:
        """Persist an event. Returns its ID."""
        pass

    @abstractmethod
    def query(
        self,
        log_filter: Optional[DeliveryLogFilter] = None,
        limit: Optional[int] = None,
    ) -> List[DeliveryEvent]:
        """Matching events ordered by triggered_at descending."""
        pass

    @abstractmethod
    def count(self, log_filter: Optional[DeliveryLogFilter] = None) -> int:
        """Number of matching events."""
        pass


class InMemoryLogStore(LogStore):
    """Process-local log store.

    Safe to share between the event loop and worker threads.

    Example:
        >>> store = InMemoryLogStore()
        >>> store.append(event)
        >>> store.count(DeliveryLogFilter(webhook_id=event.webhook_id))
        1
    """

    def __init__(self):
        self._events: List[DeliveryEvent] = []
        self._ids: set = set()
        self._lock = threading.Lock()

    def append(self, event: DeliveryEvent) -> str:
        with self._lock:
            if event.id in self._ids:
                raise LogStoreError("append", ValueError(f"duplicate event id {event.id}"))
            self._events.append(event)
            self._ids.add(event.id)
        return event.id

    def query(
        self,
        log_filter: Optional[DeliveryLogFilter] = None,
        limit: Optional[int] = None,
    ) -> List[DeliveryEvent]:
        log_filter = log_filter or DeliveryLogFilter()
        if log_filter.is_empty_selection():
            return []

        with self._lock:
            matched = [e for e in self._events if log_filter.matches(e)]

        matched.sort(key=lambda e: (ensure_utc(e.triggered_at), e.id), reverse=True)
        if limit is not None:
            matched = matched[:limit]
        return matched

    def count(self, log_filter: Optional[DeliveryLogFilter] = None) -> int:
        log_filter = log_filter or DeliveryLogFilter()
        if log_filter.is_empty_selection():
            return 0

        with self._lock:
            return sum(1 for e in self._events if log_filter.matches(e))

    def clear(self) -> int:
        """Remove all events. Returns how many were dropped."""
        with self._lock:
            count = len(self._events)
            self._events.clear()
            self._ids.clear()
        return count


def _ts(value: datetime) -> str:
    # Fixed-width UTC text so SQL string comparison orders correctly
    return ensure_utc(value).isoformat(timespec="microseconds")


class SQLiteLogStore(LogStore):
    """SQLite-backed log store.

    Events are written once and never updated.
    """

    def __init__(self, db_path: str = "data/webhook_logs.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize the database schema."""
        try:
            with self._get_conn() as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS webhook_logs (
                        id TEXT PRIMARY KEY,
                        webhook_id TEXT NOT NULL,
                        event_type TEXT NOT NULL,
                        status TEXT NOT NULL,
                        status_code INTEGER,
                        response_time_ms INTEGER NOT NULL DEFAULT 0,
                        triggered_at TEXT NOT NULL,
                        error_message TEXT,
                        retry_count INTEGER NOT NULL DEFAULT 0,
                        payload_size INTEGER NOT NULL DEFAULT 0,
                        is_test INTEGER NOT NULL DEFAULT 0
                    )
                """)
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_logs_webhook_time "
                    "ON webhook_logs(webhook_id, triggered_at)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_logs_time ON webhook_logs(triggered_at)"
                )
        except sqlite3.Error as e:
            raise LogStoreError("initialize", e) from e

    @staticmethod
    def _where(log_filter: DeliveryLogFilter) -> Tuple[str, list]:
        clauses = []
        params: list = []

        if log_filter.webhook_id is not None:
            clauses.append("webhook_id = ?")
            params.append(log_filter.webhook_id)
        if log_filter.webhook_ids is not None:
            clauses.append(f"webhook_id IN ({','.join('?' * len(log_filter.webhook_ids))})")
            params.extend(log_filter.webhook_ids)
        if log_filter.statuses is not None:
            clauses.append(f"status IN ({','.join('?' * len(log_filter.statuses))})")
            params.extend(s.value for s in log_filter.statuses)
        if log_filter.event_type is not None:
            clauses.append("event_type = ?")
            params.append(log_filter.event_type)
        if log_filter.is_test is not None:
            clauses.append("is_test = ?")
            params.append(1 if log_filter.is_test else 0)
        if log_filter.triggered_from is not None:
            clauses.append("triggered_at >= ?")
            params.append(_ts(log_filter.triggered_from))
        if log_filter.triggered_before is not None:
            clauses.append("triggered_at < ?")
            params.append(_ts(log_filter.triggered_before))

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> DeliveryEvent:
        return DeliveryEvent(
            id=row["id"],
            webhook_id=row["webhook_id"],
            event_type=row["event_type"],
            status=DeliveryStatus(row["status"]),
            status_code=row["status_code"],
            response_time_ms=row["response_time_ms"],
            triggered_at=datetime.fromisoformat(row["triggered_at"]),
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            payload_size=row["payload_size"],
            is_test=bool(row["is_test"]),
        )

    def append(self, event: DeliveryEvent) -> str:
        try:
            with self._get_conn() as conn:
                conn.execute("""
                    INSERT INTO webhook_logs
                    (id, webhook_id, event_type, status, status_code, response_time_ms,
                     triggered_at, error_message, retry_count, payload_size, is_test)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    event.id,
                    event.webhook_id,
                    event.event_type,
                    event.status.value,
                    event.status_code,
                    event.response_time_ms,
                    _ts(event.triggered_at),
                    event.error_message,
                    event.retry_count,
                    event.payload_size,
                    1 if event.is_test else 0,
                ))
        except sqlite3.Error as e:
            raise LogStoreError("append", e) from e
        return event.id

    def query(
        self,
        log_filter: Optional[DeliveryLogFilter] = None,
        limit: Optional[int] = None,
    ) -> List[DeliveryEvent]:
        log_filter = log_filter or DeliveryLogFilter()
        if log_filter.is_empty_selection():
            return []

        where, params = self._where(log_filter)
        sql = f"SELECT * FROM webhook_logs{where} ORDER BY triggered_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        try:
            with self._get_conn() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise LogStoreError("query", e) from e
        return [self._row_to_event(row) for row in rows]

    def count(self, log_filter: Optional[DeliveryLogFilter] = None) -> int:
        log_filter = log_filter or DeliveryLogFilter()
        if log_filter.is_empty_selection():
            return 0

        where, params = self._where(log_filter)
        try:
            with self._get_conn() as conn:
                row = conn.execute(f"SELECT COUNT(*) FROM webhook_logs{where}", params).fetchone()
        except sqlite3.Error as e:
            raise LogStoreError("count", e) from e
        return int(row[0])


# Default store instance (lazy initialization)
_default_store: Optional[LogStore] = None


def get_log_store(db_path: Optional[str] = None) -> LogStore:
    """Get or create the default log store.

    Args:
        db_path: Optional SQLite path. Uses the configured path if not specified.
    """
    global _default_store

    if _default_store is None:
        path = db_path or settings_manager.get().log_db_path
        _default_store = SQLiteLogStore(path)

    return _default_store


def set_log_store(store: Optional[LogStore]) -> None:
    """Replace the default log store (None resets it)."""
    global _default_store
    _default_store = store
