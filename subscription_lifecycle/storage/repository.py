"""
Repository pattern for data access.

Ledger stores persist plan change log entries behind a small interface so
the ledger can run against SQLite in production and memory in tests. The
recommendation request log is an append-only SQLite table.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from ..core.errors import PersistenceError
from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    LedgerQuery,
    LedgerStatus,
    PlanChangeLogEntry,
    PlanType,
    RecommendationRequestRecord,
    RecommendationSource,
    to_utc,
)


class LedgerStore(ABC):
    """Storage interface for plan change log entries.

    Implementations must be safe to call from several threads at once and
    must raise PersistenceError when the backing store is unavailable.
    """

    @abstractmethod
    def insert(self, entry: PlanChangeLogEntry) -> None:
        """Append a new entry."""

    @abstractmethod
    def get(self, entry_id: str) -> Optional[PlanChangeLogEntry]:
        """Return the entry with the given id, or None."""

    @abstractmethod
    def finalize(self, entry: PlanChangeLogEntry) -> bool:
        """Write a terminal version of an entry if it is still pending.

        Returns:
            True if the stored entry was pending and has been replaced
        """

    @abstractmethod
    def find(self, query: LedgerQuery) -> List[PlanChangeLogEntry]:
        """Return entries matching the query, newest first."""


class InMemoryLedgerStore(LedgerStore):
    """Process-local ledger store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, PlanChangeLogEntry] = {}
        self._sequence: Dict[str, int] = {}

    def insert(self, entry: PlanChangeLogEntry) -> None:
        with self._lock:
            if entry.id in self._entries:
                raise PersistenceError(f"Duplicate plan change log id: {entry.id}")
            self._sequence[entry.id] = len(self._sequence)
            self._entries[entry.id] = entry

    def get(self, entry_id: str) -> Optional[PlanChangeLogEntry]:
        with self._lock:
            return self._entries.get(entry_id)

    def finalize(self, entry: PlanChangeLogEntry) -> bool:
        with self._lock:
            stored = self._entries.get(entry.id)
            if stored is None or stored.status.is_terminal:
                return False
            self._entries[entry.id] = entry
            return True

    def find(self, query: LedgerQuery) -> List[PlanChangeLogEntry]:
        with self._lock:
            entries = list(self._entries.values())
            sequence = dict(self._sequence)

        matches = [entry for entry in entries if _matches(entry, query)]
        matches.sort(
            key=lambda entry: (to_utc(entry.created_at), sequence[entry.id]),
            reverse=True
        )
        if query.limit is not None:
            matches = matches[:query.limit]
        return matches


def _matches(entry: PlanChangeLogEntry, query: LedgerQuery) -> bool:
    if query.user_id is not None and entry.user_id != query.user_id:
        return False
    if query.user_email is not None and entry.user_email != query.user_email:
        return False
    if query.payment_id is not None and entry.payment_id != query.payment_id:
        return False
    if query.status is not None and entry.status != query.status:
        return False
    if query.date_range is not None and not query.date_range.contains(entry.created_at):
        return False
    return True


_LEDGER_COLUMNS = """
    id, user_id, user_email, from_plan, to_plan, payment_method, payment_id,
    reason, status, metadata, created_at, completed_at
"""


class SqliteLedgerStore(LedgerStore):
    """SQLite-backed ledger store.

    Entries are appended with INSERT; the only UPDATE ever issued moves a
    pending row to a terminal status, guarded by the pending status in the
    WHERE clause so a second writer cannot overwrite a terminal row.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert(self, entry: PlanChangeLogEntry) -> None:
        try:
            conn = get_connection(self.db_path)
            try:
                conn.execute(f"""
                    INSERT INTO plan_change_log ({_LEDGER_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, _entry_to_row(entry))
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to insert plan change log {entry.id}: {e}") from e

    def get(self, entry_id: str) -> Optional[PlanChangeLogEntry]:
        try:
            conn = get_connection(self.db_path)
            try:
                cursor = conn.execute(
                    f"SELECT {_LEDGER_COLUMNS} FROM plan_change_log WHERE id = ?",
                    (entry_id,)
                )
                row = cursor.fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read plan change log {entry_id}: {e}") from e
        return _row_to_entry(row) if row else None

    def finalize(self, entry: PlanChangeLogEntry) -> bool:
        try:
            conn = get_connection(self.db_path)
            try:
                cursor = conn.execute("""
                    UPDATE plan_change_log
                    SET status = ?, reason = ?, metadata = ?, completed_at = ?
                    WHERE id = ? AND status = ?
                """, (
                    entry.status.value,
                    entry.reason,
                    json.dumps(entry.metadata, default=str),
                    _format_time(entry.completed_at),
                    entry.id,
                    LedgerStatus.PENDING.value
                ))
                conn.commit()
                return cursor.rowcount == 1
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to update plan change log {entry.id}: {e}") from e

    def find(self, query: LedgerQuery) -> List[PlanChangeLogEntry]:
        sql = f"SELECT {_LEDGER_COLUMNS} FROM plan_change_log"
        params: list = []
        conditions = []

        if query.user_id is not None:
            conditions.append("user_id = ?")
            params.append(query.user_id)
        if query.user_email is not None:
            conditions.append("user_email = ?")
            params.append(query.user_email)
        if query.payment_id is not None:
            conditions.append("payment_id = ?")
            params.append(query.payment_id)
        if query.status is not None:
            conditions.append("status = ?")
            params.append(query.status.value)
        if query.date_range is not None:
            if query.date_range.start is not None:
                conditions.append("created_at >= ?")
                params.append(_format_time(query.date_range.start))
            if query.date_range.end is not None:
                conditions.append("created_at <= ?")
                params.append(_format_time(query.date_range.end))

        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY created_at DESC, seq DESC"
        if query.limit is not None:
            sql += " LIMIT ?"
            params.append(query.limit)

        try:
            conn = get_connection(self.db_path)
            try:
                rows = conn.execute(sql, params).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to query plan change log: {e}") from e
        return [_row_to_entry(row) for row in rows]


def _format_time(moment: Optional[datetime]) -> Optional[str]:
    if moment is None:
        return None
    return to_utc(moment).isoformat()


def _entry_to_row(entry: PlanChangeLogEntry) -> tuple:
    return (
        entry.id,
        entry.user_id,
        entry.user_email,
        entry.from_plan.value,
        entry.to_plan.value,
        entry.payment_method,
        entry.payment_id,
        entry.reason,
        entry.status.value,
        json.dumps(entry.metadata, default=str),
        _format_time(entry.created_at),
        _format_time(entry.completed_at),
    )


def _row_to_entry(row: tuple) -> PlanChangeLogEntry:
    return PlanChangeLogEntry(
        id=row[0],
        user_id=row[1],
        user_email=row[2],
        from_plan=PlanType(row[3]),
        to_plan=PlanType(row[4]),
        payment_method=row[5],
        payment_id=row[6],
        reason=row[7],
        status=LedgerStatus(row[8]),
        metadata=json.loads(row[9]) if row[9] else {},
        created_at=datetime.fromisoformat(row[10]),
        completed_at=datetime.fromisoformat(row[11]) if row[11] else None
    )


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the plan change log and recommendation request tables.

    Both tables are append-only audit trails. Rows are never deleted; the
    only permitted update moves a pending plan change to a terminal status.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS plan_change_log (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                user_email TEXT NOT NULL,
                from_plan TEXT NOT NULL,
                to_plan TEXT NOT NULL,
                payment_method TEXT NOT NULL,
                payment_id TEXT,
                reason TEXT NOT NULL,
                status TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                completed_at TEXT
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_plan_change_log_user
            ON plan_change_log (user_id, created_at)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_plan_change_log_payment
            ON plan_change_log (payment_id)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS recommendation_request (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                email TEXT NOT NULL,
                source TEXT NOT NULL,
                suggested_price INTEGER NOT NULL,
                reason TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class RecommendationLog(ABC):
    """Append-only sink for recommendation resolutions."""

    @abstractmethod
    def append(self, record: RecommendationRequestRecord) -> None:
        """Record one resolution."""


class SqliteRecommendationLog(RecommendationLog):
    """Recommendation log stored in the recommendation_request table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append(self, record: RecommendationRequestRecord) -> None:
        insert_recommendation_request(record, self.db_path)


def insert_recommendation_request(
    record: RecommendationRequestRecord,
    db_path: str = DEFAULT_DB_PATH
) -> None:
    """Insert a single recommendation resolution into the append-only log.

    Args:
        record: The resolution to record
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO recommendation_request
            (timestamp, email, source, suggested_price, reason)
            VALUES (?, ?, ?, ?, ?)
        """, (
            _format_time(record.timestamp),
            record.email,
            record.source.value,
            record.suggested_price,
            record.reason
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_recent_recommendations(
    email: Optional[str] = None,
    source: Optional[RecommendationSource] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[RecommendationRequestRecord]:
    """Fetch recent recommendation resolutions, newest first.

    Args:
        email: Optional filter for a requesting email
        source: Optional filter for a resolution source
        limit: Maximum number of records to return
        db_path: Path to SQLite database file

    Returns:
        List of records ordered by timestamp (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = "SELECT timestamp, email, source, suggested_price, reason FROM recommendation_request"
        params: list = []
        conditions = []

        if email:
            conditions.append("email = ?")
            params.append(email)
        if source:
            conditions.append("source = ?")
            params.append(source.value)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [
            RecommendationRequestRecord(
                timestamp=datetime.fromisoformat(row[0]),
                email=row[1],
                source=RecommendationSource(row[2]),
                suggested_price=row[3],
                reason=row[4]
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()
