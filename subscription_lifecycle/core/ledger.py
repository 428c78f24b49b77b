"""
Plan change ledger.

Append-only audit log of plan transitions. Entries are created pending and
moved to completed or failed exactly once; the current plan of a user is
derived from the ledger rather than stored separately.
"""

import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from subscription_lifecycle.storage.models import (
    DateRange,
    LedgerQuery,
    LedgerStatus,
    NewPlanChangeLogEntry,
    PlanChangeLogEntry,
    PlanChangeRow,
    PlanType,
)
from subscription_lifecycle.storage.repository import LedgerStore

from .errors import InvalidTransitionError, NotFoundError
from .locks import KeyedLocks
from .plans import PlanSummary, summarize_plan

DEFAULT_PLAN = PlanType.FREE


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _generate_id() -> str:
    return "pcl_" + uuid.uuid4().hex


class PlanChangeLedger:
    """Queryable, append-only log of plan change attempts.

    Creates are independent appends. Updates of the same entry id are
    serialized by a per-id lock so a pending entry reaches a terminal status
    at most once; a second terminal update raises InvalidTransitionError.
    """

    def __init__(self, store: LedgerStore, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self._clock = clock
        self._entry_locks = KeyedLocks()

    def create(self, new_entry: NewPlanChangeLogEntry) -> PlanChangeLogEntry:
        """Append a pending entry and return it as stored."""
        entry = PlanChangeLogEntry(
            id=_generate_id(),
            user_id=new_entry.user_id,
            user_email=new_entry.user_email,
            from_plan=new_entry.from_plan,
            to_plan=new_entry.to_plan,
            payment_method=new_entry.payment_method,
            payment_id=new_entry.payment_id,
            reason=new_entry.reason,
            status=LedgerStatus.PENDING,
            metadata=dict(new_entry.metadata),
            created_at=self._clock()
        )
        self.store.insert(entry)
        return entry

    def update(
        self,
        entry_id: str,
        status: LedgerStatus,
        reason: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> PlanChangeLogEntry:
        """Move a pending entry to a terminal status.

        Plans and payment id are never touched. ``completed_at`` defaults to
        now for completed entries; metadata is merged into the existing bag.

        Raises:
            NotFoundError: If the entry id is unknown
            InvalidTransitionError: If the entry is already terminal or the
                requested status is not terminal
        """
        with self._entry_locks.hold(entry_id):
            current = self.store.get(entry_id)
            if current is None:
                raise NotFoundError(entry_id)
            if not status.is_terminal or current.status.is_terminal:
                raise InvalidTransitionError(entry_id, current.status.value, status.value)

            if completed_at is None and status == LedgerStatus.COMPLETED:
                completed_at = self._clock()
            merged_metadata = dict(current.metadata)
            if metadata:
                merged_metadata.update(metadata)

            updated = replace(
                current,
                status=status,
                reason=reason if reason is not None else current.reason,
                completed_at=completed_at if completed_at is not None else current.completed_at,
                metadata=merged_metadata
            )
            if not self.store.finalize(updated):
                # another process finalized the row between our read and write
                latest = self.store.get(entry_id)
                latest_status = latest.status.value if latest else "missing"
                raise InvalidTransitionError(entry_id, latest_status, status.value)
            return updated

    def get(self, entry_id: str) -> PlanChangeLogEntry:
        """Return an entry by id.

        Raises:
            NotFoundError: If the entry id is unknown
        """
        entry = self.store.get(entry_id)
        if entry is None:
            raise NotFoundError(entry_id)
        return entry

    def query_by_user(self, user_id: str, date_range: Optional[DateRange] = None) -> List[PlanChangeLogEntry]:
        """Return a user's entries, newest first."""
        return self.store.find(LedgerQuery(user_id=user_id, date_range=date_range))

    def query(
        self,
        user_email: Optional[str] = None,
        date_range: Optional[DateRange] = None,
        status: Optional[LedgerStatus] = None,
        limit: Optional[int] = None
    ) -> List[PlanChangeLogEntry]:
        """Return entries filtered by email, date range and status, newest first."""
        return self.store.find(LedgerQuery(
            user_email=user_email,
            date_range=date_range,
            status=status,
            limit=limit
        ))

    def find_by_payment(self, payment_id: str) -> List[PlanChangeLogEntry]:
        """Return every entry recorded for a provider payment id, newest first."""
        return self.store.find(LedgerQuery(payment_id=payment_id))

    def is_finalized(self, payment_id: str) -> bool:
        """Whether a payment already has a completed or failed entry."""
        return any(entry.status.is_terminal for entry in self.find_by_payment(payment_id))

    def current_plan(self, user_id: str) -> PlanType:
        """Plan of the most recent completed entry, or free if there is none."""
        latest = self.store.find(LedgerQuery(
            user_id=user_id,
            status=LedgerStatus.COMPLETED,
            limit=1
        ))
        return latest[0].to_plan if latest else DEFAULT_PLAN

    def current_plan_summary(self, user_id: str) -> PlanSummary:
        return summarize_plan(self.current_plan(user_id))

    def export_rows(
        self,
        user_email: Optional[str] = None,
        date_range: Optional[DateRange] = None
    ) -> List[PlanChangeRow]:
        """Completed plan changes as tabular rows, newest first."""
        entries = self.query(user_email=user_email, date_range=date_range,
                             status=LedgerStatus.COMPLETED)
        return [
            PlanChangeRow(
                email=entry.user_email,
                previous_plan=entry.from_plan.value,
                new_plan=entry.to_plan.value,
                changed_at=entry.completed_at or entry.created_at
            )
            for entry in entries
        ]
