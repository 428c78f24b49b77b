"""
Data models for storage layer.

Defines plan change records, recommendation cache entries and the
request log records persisted by the repositories.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def to_utc(moment: datetime) -> datetime:
    """Normalize a datetime to UTC, treating naive values as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class PlanType(Enum):
    """Plan tiers ordered by entitlement level."""
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return _PLAN_ORDER.index(self)

    @classmethod
    def parse(cls, value: str) -> "PlanType":
        """Parse a plan name, accepting 'premium' as an alias of 'pro'."""
        if isinstance(value, PlanType):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Invalid plan: {value!r}")
        normalized = value.strip().lower()
        if normalized == "premium":
            return cls.PRO
        try:
            return cls(normalized)
        except ValueError:
            valid = [plan.value for plan in cls]
            raise ValueError(f"Invalid plan {value!r}, must be one of: {valid}")


_PLAN_ORDER = [PlanType.FREE, PlanType.BASIC, PlanType.PRO, PlanType.ENTERPRISE]


class LedgerStatus(Enum):
    """Internal status of a plan change log entry."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not LedgerStatus.PENDING


class ChangeType(Enum):
    """Direction of a plan transition."""
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    CANCELLATION = "cancellation"
    REACTIVATION = "reactivation"
    UNCHANGED = "unchanged"

    @classmethod
    def between(cls, from_plan: PlanType, to_plan: PlanType) -> "ChangeType":
        if from_plan == to_plan:
            return cls.UNCHANGED
        if to_plan == PlanType.FREE:
            return cls.CANCELLATION
        if from_plan == PlanType.FREE:
            return cls.REACTIVATION
        if to_plan.rank > from_plan.rank:
            return cls.UPGRADE
        return cls.DOWNGRADE


class RecommendationSource(Enum):
    """Where a price recommendation came from."""
    CACHE = "cache"
    LIVE = "live"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class RecommendationCacheEntry:
    """Immutable cached recommendation for a normalized prompt key."""
    key: str
    suggested_price: int
    reason: str
    source: RecommendationSource
    created_at: float = 0.0


@dataclass(frozen=True)
class Recommendation:
    """Price recommendation returned to callers."""
    suggested_price: int
    reason: str
    source: RecommendationSource

    def to_response(self) -> Dict[str, Any]:
        """Render the public response body."""
        return {"suggestedPrice": self.suggested_price, "reason": self.reason}


@dataclass(frozen=True)
class RecommendationRequestRecord:
    """Append-only record of one recommendation resolution."""
    timestamp: datetime
    email: str
    source: RecommendationSource
    suggested_price: int
    reason: str


@dataclass(frozen=True)
class NewPlanChangeLogEntry:
    """Input for creating a ledger entry."""
    user_id: str
    user_email: str
    from_plan: PlanType
    to_plan: PlanType
    payment_method: str
    payment_id: Optional[str] = None
    reason: str = "Plan change requested"
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PlanChangeLogEntry:
    """Audit record of one plan transition attempt.

    from_plan, to_plan and payment_id never change after creation; status
    moves from pending to a terminal status at most once.
    """
    id: str
    user_id: str
    user_email: str
    from_plan: PlanType
    to_plan: PlanType
    payment_method: str
    payment_id: Optional[str]
    reason: str
    status: LedgerStatus
    metadata: Dict[str, Any]
    created_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def change_type(self) -> ChangeType:
        return ChangeType.between(self.from_plan, self.to_plan)


@dataclass(frozen=True)
class PlanChangeRow:
    """Tabular export row for plan change dashboards."""
    email: str
    previous_plan: str
    new_plan: str
    changed_at: datetime


@dataclass(frozen=True)
class DateRange:
    """Inclusive date range; open ends are unbounded."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def contains(self, moment: datetime) -> bool:
        moment = to_utc(moment)
        if self.start is not None and moment < to_utc(self.start):
            return False
        if self.end is not None and moment > to_utc(self.end):
            return False
        return True


@dataclass(frozen=True)
class LedgerQuery:
    """Filters accepted by ledger stores. Results are always newest-first."""
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    payment_id: Optional[str] = None
    status: Optional[LedgerStatus] = None
    date_range: Optional[DateRange] = None
    limit: Optional[int] = None
