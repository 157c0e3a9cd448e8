"""Data models for tracked records, statuses, history and notifications."""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransitionKind(str, Enum):
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    FIRST_SEEN = "first_seen"
    FINALIZED = "finalized"


class ChangeCategory(str, Enum):
    """What kind of change a new status represents, for owner preferences."""

    CONFIRMATION = "confirmation"
    WAITLIST_MOVEMENT = "waitlist_movement"
    CANCELLATION = "cancellation"
    CHART_PREPARED = "chart_prepared"
    EXPIRED = "expired"


class ChannelOutcome(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


class JobState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    CHECKING = "checking"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"


class NotificationSettings(BaseModel):
    """Where and about what the record owner wants to be notified."""

    email: Optional[str] = None
    push_endpoint: Optional[str] = Field(default=None, description="Webhook URL for push delivery")
    email_enabled: bool = True
    push_enabled: bool = True
    in_app_enabled: bool = True
    categories: set[ChangeCategory] = Field(default_factory=lambda: set(ChangeCategory))


class TrackedRecord(BaseModel):
    """A PNR registered for tracking by one owner."""

    pnr: str = Field(..., description="10-digit PNR (primary key)")
    owner_id: str
    origin: str = ""
    destination: str = ""
    travel_date: Optional[str] = Field(default=None, description="Travel date as reported upstream")
    current_status: Optional[str] = None
    is_finalized: bool = False
    last_checked_at: Optional[datetime] = None
    check_interval: Optional[float] = Field(default=None, description="Seconds between checks")
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    created_at: datetime = Field(default_factory=utcnow)


class StatusSnapshot(BaseModel):
    """One observed upstream status. Never mutated."""

    model_config = ConfigDict(frozen=True)

    pnr: str
    status: str
    fetched_at: datetime = Field(default_factory=utcnow)
    attempts: int = 1
    finalized: bool = Field(default=False, description="Upstream says the journey is complete or expired")
    origin: Optional[str] = None
    destination: Optional[str] = None
    travel_date: Optional[str] = None


class Transition(BaseModel):
    """Classified outcome of comparing a previous status with a fresh snapshot."""

    kind: TransitionKind
    pnr: str
    old_status: Optional[str] = None
    new_status: str
    category: Optional[ChangeCategory] = None
    snapshot: StatusSnapshot

    @property
    def forwarded(self) -> bool:
        return self.kind is not TransitionKind.UNCHANGED


class HistoryEntry(BaseModel):
    id: Optional[int] = None
    pnr: str
    previous_status: Optional[str] = None
    new_status: str
    kind: TransitionKind
    category: Optional[ChangeCategory] = None
    transitioned_at: datetime = Field(default_factory=utcnow)


class NotificationAttempt(BaseModel):
    pnr: str
    history_id: int
    channel: str
    outcome: ChannelOutcome
    attempted_at: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None


class ScheduledJob(BaseModel):
    pnr: str
    interval: float
    next_fire_at: float = Field(..., description="Epoch seconds")
    consecutive_failures: int = 0


class CheckOutcome(BaseModel):
    """Result of one fetch -> detect -> dispatch run for a record."""

    pnr: str
    ok: bool
    transition: Optional[Transition] = None
    history_id: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    notifications: list[NotificationAttempt] = Field(default_factory=list)
    coalesced: bool = False
    skipped_reason: Optional[str] = None

    @property
    def finalized(self) -> bool:
        return self.transition is not None and self.transition.kind is TransitionKind.FINALIZED


class BatchReport(BaseModel):
    batch_key: str
    outcomes: dict[str, CheckOutcome] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    from_cache: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes.values() if outcome.ok)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes.values() if not outcome.ok)
