"""Data models for care-schedule synchronization."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, validator
import pytz


class ItemType(str, Enum):
    """Kinds of schedulable entity mirrored to Google Calendar."""

    APPOINTMENT = "appointment"
    BILL = "bill"


class SyncDirection(str, Enum):
    """Direction of the last successful exchange for a link."""

    PUSH = "push"
    PULL = "pull"


class SyncStatus(str, Enum):
    """Per-item sync state."""

    IDLE = "idle"
    PENDING = "pending"
    ERROR = "error"


class BillStatus(str, Enum):
    TODO = "todo"
    OVERDUE = "overdue"
    PAID = "paid"


class ManagedCalendarState(str, Enum):
    NONE = "none"
    ACTIVE = "active"


def _aware(v):
    if isinstance(v, datetime) and v.tzinfo is None:
        return v.replace(tzinfo=pytz.UTC)
    return v


class Appointment(BaseModel):
    """Local appointment as the sync engine sees it."""

    item_type: Literal["appointment"] = "appointment"
    item_id: str = Field(..., description="Owning item id")
    recipient_id: Optional[str] = Field(None)
    summary: str = Field("", description="Appointment title")
    start_at: datetime = Field(..., description="Start instant (UTC)")
    end_at: datetime = Field(..., description="End instant (UTC)")
    start_time_zone: Optional[str] = Field(None, description="IANA zone for the start")
    end_time_zone: Optional[str] = Field(None, description="IANA zone for the end")
    start_offset: Optional[str] = Field(None, description="Offset string like -05:00")
    end_offset: Optional[str] = Field(None)
    location: Optional[str] = Field(None)
    prep_note: Optional[str] = Field(None)
    assigned_collaborator_id: Optional[str] = Field(None)
    created_at: Optional[datetime] = Field(None)

    @validator('start_at', 'end_at', 'created_at', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        return _aware(v)


class Bill(BaseModel):
    """Local bill as the sync engine sees it."""

    item_type: Literal["bill"] = "bill"
    item_id: str = Field(..., description="Owning item id")
    recipient_id: Optional[str] = Field(None)
    amount: Optional[Decimal] = Field(None)
    due_date: Optional[date] = Field(None)
    statement_date: Optional[date] = Field(None)
    status: BillStatus = Field(BillStatus.TODO)
    pay_url: Optional[str] = Field(None)
    task_key: Optional[str] = Field(None)
    assigned_collaborator_id: Optional[str] = Field(None)
    created_at: Optional[datetime] = Field(None)

    @validator('created_at', pre=True)
    def ensure_timezone_aware(cls, v):
        return _aware(v)


Schedulable = Union[Appointment, Bill]


class SyncLink(BaseModel):
    """Mapping between one local item and one Google event."""

    item_id: str
    calendar_id: Optional[str] = None
    event_id: Optional[str] = None
    etag: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    last_sync_direction: Optional[SyncDirection] = None
    local_hash: Optional[str] = None
    remote_updated_at: Optional[datetime] = None
    sync_status: SyncStatus = SyncStatus.PENDING
    last_error: Optional[str] = None

    class Config:
        from_attributes = True

    @validator('last_synced_at', 'remote_updated_at', pre=True)
    def ensure_timezone_aware(cls, v):
        return _aware(v)


class GoogleCredential(BaseModel):
    """Per-user OAuth credential plus managed-calendar bookkeeping."""

    user_id: str
    access_token: str
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_type: Optional[str] = None
    id_token: Optional[str] = None
    calendar_id: Optional[str] = None
    sync_token: Optional[str] = None
    last_pulled_at: Optional[datetime] = None
    seeded_at: Optional[datetime] = None
    managed_calendar_id: Optional[str] = None
    managed_calendar_summary: Optional[str] = None
    managed_calendar_state: ManagedCalendarState = ManagedCalendarState.NONE
    managed_calendar_verified_at: Optional[datetime] = None
    managed_calendar_acl_role: Optional[str] = None
    managed_calendar_acl_digest: Optional[str] = None
    legacy_calendar_id: Optional[str] = None
    needs_reauth: bool = False

    class Config:
        from_attributes = True

    @validator(
        'expires_at', 'last_pulled_at', 'seeded_at', 'managed_calendar_verified_at', pre=True
    )
    def ensure_timezone_aware(cls, v):
        return _aware(v)


class WatchChannel(BaseModel):
    """Google push-notification channel open on one user's calendar."""

    channel_id: str
    user_id: str
    calendar_id: str
    resource_id: Optional[str] = None
    resource_uri: Optional[str] = None
    expiration: Optional[datetime] = None
    channel_token: Optional[str] = None

    class Config:
        from_attributes = True

    @validator('expiration', pre=True)
    def ensure_timezone_aware(cls, v):
        return _aware(v)


class SyncError(BaseModel):
    """Per-item or per-run failure recorded in a summary."""

    item_id: Optional[str] = None
    event_id: Optional[str] = None
    message: str
    kind: Optional[str] = None


class SyncSummary(BaseModel):
    """Outcome of one sync run for one user."""

    user_id: Optional[str] = None
    calendar_id: Optional[str] = None
    pushed: int = 0
    pulled: int = 0
    deleted: int = 0
    conflicts: int = 0
    skipped: int = 0
    errors: List[SyncError] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    completed_at: Optional[datetime] = None

    @property
    def local_changes(self) -> int:
        """Number of local entities touched by the pull phase."""
        return self.pulled + self.deleted

    def add_error(
        self,
        message: str,
        item_id: Optional[str] = None,
        event_id: Optional[str] = None,
        kind: Optional[str] = None,
    ) -> None:
        self.errors.append(SyncError(item_id=item_id, event_id=event_id, message=message, kind=kind))


class ManagedCalendarResult(BaseModel):
    calendar_id: str
    created: bool = False
    reused: bool = False


class MigrationSummary(BaseModel):
    """Result of moving linked events into the managed calendar."""

    migrated: int = 0
    pending: int = 0
    failed: int = 0
    previous_calendar_ids: List[str] = Field(default_factory=list)


class AclResult(BaseModel):
    granted: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    verified: bool = False


class IntegrationStatus(BaseModel):
    """Connection summary surfaced by the CLI and HTTP status endpoints."""

    user_id: str
    connected: bool = False
    needs_reauth: bool = False
    calendar_id: Optional[str] = None
    managed_calendar_id: Optional[str] = None
    managed_calendar_state: Optional[ManagedCalendarState] = None
    last_pulled_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    pending_items: int = 0
    error_items: int = 0


class SyncConfiguration(BaseModel):
    """Sync engine tunables."""

    lookback_days: int = Field(30, ge=0, description="Initial pull window; 0 disables it")
    debounce_ms: int = Field(15000, ge=0)
    retry_base_ms: int = Field(60000, ge=1)
    retry_max_ms: int = Field(300000, ge=1)
    max_retry_attempts: int = Field(10, ge=1, description="Consecutive retries before a user is dropped until the next trigger")
    poll_interval_ms: int = Field(30 * 60 * 1000, ge=1000)
    enable_polling_fallback: bool = Field(False)
    acl_refresh_hours: int = Field(12, ge=0)
    lock_lease_seconds: int = Field(600, ge=1)
    push_concurrency: int = Field(4, ge=1, le=50)
    default_time_zone: str = Field("America/New_York")
    managed_calendar_name: str = Field("CareSync")
    managed_calendar_role: str = Field("writer")
    watch_ttl_seconds: int = Field(7 * 24 * 60 * 60, ge=60, description="Requested lifetime of a push channel")
    watch_renewal_threshold_seconds: int = Field(60 * 60, ge=0)
    watch_renewal_lookahead_seconds: int = Field(12 * 60 * 60, ge=0)

    @validator('retry_max_ms')
    def ceiling_not_below_base(cls, v, values):
        """Ensure the retry ceiling is not smaller than the base delay."""
        base = values.get('retry_base_ms')
        if base is not None and v < base:
            raise ValueError('retry_max_ms must be >= retry_base_ms')
        return v

    @validator('default_time_zone')
    def validate_time_zone(cls, v):
        if v not in pytz.all_timezones_set:
            raise ValueError(f"Unknown time zone: {v}")
        return v
