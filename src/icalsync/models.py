"""Data models for calendar synchronization."""

from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, SecretStr, validator
import pytz


class Provider(str, Enum):
    """Remote calendar providers."""

    APPLE = "apple"


class SyncDirection(str, Enum):
    """Which way events flow for an account."""

    IMPORT_ONLY = "import_only"      # remote -> local
    EXPORT_ONLY = "export_only"      # local -> remote
    BIDIRECTIONAL = "bidirectional"

    @classmethod
    def _missing_(cls, value):
        # Names used by older settings rows
        legacy = {
            'external_to_internal': cls.IMPORT_ONLY,
            'internal_to_external': cls.EXPORT_ONLY,
        }
        if isinstance(value, str):
            return legacy.get(value.lower())
        return None

    @property
    def imports(self) -> bool:
        return self in (SyncDirection.IMPORT_ONLY, SyncDirection.BIDIRECTIONAL)

    @property
    def exports(self) -> bool:
        return self in (SyncDirection.EXPORT_ONLY, SyncDirection.BIDIRECTIONAL)


class SyncStatus(str, Enum):
    """Sync status of a local event."""

    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"
    ERROR = "error"


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Return ``dt`` as an aware datetime; naive values are taken as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt


class AccountCredential(BaseModel):
    """CalDAV credential for one user."""

    user_id: str = Field(..., description="Owner of the credential")
    username: str = Field(..., description="CalDAV username (Apple ID)")
    app_password: SecretStr = Field(..., description="App-specific password")
    caldav_url: str = Field("https://caldav.icloud.com/", description="CalDAV base URL")

    @property
    def home_url(self) -> str:
        """Calendar-home collection URL: ``{base}/{username}/calendars/``."""
        return f"{self.caldav_url.rstrip('/')}/{self.username}/calendars/"


class RemoteCalendar(BaseModel):
    """A calendar collection discovered on the server."""

    href: str = Field(..., description="Collection URL (ends with '/')")
    name: str = Field(..., description="Display name")
    ctag: str = Field(..., description="Collection change token")
    description: Optional[str] = Field(None)
    supported_components: List[str] = Field(default_factory=list)

    def supports_events(self) -> bool:
        """Calendars that declare no component set are assumed to take VEVENTs."""
        if not self.supported_components:
            return True
        return 'VEVENT' in self.supported_components


class RemoteEvent(BaseModel):
    """A VEVENT decoded from a CalDAV resource."""

    uid: str
    summary: str
    description: Optional[str] = None
    location: Optional[str] = None
    start: datetime
    end: datetime
    all_day: bool = False
    rrule: Optional[str] = None
    status: Optional[str] = None
    etag: Optional[str] = Field(None, description="ETag of the resource holding this VEVENT")
    href: Optional[str] = Field(None, description="URL of the resource holding this VEVENT")


class LocalEvent(BaseModel):
    """Internal event as read from the event store."""

    id: str = Field(..., description="Internal event id")
    user_id: str
    title: str = ""
    description: Optional[str] = None
    location: Optional[str] = None
    starts_at: datetime
    ends_at: datetime
    all_day: bool = False
    provider: Optional[Provider] = None
    external_id: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_etag: Optional[str] = None
    remote_href: Optional[str] = None
    last_synced: Optional[datetime] = None
    sync_error: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))

    @validator('starts_at', 'ends_at', 'created_at', 'updated_at', 'last_synced', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v

    @validator('ends_at')
    def end_not_before_start(cls, v, values):
        if 'starts_at' in values and v < values['starts_at']:
            raise ValueError(f"End time ({v}) is before start time ({values['starts_at']})")
        return v


class SyncState(BaseModel):
    """Per-account synchronization settings and bookkeeping."""

    user_id: str
    apple_enabled: bool = False
    auto_sync_enabled: bool = False
    sync_interval_minutes: Optional[int] = None
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    selected_calendar_href: Optional[str] = None
    selected_calendar_name: Optional[str] = None
    apple_ctag: Optional[str] = Field(None, description="CTag seen at the last completed fetch")
    last_sync_time: Optional[datetime] = None
    last_sync_attempt: Optional[datetime] = None
    last_sync_error: Optional[str] = None


class FetchStats(BaseModel):
    """Outcome of one remote fetch pass."""

    skipped_unchanged: bool = Field(False, description="CTag unchanged, no REPORT issued")
    received: int = 0
    upserted: int = 0
    unchanged: int = 0
    failed: int = 0


class PushStats(BaseModel):
    """Outcome of one local push pass."""

    synced: int = 0
    conflicts: int = 0
    errors: int = 0
    still_pending: int = 0

    @property
    def attempted(self) -> int:
        return self.synced + self.conflicts + self.errors + self.still_pending


class AccountSyncResult(BaseModel):
    """Per-account entry of a scheduled run."""

    user_id: str
    status: str = Field(..., description="'success' or 'error'")
    error: Optional[str] = None
    calendar: Optional[str] = None
    fetch: Optional[FetchStats] = None
    push: Optional[PushStats] = None


class SyncRunReport(BaseModel):
    """Result of a scheduled pass over all auto-sync accounts."""

    success: bool = True
    synced_users: int = 0
    results: List[AccountSyncResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    completed_at: Optional[datetime] = None

    @property
    def failed_users(self) -> List[str]:
        return [r.user_id for r in self.results if r.status != 'success']


class CalendarSummary(BaseModel):
    name: str
    href: str


class ConnectionTestResult(BaseModel):
    """Result of the discovery-only credential check."""

    success: bool
    calendars: List[CalendarSummary] = Field(default_factory=list)
    message: str = ""


class SyncConfiguration(BaseModel):
    """Sync tuning knobs."""

    retry_attempts: int = Field(3, ge=1)
    retry_delay_seconds: float = Field(2, ge=0)
    retry_max_delay_seconds: float = Field(30, ge=0)
    default_sync_interval_minutes: int = Field(30, ge=1)
    push_local_updates: bool = Field(
        False, description="Re-PUT locally modified synced events with If-Match"
    )


def sync_interval_elapsed(
    last_attempt: Optional[datetime],
    interval_minutes: Optional[int],
    now: Optional[datetime] = None,
) -> bool:
    """Whether an account is due for its next automatic sync."""
    if last_attempt is None or not interval_minutes:
        return True
    now = now or datetime.now(pytz.UTC)
    return ensure_utc(now) - ensure_utc(last_attempt) >= timedelta(minutes=interval_minutes)
