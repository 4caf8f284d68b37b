"""Database models and operations for credentials, sync state and events."""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional
from uuid import uuid4

from sqlalchemy import create_engine, Column, String, DateTime, Boolean, Text, Integer, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.types import TypeDecorator
import pytz

from .config import Settings
from .errors import PersistenceError
from .models import (
    AccountCredential, LocalEvent, Provider, RemoteEvent, SyncDirection,
    SyncState, SyncStatus, ensure_utc
)

logger = logging.getLogger(__name__)

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as naive UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return ensure_utc(value).astimezone(pytz.UTC).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=pytz.UTC)
        return value.astimezone(pytz.UTC)


def _utcnow() -> datetime:
    return datetime.now(pytz.UTC)


class CaldavCredentialDB(Base):
    """Database model for per-user CalDAV credentials."""

    __tablename__ = 'caldav_credentials'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(255), nullable=False, unique=True)
    username = Column(String(255), nullable=False)
    app_password = Column(String(255), nullable=False)
    caldav_url = Column(String(1000), nullable=False, default="https://caldav.icloud.com/")

    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow)


class SyncSettingsDB(Base):
    """Database model for per-user sync settings and state."""

    __tablename__ = 'calendar_sync_settings'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(255), nullable=False, unique=True)
    apple_enabled = Column(Boolean, nullable=False, default=False)
    auto_sync_enabled = Column(Boolean, nullable=False, default=False)
    sync_interval_minutes = Column(Integer, nullable=True)
    sync_direction = Column(String(32), nullable=False, default=SyncDirection.BIDIRECTIONAL.value)

    # Explicit calendar selection
    selected_calendar_href = Column(String(1000), nullable=True)
    selected_calendar_name = Column(String(255), nullable=True)

    # Incremental refresh
    apple_ctag = Column(String(255), nullable=True)
    last_sync_time = Column(UTCDateTime, nullable=True)
    last_sync_attempt = Column(UTCDateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index('idx_sync_settings_auto', 'apple_enabled', 'auto_sync_enabled'),
    )


class CalendarEventDB(Base):
    """Database model for internal calendar events."""

    __tablename__ = 'calendar_events'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    title = Column(String(500), nullable=False, default="")
    description = Column(Text, nullable=True)
    location = Column(String(500), nullable=True)
    starts_at = Column(UTCDateTime, nullable=False)
    ends_at = Column(UTCDateTime, nullable=False)
    all_day = Column(Boolean, nullable=False, default=False)

    # Sync metadata
    provider = Column(String(32), nullable=True)
    external_id = Column(String(255), nullable=True)
    sync_status = Column(String(20), nullable=False, default=SyncStatus.PENDING.value)
    sync_etag = Column(String(255), nullable=True)
    remote_href = Column(String(1000), nullable=True)
    last_synced = Column(UTCDateTime, nullable=True)
    sync_error = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        # Idempotency key for remote upserts; rows without a provider never collide
        UniqueConstraint('user_id', 'provider', 'external_id', name='uq_calendar_events_external'),
        Index('idx_calendar_events_status', 'user_id', 'sync_status'),
    )


def _direction(value: Optional[str]) -> SyncDirection:
    try:
        return SyncDirection(value)
    except ValueError:
        logger.warning(f"Unknown sync direction {value!r}, using bidirectional")
        return SyncDirection.BIDIRECTIONAL


def _to_sync_state(row: SyncSettingsDB) -> SyncState:
    return SyncState(
        user_id=row.user_id,
        apple_enabled=row.apple_enabled,
        auto_sync_enabled=row.auto_sync_enabled,
        sync_interval_minutes=row.sync_interval_minutes,
        sync_direction=_direction(row.sync_direction),
        selected_calendar_href=row.selected_calendar_href,
        selected_calendar_name=row.selected_calendar_name,
        apple_ctag=row.apple_ctag,
        last_sync_time=row.last_sync_time,
        last_sync_attempt=row.last_sync_attempt,
        last_sync_error=row.last_sync_error,
    )


def _to_local_event(row: CalendarEventDB) -> LocalEvent:
    return LocalEvent(
        id=row.id,
        user_id=row.user_id,
        title=row.title or "",
        description=row.description,
        location=row.location,
        starts_at=row.starts_at,
        ends_at=row.ends_at,
        all_day=row.all_day,
        provider=row.provider,
        external_id=row.external_id,
        sync_status=row.sync_status,
        sync_etag=row.sync_etag,
        remote_href=row.remote_href,
        last_synced=row.last_synced,
        sync_error=row.sync_error,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class DatabaseManager:
    """Database manager for sync operations.

    Methods take an open session and write methods commit. Any SQLAlchemy
    failure, on reads as well as writes, is rolled back and raised as
    ``PersistenceError``.
    """

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    @contextmanager
    def _guard(self, session: Session, action: str) -> Iterator[None]:
        """Roll back and raise ``PersistenceError`` on any SQLAlchemy failure."""
        try:
            yield
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to {action}: {e}") from e

    def _commit(self, session: Session, action: str) -> None:
        with self._guard(session, action):
            session.commit()

    # Credentials

    def save_credential(
        self,
        session: Session,
        user_id: str,
        username: str,
        app_password: str,
        caldav_url: Optional[str] = None
    ) -> AccountCredential:
        """Create or replace the CalDAV credential of a user."""
        caldav_url = caldav_url or self.settings.caldav_server_url
        with self._guard(session, f"save credential for {user_id}"):
            row = session.query(CaldavCredentialDB).filter_by(user_id=user_id).first()
            if row is None:
                row = CaldavCredentialDB(user_id=user_id)
                session.add(row)
            row.username = username
            row.app_password = app_password
            row.caldav_url = caldav_url
            row.updated_at = _utcnow()
            session.commit()
        return AccountCredential(
            user_id=user_id, username=username, app_password=app_password, caldav_url=caldav_url
        )

    def get_credential(self, session: Session, user_id: str) -> Optional[AccountCredential]:
        with self._guard(session, f"load credential for {user_id}"):
            row = session.query(CaldavCredentialDB).filter_by(user_id=user_id).first()
        if row is None:
            return None
        return AccountCredential(
            user_id=row.user_id,
            username=row.username,
            app_password=row.app_password,
            caldav_url=row.caldav_url,
        )

    def list_credentials(self, session: Session) -> List[AccountCredential]:
        with self._guard(session, "list credentials"):
            rows = session.query(CaldavCredentialDB).order_by(CaldavCredentialDB.user_id).all()
        return [
            AccountCredential(
                user_id=row.user_id,
                username=row.username,
                app_password=row.app_password,
                caldav_url=row.caldav_url,
            )
            for row in rows
        ]

    # Sync state

    def get_sync_state(self, session: Session, user_id: str) -> Optional[SyncState]:
        with self._guard(session, f"load sync state for {user_id}"):
            row = session.query(SyncSettingsDB).filter_by(user_id=user_id).first()
        return _to_sync_state(row) if row else None

    def list_sync_states(self, session: Session) -> List[SyncState]:
        with self._guard(session, "list sync states"):
            rows = session.query(SyncSettingsDB).order_by(SyncSettingsDB.user_id).all()
        return [_to_sync_state(row) for row in rows]

    def get_auto_sync_states(self, session: Session) -> List[SyncState]:
        """Accounts with the provider and automatic sync both enabled."""
        with self._guard(session, "list auto-sync accounts"):
            rows = session.query(SyncSettingsDB).filter(
                SyncSettingsDB.apple_enabled == True,  # noqa: E712
                SyncSettingsDB.auto_sync_enabled == True  # noqa: E712
            ).order_by(SyncSettingsDB.user_id).all()
        return [_to_sync_state(row) for row in rows]

    def update_sync_state(self, session: Session, user_id: str, **kwargs) -> SyncState:
        """Create or update the sync settings row of a user.

        Args:
            session: Database session
            user_id: Account owner
            **kwargs: Columns to set

        Returns:
            The updated state
        """
        with self._guard(session, f"update sync state for {user_id}"):
            row = session.query(SyncSettingsDB).filter_by(user_id=user_id).first()
            if row is None:
                row = SyncSettingsDB(user_id=user_id)
                session.add(row)
            for key, value in kwargs.items():
                if not hasattr(row, key):
                    raise AttributeError(f"Unknown sync setting: {key}")
                if isinstance(value, SyncDirection):
                    value = value.value
                setattr(row, key, value)
            row.updated_at = _utcnow()
            session.commit()
        return _to_sync_state(row)

    # Events

    def create_local_event(
        self,
        session: Session,
        user_id: str,
        title: str,
        starts_at: datetime,
        ends_at: datetime,
        description: Optional[str] = None,
        location: Optional[str] = None,
        all_day: bool = False,
    ) -> LocalEvent:
        """Insert a locally authored event awaiting push."""
        row = CalendarEventDB(
            user_id=user_id,
            title=title,
            description=description,
            location=location,
            starts_at=starts_at,
            ends_at=ends_at,
            all_day=all_day,
            sync_status=SyncStatus.PENDING.value,
        )
        session.add(row)
        self._commit(session, f"create event for {user_id}")
        return _to_local_event(row)

    def get_event(self, session: Session, event_id: str) -> Optional[LocalEvent]:
        with self._guard(session, f"load event {event_id}"):
            row = session.get(CalendarEventDB, event_id)
        return _to_local_event(row) if row else None

    def get_event_by_external_id(
        self,
        session: Session,
        user_id: str,
        external_id: str,
        provider: Provider = Provider.APPLE
    ) -> Optional[LocalEvent]:
        with self._guard(session, f"look up event {external_id} for {user_id}"):
            row = session.query(CalendarEventDB).filter_by(
                user_id=user_id, provider=provider.value, external_id=external_id
            ).first()
        return _to_local_event(row) if row else None

    def get_events(self, session: Session, user_id: str) -> List[LocalEvent]:
        with self._guard(session, f"list events for {user_id}"):
            rows = session.query(CalendarEventDB).filter_by(user_id=user_id).order_by(
                CalendarEventDB.starts_at
            ).all()
        return [_to_local_event(row) for row in rows]

    def count_events_by_status(self, session: Session, user_id: str) -> Dict[str, int]:
        counts = {status.value: 0 for status in SyncStatus}
        with self._guard(session, f"count events for {user_id}"):
            rows = session.query(CalendarEventDB.sync_status).filter_by(user_id=user_id).all()
        for row in rows:
            counts[row.sync_status] = counts.get(row.sync_status, 0) + 1
        return counts

    def get_pending_local_events(self, session: Session, user_id: str) -> List[LocalEvent]:
        """Locally authored events never pushed (pending, no provider)."""
        with self._guard(session, f"list pending events for {user_id}"):
            rows = session.query(CalendarEventDB).filter(
                CalendarEventDB.user_id == user_id,
                CalendarEventDB.sync_status == SyncStatus.PENDING.value,
                CalendarEventDB.provider.is_(None)
            ).order_by(CalendarEventDB.created_at).all()
        return [_to_local_event(row) for row in rows]

    def get_pending_remote_updates(self, session: Session, user_id: str) -> List[LocalEvent]:
        """Synced events modified locally since, with a known remote version."""
        with self._guard(session, f"list pending updates for {user_id}"):
            rows = session.query(CalendarEventDB).filter(
                CalendarEventDB.user_id == user_id,
                CalendarEventDB.sync_status == SyncStatus.PENDING.value,
                CalendarEventDB.provider == Provider.APPLE.value,
                CalendarEventDB.sync_etag.isnot(None),
                CalendarEventDB.remote_href.isnot(None)
            ).order_by(CalendarEventDB.updated_at).all()
        return [_to_local_event(row) for row in rows]

    def update_event(self, session: Session, event_id: str, **kwargs) -> LocalEvent:
        """Set columns on one event.

        Raises:
            PersistenceError: If the event does not exist or the write fails
        """
        with self._guard(session, f"update event {event_id}"):
            row = session.get(CalendarEventDB, event_id)
            if row is None:
                raise PersistenceError(f"Event {event_id} not found")
            for key, value in kwargs.items():
                if not hasattr(row, key):
                    raise AttributeError(f"Unknown event column: {key}")
                if isinstance(value, (SyncStatus, Provider)):
                    value = value.value
                setattr(row, key, value)
            session.commit()
        return _to_local_event(row)

    def upsert_remote_event(
        self,
        session: Session,
        user_id: str,
        event: RemoteEvent,
        synced_at: Optional[datetime] = None,
        provider: Provider = Provider.APPLE
    ) -> None:
        """Insert or update the local copy of a remote event in one statement.

        Keyed on ``(user_id, provider, event.uid)``; concurrent passes over
        the same event cannot create duplicates.
        """
        synced_at = synced_at or _utcnow()
        values = {
            'title': event.summary,
            'description': event.description,
            'location': event.location,
            'starts_at': event.start,
            'ends_at': event.end,
            'all_day': event.all_day,
            'sync_status': SyncStatus.SYNCED.value,
            'sync_etag': event.etag,
            'remote_href': event.href,
            'last_synced': synced_at,
            'sync_error': None,
            'updated_at': synced_at,
        }
        key = {'user_id': user_id, 'provider': provider.value, 'external_id': event.uid}

        dialect = self.engine.dialect.name
        with self._guard(session, f"upsert event {event.uid} for {user_id}"):
            if dialect in ('sqlite', 'postgresql'):
                insert = sqlite_insert if dialect == 'sqlite' else postgresql_insert
                stmt = insert(CalendarEventDB).values(
                    id=str(uuid4()), created_at=synced_at, **key, **values
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=['user_id', 'provider', 'external_id'],
                    set_={name: getattr(stmt.excluded, name) for name in values},
                )
                session.execute(stmt)
            else:
                row = session.query(CalendarEventDB).filter_by(**key).with_for_update().first()
                if row is None:
                    row = CalendarEventDB(created_at=synced_at, **key)
                    session.add(row)
                for name, value in values.items():
                    setattr(row, name, value)
            session.commit()
