"""Remote event fetch and reconciliation into the local event store."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import pytz

from .database import DatabaseManager
from .errors import DecodeError, FetchError, MultistatusParseError, PersistenceError, TransportError
from .ical import decode_vevent, extract_vevents
from .models import FetchStats, Provider, RemoteCalendar, RemoteEvent, SyncConfiguration, SyncState
from .retry import call_with_retries
from .services.caldav import CalDAVClient
from .services.multistatus import parse_multistatus

logger = logging.getLogger(__name__)

# Events overlapping [now - window, now + window] are fetched
FETCH_WINDOW = timedelta(days=30)


def fetch_window(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    now = now or datetime.now(pytz.UTC)
    return now - FETCH_WINDOW, now + FETCH_WINDOW


class RemoteEventFetcher:
    """Pulls events of one calendar into the local store."""

    def __init__(
        self,
        client: CalDAVClient,
        db_manager: DatabaseManager,
        sync_config: Optional[SyncConfiguration] = None
    ):
        self.client = client
        self.db_manager = db_manager
        self.sync_config = sync_config
        self.logger = logger.getChild('fetch')

    async def fetch(
        self,
        state: SyncState,
        calendar: RemoteCalendar,
        now: Optional[datetime] = None
    ) -> FetchStats:
        """Fetch and reconcile the events of ``calendar`` for one account.

        Skips the REPORT entirely when the calendar CTag matches the stored
        one and a previous fetch completed. Per-event decode and persistence
        failures are logged and counted; the CTag and sync time are stored
        only after every event was attempted.

        Args:
            state: Sync state of the account
            calendar: Selected remote calendar
            now: Reference time for the fetch window

        Returns:
            Fetch statistics

        Raises:
            FetchError: If the REPORT fails or its response is unparseable
        """
        stats = FetchStats()
        if state.apple_ctag and state.apple_ctag == calendar.ctag and state.last_sync_time:
            self.logger.info(f"CTag unchanged ({calendar.ctag}) for {state.user_id}, skipping fetch")
            stats.skipped_unchanged = True
            return stats

        now = now or datetime.now(pytz.UTC)
        start, end = fetch_window(now)
        try:
            body = await call_with_retries(self.sync_config, self.client.report, calendar.href, start, end)
            responses = parse_multistatus(body)
        except TransportError as e:
            raise FetchError(f"REPORT {calendar.href} failed: {e}") from e
        except MultistatusParseError as e:
            raise FetchError(f"Unparseable REPORT response from {calendar.href}: {e}") from e

        events: List[RemoteEvent] = []
        for response in responses:
            if not response.calendar_data:
                continue
            href = self.client.resolve(response.href)
            for block in extract_vevents(response.calendar_data):
                try:
                    event = decode_vevent(block, etag=response.etag, href=href)
                except DecodeError as e:
                    self.logger.warning(f"Skipping malformed event in {href}: {e}")
                    stats.failed += 1
                    continue
                if event is None:
                    self.logger.debug(f"Skipping event without UID, SUMMARY or DTSTART in {href}")
                    continue
                events.append(event)

        stats.received = len(events)
        for event in events:
            try:
                if self._reconcile(state.user_id, event, now):
                    stats.upserted += 1
                else:
                    stats.unchanged += 1
            except PersistenceError as e:
                self.logger.error(f"Failed to store event {event.uid} for {state.user_id}: {e}")
                stats.failed += 1
            except Exception:
                self.logger.exception(f"Unexpected error storing event {event.uid} for {state.user_id}")
                stats.failed += 1

        with self.db_manager.get_session() as session:
            self.db_manager.update_sync_state(
                session,
                state.user_id,
                apple_ctag=calendar.ctag,
                last_sync_time=now,
                last_sync_error=None,
            )

        self.logger.info(
            f"Fetched {stats.received} event(s) for {state.user_id}: "
            f"{stats.upserted} upserted, {stats.unchanged} unchanged, {stats.failed} failed"
        )
        return stats

    def _reconcile(self, user_id: str, event: RemoteEvent, now: datetime) -> bool:
        """Upsert one remote event; returns False when its ETag is already stored."""
        with self.db_manager.get_session() as session:
            existing = self.db_manager.get_event_by_external_id(
                session, user_id, event.uid, Provider.APPLE
            )
            if existing is not None and event.etag and existing.sync_etag == event.etag:
                return False
            self.db_manager.upsert_remote_event(session, user_id, event, synced_at=now)
        return True
