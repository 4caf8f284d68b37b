"""Push of locally authored events to the remote calendar."""

import logging
from datetime import datetime
from typing import Optional

import pytz

from .database import DatabaseManager
from .errors import PersistenceError, PushConflictError, PushTransportError, TransportError
from .ical import encode_event
from .models import LocalEvent, Provider, PushStats, RemoteCalendar, SyncStatus
from .services.caldav import CalDAVClient, PutResult

logger = logging.getLogger(__name__)


def resource_url(calendar_href: str, event_id: str) -> str:
    """URL an event is created under: ``{calendar_href}{event_id}.ics``."""
    if not calendar_href.endswith('/'):
        calendar_href += '/'
    return f"{calendar_href}{event_id}.ics"


class LocalEventPusher:
    """Writes pending local events to a calendar with conditional PUTs.

    Every attempted event ends synced, in conflict, in error, or still
    pending when the server could not be reached.
    """

    def __init__(self, client: CalDAVClient, db_manager: DatabaseManager, push_updates: bool = False):
        """Initialize the pusher.

        Args:
            client: CalDAV client for the account
            db_manager: Event store
            push_updates: Also re-PUT locally modified synced events with If-Match
        """
        self.client = client
        self.db_manager = db_manager
        self.push_updates = push_updates
        self.logger = logger.getChild('push')

    async def push(self, user_id: str, calendar: RemoteCalendar) -> PushStats:
        """Push the account's pending events to ``calendar``."""
        stats = PushStats()

        with self.db_manager.get_session() as session:
            creates = self.db_manager.get_pending_local_events(session, user_id)
            updates = self.db_manager.get_pending_remote_updates(session, user_id) if self.push_updates else []

        for event in creates:
            await self._push_one(stats, event, resource_url(calendar.href, event.id), if_match=None)

        for event in updates:
            await self._push_one(stats, event, event.remote_href, if_match=event.sync_etag)

        if stats.attempted:
            self.logger.info(
                f"Pushed {stats.attempted} event(s) for {user_id}: {stats.synced} synced, "
                f"{stats.conflicts} conflicts, {stats.errors} errors, {stats.still_pending} still pending"
            )
        return stats

    async def _push_one(self, stats: PushStats, event: LocalEvent, url: str, if_match: Optional[str]) -> None:
        try:
            outcome = await self._put_event(event, url, if_match=if_match)
        except PersistenceError as e:
            self.logger.error(f"Could not record push of event {event.id}: {e}")
            outcome = SyncStatus.ERROR
        except Exception:
            self.logger.exception(f"Unexpected error pushing event {event.id}")
            outcome = SyncStatus.ERROR
        self._count(stats, outcome)

    @staticmethod
    def _count(stats: PushStats, outcome: SyncStatus) -> None:
        if outcome == SyncStatus.SYNCED:
            stats.synced += 1
        elif outcome == SyncStatus.CONFLICT:
            stats.conflicts += 1
        elif outcome == SyncStatus.ERROR:
            stats.errors += 1
        else:
            stats.still_pending += 1

    async def _put_event(self, event: LocalEvent, url: str, if_match: Optional[str]) -> SyncStatus:
        """PUT one event and record the outcome on it.

        Returns:
            The event's resulting sync status
        """
        ical = encode_event(event)
        try:
            result = await self.client.put(url, ical, if_match=if_match)
            if result.precondition_failed:
                raise PushConflictError(self._conflict_message(event, result, if_match))
        except PushConflictError as e:
            self.logger.warning(str(e))
            self._record(event.id, sync_status=SyncStatus.CONFLICT, sync_error=str(e))
            return SyncStatus.CONFLICT
        except TransportError as e:
            error = PushTransportError(f"PUT {url} failed: {e}")
            if e.is_network_failure:
                # Server unreachable; retried on the next pass
                self.logger.warning(f"{error}; event {event.id} stays pending")
                self._record(event.id, sync_error=str(error))
                return SyncStatus.PENDING
            self.logger.error(str(error))
            self._record(event.id, sync_status=SyncStatus.ERROR, sync_error=str(error))
            return SyncStatus.ERROR

        now = datetime.now(pytz.UTC)
        self._record(
            event.id,
            sync_status=SyncStatus.SYNCED,
            provider=Provider.APPLE,
            external_id=event.external_id or event.id,
            sync_etag=result.etag,
            remote_href=result.url,
            last_synced=now,
            sync_error=None,
        )
        self.logger.debug(f"Pushed event {event.id} to {result.url}")
        return SyncStatus.SYNCED

    @staticmethod
    def _conflict_message(event: LocalEvent, result: PutResult, if_match: Optional[str]) -> str:
        if if_match:
            return (f"Remote copy of event {event.id} at {result.url} changed since "
                    f"version {if_match}; not overwritten")
        return f"A remote resource already exists at {result.url}; event {event.id} not pushed"

    def _record(self, event_id: str, **fields) -> None:
        with self.db_manager.get_session() as session:
            self.db_manager.update_event(session, event_id, **fields)
