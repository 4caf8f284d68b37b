"""Sync orchestration across accounts with failure isolation."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

import pytz

from .config import Settings
from .database import DatabaseManager
from .discovery import CalendarDiscovery
from .errors import CalendarServiceError, DiscoveryError
from .fetch import RemoteEventFetcher
from .models import (
    AccountCredential, AccountSyncResult, CalendarSummary, ConnectionTestResult,
    RemoteCalendar, SyncRunReport, SyncState, sync_interval_elapsed
)
from .push import LocalEventPusher
from .services.caldav import CalDAVClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[AccountCredential], CalDAVClient]


class SyncEngine:
    """Runs discovery, fetch and push for CalDAV accounts.

    Accounts are processed concurrently up to
    ``Settings.max_concurrent_accounts``; a failure in one account is
    recorded on its sync state and never affects the others.
    """

    def __init__(
        self,
        settings: Settings,
        db_manager: Optional[DatabaseManager] = None,
        client_factory: Optional[ClientFactory] = None
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            db_manager: Datastore (created from settings if omitted)
            client_factory: Builds the CalDAV client for an account
        """
        self.settings = settings
        self.db_manager = db_manager or DatabaseManager(settings)
        self.client_factory = client_factory or self._default_client
        self.logger = logger.getChild('sync_engine')
        self._account_locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}

    def _default_client(self, credential: AccountCredential) -> CalDAVClient:
        return CalDAVClient(credential, timeout=self.settings.request_timeout_seconds)

    async def initialize(self) -> None:
        """Initialize the sync engine."""
        self.db_manager.init_db()
        self.logger.info("Sync engine initialized successfully")

    @asynccontextmanager
    async def _account_lock(self, user_id: str) -> AsyncIterator[None]:
        """Serialize runs of one account; the lock is dropped once nobody holds or awaits it."""
        lock = self._account_locks.setdefault(user_id, asyncio.Lock())
        self._lock_holders[user_id] = self._lock_holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[user_id] -= 1
            if not self._lock_holders[user_id]:
                del self._lock_holders[user_id]
                del self._account_locks[user_id]

    async def run_scheduled(self, respect_interval: bool = False) -> SyncRunReport:
        """Synchronize every account with the provider and auto-sync enabled.

        Args:
            respect_interval: Only sync accounts whose interval has elapsed

        Returns:
            Report with one result per account, in account order
        """
        report = SyncRunReport()
        with self.db_manager.get_session() as session:
            states = self.db_manager.get_auto_sync_states(session)

        if respect_interval:
            default_interval = self.settings.sync_config.default_sync_interval_minutes
            states = [
                s for s in states
                if sync_interval_elapsed(s.last_sync_attempt, s.sync_interval_minutes or default_interval)
            ]

        self.logger.info(f"Starting scheduled sync for {len(states)} account(s)")
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_accounts)

        async def _bounded(user_id: str) -> AccountSyncResult:
            async with semaphore:
                return await self.sync_account(user_id)

        results: List[AccountSyncResult] = await asyncio.gather(
            *(_bounded(state.user_id) for state in states)
        )

        report.results = list(results)
        report.synced_users = len(states)
        report.completed_at = datetime.now(pytz.UTC)
        failed = report.failed_users
        if failed:
            self.logger.warning(f"Scheduled sync finished with {len(failed)} failed account(s): {failed}")
        else:
            self.logger.info(f"Scheduled sync finished for {len(states)} account(s)")
        return report

    async def sync_account(self, user_id: str) -> AccountSyncResult:
        """Synchronize one account; never raises for account-level failures."""
        async with self._account_lock(user_id):
            attempt_at = datetime.now(pytz.UTC)
            try:
                result = await self._sync_account(user_id)
                with self.db_manager.get_session() as session:
                    self.db_manager.update_sync_state(
                        session,
                        user_id,
                        last_sync_attempt=attempt_at,
                        last_sync_time=datetime.now(pytz.UTC),
                        last_sync_error=None,
                    )
            except CalendarServiceError as e:
                self.logger.error(f"Sync failed for {user_id}: {e}")
                return self._record_failure(user_id, attempt_at, str(e))
            except Exception as e:
                self.logger.exception(f"Unexpected error syncing {user_id}")
                return self._record_failure(user_id, attempt_at, f"{type(e).__name__}: {e}")
            return result

    def _record_failure(self, user_id: str, attempt_at: datetime, message: str) -> AccountSyncResult:
        try:
            with self.db_manager.get_session() as session:
                self.db_manager.update_sync_state(
                    session, user_id, last_sync_attempt=attempt_at, last_sync_error=message
                )
        except Exception:
            self.logger.exception(f"Could not record sync failure for {user_id}")
        return AccountSyncResult(user_id=user_id, status='error', error=message)

    def _load_account(self, user_id: str) -> Tuple[SyncState, AccountCredential]:
        with self.db_manager.get_session() as session:
            state = self.db_manager.get_sync_state(session, user_id)
            credential = self.db_manager.get_credential(session, user_id)
        if credential is None:
            raise CalendarServiceError(f"No CalDAV credentials configured for user {user_id}")
        return state or SyncState(user_id=user_id), credential

    async def _sync_account(self, user_id: str) -> AccountSyncResult:
        state, credential = self._load_account(user_id)
        sync_config = self.settings.sync_config

        async with self.client_factory(credential) as client:
            calendars = await CalendarDiscovery(client, sync_config).discover(credential)
            if not calendars:
                self.logger.info(f"No calendars found for {user_id}, nothing to sync")
                return AccountSyncResult(user_id=user_id, status='success')

            calendar, state = self._select_calendar(state, calendars)
            result = AccountSyncResult(user_id=user_id, status='success', calendar=calendar.name)

            if state.sync_direction.imports:
                fetcher = RemoteEventFetcher(client, self.db_manager, sync_config)
                result.fetch = await fetcher.fetch(state, calendar)

            if state.sync_direction.exports:
                pusher = LocalEventPusher(client, self.db_manager, push_updates=sync_config.push_local_updates)
                result.push = await pusher.push(user_id, calendar)

        return result

    def _select_calendar(
        self,
        state: SyncState,
        calendars: List[RemoteCalendar]
    ) -> Tuple[RemoteCalendar, SyncState]:
        """Pick the account's calendar and persist the choice.

        The stored selection wins while it is still discovered; otherwise the
        first event-capable calendar (or the first calendar) is selected and
        the stored CTag is cleared.
        """
        selected = next((c for c in calendars if c.href == state.selected_calendar_href), None)
        if selected is None:
            selected = next((c for c in calendars if c.supports_events()), calendars[0])

        changes = {}
        if selected.href != state.selected_calendar_href:
            if state.selected_calendar_href:
                self.logger.info(
                    f"Selected calendar for {state.user_id} changed from "
                    f"{state.selected_calendar_href} to {selected.href}"
                )
            changes.update(selected_calendar_href=selected.href, apple_ctag=None)
        if selected.name != state.selected_calendar_name:
            changes['selected_calendar_name'] = selected.name

        if changes:
            with self.db_manager.get_session() as session:
                state = self.db_manager.update_sync_state(session, state.user_id, **changes)
        return selected, state

    async def test_connection(self, user_id: str) -> ConnectionTestResult:
        """Check an account's credentials by running discovery only."""
        with self.db_manager.get_session() as session:
            credential = self.db_manager.get_credential(session, user_id)
        if credential is None:
            return ConnectionTestResult(
                success=False, message=f"No CalDAV credentials configured for user {user_id}"
            )

        try:
            async with self.client_factory(credential) as client:
                calendars = await CalendarDiscovery(client).discover(credential)
        except DiscoveryError as e:
            self.logger.warning(f"Connection test failed for {user_id}: {e}")
            return ConnectionTestResult(success=False, message=str(e))

        return ConnectionTestResult(
            success=True,
            calendars=[CalendarSummary(name=c.name, href=c.href) for c in calendars],
            message=f"Connected, found {len(calendars)} calendar(s)",
        )
