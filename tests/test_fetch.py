"""Tests for remote event fetch and reconciliation."""

import httpx
import pytest
import respx
from sqlalchemy.exc import IntegrityError, OperationalError

from icalsync.database import CalendarEventDB
from icalsync.errors import FetchError, PersistenceError
from icalsync.fetch import RemoteEventFetcher, fetch_window
from icalsync.models import SyncState, SyncStatus
from icalsync.services.caldav import CalDAVClient

from conftest import CALENDAR_URL, report_body, utc, vevent_resource


NOW = utc(2024, 1, 12, 8, 0)


def report(*resources):
    return httpx.Response(207, text=report_body(*resources))


def get_state(db_manager, user_id='user-1'):
    with db_manager.get_session() as session:
        return db_manager.get_sync_state(session, user_id)


def get_events(db_manager, user_id='user-1'):
    with db_manager.get_session() as session:
        return db_manager.get_events(session, user_id)


async def run_fetch(db_manager, credential, calendar, state=None):
    state = state or SyncState(user_id='user-1')
    async with CalDAVClient(credential) as client:
        return await RemoteEventFetcher(client, db_manager).fetch(state, calendar, now=NOW)


class TestFetch:
    """REPORT, decode and upsert."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_window_and_upsert(self, db_manager, credential, calendar):
        route = respx.route(method='REPORT', url=CALENDAR_URL).mock(return_value=report(
            ('/alice@example.com/calendars/home/a.ics', 'e-a', vevent_resource('uid-a', 'Alpha', extra='LOCATION:Yard')),
            ('/alice@example.com/calendars/home/b.ics', 'e-b', vevent_resource('uid-b', 'Beta')),
        ))

        stats = await run_fetch(db_manager, credential, calendar)

        content = route.calls.last.request.content.decode()
        assert 'start="20231213T080000Z"' in content
        assert 'end="20240211T080000Z"' in content
        assert stats.received == 2
        assert stats.upserted == 2

        events = {e.external_id: e for e in get_events(db_manager)}
        alpha = events['uid-a']
        assert alpha.title == 'Alpha'
        assert alpha.location == 'Yard'
        assert alpha.provider.value == 'apple'
        assert alpha.sync_status == SyncStatus.SYNCED
        assert alpha.sync_etag == '"e-a"'
        assert alpha.remote_href == CALENDAR_URL + 'a.ics'
        assert alpha.starts_at == utc(2024, 1, 10, 9)
        assert alpha.last_synced == NOW

        state = get_state(db_manager)
        assert state.apple_ctag == 'ctag-2'
        assert state.last_sync_time == NOW
        assert state.last_sync_error is None

    def test_window_is_thirty_days_each_way(self):
        start, end = fetch_window(NOW)
        assert (NOW - start).days == 30
        assert (end - NOW).days == 30

    @pytest.mark.asyncio
    @respx.mock(assert_all_called=False)
    async def test_ctag_unchanged_skips_report(self, db_manager, credential, calendar):
        route = respx.route(method='REPORT', url=CALENDAR_URL).mock(return_value=report())
        state = SyncState(user_id='user-1', apple_ctag='ctag-2', last_sync_time=utc(2024, 1, 11))

        stats = await run_fetch(db_manager, credential, calendar, state)

        assert stats.skipped_unchanged
        assert not route.called

    @pytest.mark.asyncio
    @respx.mock
    async def test_ctag_without_previous_sync_fetches(self, db_manager, credential, calendar):
        route = respx.route(method='REPORT', url=CALENDAR_URL).mock(return_value=report())
        state = SyncState(user_id='user-1', apple_ctag='ctag-2', last_sync_time=None)

        await run_fetch(db_manager, credential, calendar, state)
        assert route.called

    @pytest.mark.asyncio
    @respx.mock
    async def test_repeated_fetch_is_idempotent(self, db_manager, credential, calendar):
        respx.route(method='REPORT', url=CALENDAR_URL).mock(return_value=report(
            ('/alice@example.com/calendars/home/a.ics', 'e-a', vevent_resource('uid-a', 'Alpha')),
        ))

        first = await run_fetch(db_manager, credential, calendar)
        second = await run_fetch(db_manager, credential, calendar)

        assert first.upserted == 1
        assert second.upserted == 0
        assert second.unchanged == 1
        assert len(get_events(db_manager)) == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_changed_etag_updates_in_place(self, db_manager, credential, calendar):
        respx.route(method='REPORT', url=CALENDAR_URL).mock(side_effect=[
            report(('/alice@example.com/calendars/home/a.ics', 'e-1', vevent_resource('uid-a', 'Alpha'))),
            report(('/alice@example.com/calendars/home/a.ics', 'e-2', vevent_resource('uid-a', 'Alpha v2'))),
        ])

        await run_fetch(db_manager, credential, calendar)
        original = get_events(db_manager)[0]
        stats = await run_fetch(db_manager, credential, calendar)

        events = get_events(db_manager)
        assert stats.upserted == 1
        assert len(events) == 1
        assert events[0].id == original.id
        assert events[0].title == 'Alpha v2'
        assert events[0].sync_etag == '"e-2"'

    @pytest.mark.asyncio
    @respx.mock
    async def test_multiple_vevents_in_one_resource(self, db_manager, credential, calendar):
        data = (
            'BEGIN:VCALENDAR\r\n'
            'BEGIN:VEVENT\r\nUID:one\r\nSUMMARY:One\r\nDTSTART:20240110T090000Z\r\nEND:VEVENT\r\n'
            'BEGIN:VEVENT\r\nUID:two\r\nSUMMARY:Two\r\nDTSTART;VALUE=DATE:20240111\r\nEND:VEVENT\r\n'
            'END:VCALENDAR\r\n'
        )
        respx.route(method='REPORT', url=CALENDAR_URL).mock(return_value=report(
            ('/alice@example.com/calendars/home/pair.ics', 'e-p', data),
        ))

        stats = await run_fetch(db_manager, credential, calendar)

        events = {e.external_id: e for e in get_events(db_manager)}
        assert stats.upserted == 2
        assert events['one'].sync_etag == events['two'].sync_etag == '"e-p"'
        assert events['two'].all_day is True
        assert events['two'].ends_at == utc(2024, 1, 12)

    @pytest.mark.asyncio
    @respx.mock
    async def test_malformed_event_does_not_abort_batch(self, db_manager, credential, calendar):
        respx.route(method='REPORT', url=CALENDAR_URL).mock(return_value=report(
            ('/alice@example.com/calendars/home/bad.ics', 'e-x', vevent_resource('bad', 'Bad', dtstart='2024-01-10')),
            ('/alice@example.com/calendars/home/nouid.ics', 'e-y', vevent_resource('', 'No uid')),
            ('/alice@example.com/calendars/home/ok.ics', 'e-z', vevent_resource('ok', 'Fine')),
        ))

        stats = await run_fetch(db_manager, credential, calendar)

        assert stats.failed == 1
        assert stats.upserted == 1
        assert [e.external_id for e in get_events(db_manager)] == ['ok']
        assert get_state(db_manager).apple_ctag == 'ctag-2'

    @pytest.mark.asyncio
    @respx.mock
    async def test_persistence_failure_is_isolated(self, db_manager, credential, calendar, monkeypatch):
        respx.route(method='REPORT', url=CALENDAR_URL).mock(return_value=report(
            ('/alice@example.com/calendars/home/a.ics', 'e-a', vevent_resource('uid-a', 'Alpha')),
            ('/alice@example.com/calendars/home/b.ics', 'e-b', vevent_resource('uid-b', 'Beta')),
        ))
        upsert = db_manager.upsert_remote_event

        def flaky_upsert(session, user_id, event, **kwargs):
            if event.uid == 'uid-a':
                raise PersistenceError('disk full')
            return upsert(session, user_id, event, **kwargs)

        monkeypatch.setattr(db_manager, 'upsert_remote_event', flaky_upsert)
        stats = await run_fetch(db_manager, credential, calendar)

        assert stats.failed == 1
        assert stats.upserted == 1
        assert [e.external_id for e in get_events(db_manager)] == ['uid-b']
        assert get_state(db_manager).apple_ctag == 'ctag-2'

    @pytest.mark.asyncio
    @respx.mock
    async def test_lookup_failure_is_isolated(self, db_manager, credential, calendar, monkeypatch):
        respx.route(method='REPORT', url=CALENDAR_URL).mock(return_value=report(
            ('/alice@example.com/calendars/home/a.ics', 'e-a', vevent_resource('uid-a', 'Alpha')),
            ('/alice@example.com/calendars/home/b.ics', 'e-b', vevent_resource('uid-b', 'Beta')),
        ))
        lookup = db_manager.get_event_by_external_id

        def locked_lookup(session, user_id, external_id, *args, **kwargs):
            if external_id == 'uid-a':
                raise OperationalError('SELECT calendar_events', {}, Exception('database is locked'))
            return lookup(session, user_id, external_id, *args, **kwargs)

        monkeypatch.setattr(db_manager, 'get_event_by_external_id', locked_lookup)
        stats = await run_fetch(db_manager, credential, calendar)

        assert stats.failed == 1
        assert stats.upserted == 1
        assert [e.external_id for e in get_events(db_manager)] == ['uid-b']
        assert get_state(db_manager).apple_ctag == 'ctag-2'

    @pytest.mark.asyncio
    @respx.mock
    async def test_report_failure_raises_fetch_error(self, db_manager, credential, calendar):
        respx.route(method='REPORT', url=CALENDAR_URL).mock(return_value=httpx.Response(403))

        with pytest.raises(FetchError):
            await run_fetch(db_manager, credential, calendar)
        assert get_state(db_manager) is None


class TestUniqueness:
    """The (user, provider, external id) key."""

    def test_duplicate_external_id_rejected(self, db_manager):
        with db_manager.get_session() as session:
            for _ in range(2):
                session.add(CalendarEventDB(
                    user_id='user-1', provider='apple', external_id='dup', title='x',
                    starts_at=utc(2024, 1, 1), ends_at=utc(2024, 1, 1, 1),
                ))
            with pytest.raises(IntegrityError):
                session.commit()

    def test_local_events_without_provider_do_not_collide(self, db_manager):
        with db_manager.get_session() as session:
            for title in ('a', 'b'):
                db_manager.create_local_event(
                    session, 'user-1', title, utc(2024, 1, 1), utc(2024, 1, 1, 1)
                )
        assert len(get_events(db_manager)) == 2

    def test_same_external_id_for_different_users(self, db_manager):
        from icalsync.models import RemoteEvent

        event = RemoteEvent(uid='shared', summary='s', start=utc(2024, 1, 1), end=utc(2024, 1, 1, 1), etag='"1"')
        with db_manager.get_session() as session:
            db_manager.upsert_remote_event(session, 'user-1', event)
            db_manager.upsert_remote_event(session, 'user-2', event)
            db_manager.upsert_remote_event(session, 'user-1', event)

        assert len(get_events(db_manager, 'user-1')) == 1
        assert len(get_events(db_manager, 'user-2')) == 1
