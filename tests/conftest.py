import pytz
import pytest
from datetime import datetime

from pydantic_settings import SettingsConfigDict

from icalsync.config import Settings
from icalsync.database import DatabaseManager
from icalsync.models import AccountCredential, RemoteCalendar, SyncConfiguration


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    __test__ = False

    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db',
        sync_config=SyncConfiguration(retry_attempts=3, retry_delay_seconds=0, retry_max_delay_seconds=0),
    )
    values.update(overrides)
    return TestSettings(**values)


BASE_URL = 'https://caldav.example.com/'
HOME_URL = 'https://caldav.example.com/alice@example.com/calendars/'
CALENDAR_URL = HOME_URL + 'home/'


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db_manager(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    return manager


@pytest.fixture
def credential():
    return AccountCredential(
        user_id='user-1',
        username='alice@example.com',
        app_password='abcd-efgh-ijkl-mnop',
        caldav_url=BASE_URL,
    )


@pytest.fixture
def calendar():
    return RemoteCalendar(
        href=CALENDAR_URL,
        name='Home',
        ctag='ctag-2',
        supported_components=['VEVENT', 'VTODO'],
    )


def utc(*args):
    return datetime(*args, tzinfo=pytz.UTC)


def propfind_body(*calendars):
    """Multi-status body listing ``(path, name, ctag, components)`` collections."""
    responses = [
        """<D:response>
<D:href>/alice@example.com/calendars/</D:href>
<D:propstat>
<D:prop><D:displayname>Calendar Home</D:displayname></D:prop>
<D:status>HTTP/1.1 200 OK</D:status>
</D:propstat>
</D:response>"""
    ]
    for path, name, ctag, components in calendars:
        comps = ''.join(f'<C:comp name="{c}"/>' for c in components)
        responses.append(f"""<D:response>
<D:href>{path}</D:href>
<D:propstat>
<D:prop>
<D:displayname>{name}</D:displayname>
<CS:getctag>{ctag}</CS:getctag>
<C:supported-calendar-component-set>{comps}</C:supported-calendar-component-set>
</D:prop>
<D:status>HTTP/1.1 200 OK</D:status>
</D:propstat>
</D:response>""")
    return ('<?xml version="1.0" encoding="utf-8"?>\n'
            '<D:multistatus xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav" '
            'xmlns:CS="http://calendarserver.org/ns/">\n'
            + '\n'.join(responses) + '\n</D:multistatus>')


def vevent_resource(uid, summary, dtstart='20240110T090000Z', dtend='20240110T100000Z', extra=''):
    lines = [
        'BEGIN:VCALENDAR',
        'VERSION:2.0',
        'PRODID:-//Example//EN',
        'BEGIN:VEVENT',
        f'UID:{uid}',
        f'SUMMARY:{summary}',
        f'DTSTART:{dtstart}',
        f'DTEND:{dtend}',
    ]
    if extra:
        lines.append(extra)
    lines += ['END:VEVENT', 'END:VCALENDAR']
    return '\r\n'.join(lines) + '\r\n'


def report_body(*resources):
    """Multi-status body for ``(path, etag, calendar_data)`` resources."""
    responses = []
    for path, etag, data in resources:
        escaped = data.replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')
        responses.append(f"""<D:response>
<D:href>{path}</D:href>
<D:propstat>
<D:prop>
<D:getetag>"{etag}"</D:getetag>
<C:calendar-data>{escaped}</C:calendar-data>
</D:prop>
<D:status>HTTP/1.1 200 OK</D:status>
</D:propstat>
</D:response>""")
    return ('<?xml version="1.0" encoding="utf-8"?>\n'
            '<D:multistatus xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">\n'
            + '\n'.join(responses) + '\n</D:multistatus>')
