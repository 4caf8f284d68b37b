"""Async CalDAV transport: PROPFIND, calendar-query REPORT and conditional PUT."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional
from urllib.parse import urljoin

import httpx

from ..errors import AuthenticationError, TransportError
from ..ical import format_utc
from ..models import AccountCredential

logger = logging.getLogger(__name__)

XML_CONTENT_TYPE = "application/xml; charset=utf-8"
ICAL_CONTENT_TYPE = "text/calendar; charset=utf-8"

PROPFIND_CALENDARS_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav" xmlns:CS="http://calendarserver.org/ns/">
  <D:prop>
    <D:displayname/>
    <C:calendar-description/>
    <C:supported-calendar-component-set/>
    <CS:getctag/>
  </D:prop>
</D:propfind>"""


def build_calendar_query(start: datetime, end: datetime) -> str:
    """calendar-query REPORT body selecting VEVENTs overlapping [start, end)."""
    return f"""<?xml version="1.0" encoding="utf-8" ?>
<C:calendar-query xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:getetag/>
    <C:calendar-data/>
  </D:prop>
  <C:filter>
    <C:comp-filter name="VCALENDAR">
      <C:comp-filter name="VEVENT">
        <C:time-range start="{format_utc(start)}" end="{format_utc(end)}"/>
      </C:comp-filter>
    </C:comp-filter>
  </C:filter>
</C:calendar-query>"""


@dataclass
class PutResult:
    """Outcome of a conditional PUT."""

    status_code: int
    etag: Optional[str]
    url: str

    @property
    def created(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def precondition_failed(self) -> bool:
        return self.status_code == 412


class CalDAVClient:
    """Thin CalDAV client over ``httpx.AsyncClient`` using Basic auth.

    Performs no retries; callers decide how to handle ``TransportError``.
    """

    def __init__(
        self,
        credential: AccountCredential,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            credential: Account to authenticate as
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.credential = credential
        self.base_url = credential.caldav_url
        self.logger = logger.getChild(credential.user_id)
        self._client = httpx.AsyncClient(
            auth=httpx.BasicAuth(credential.username, credential.app_password.get_secret_value()),
            timeout=httpx.Timeout(timeout),
            transport=transport,
            follow_redirects=True,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def resolve(self, href: str) -> str:
        """Resolve a server-relative href against the base URL."""
        return urljoin(self.base_url, href)

    async def _request(
        self,
        method: str,
        url: str,
        content: str,
        headers: Dict[str, str],
        accept_statuses: tuple = (),
    ) -> httpx.Response:
        url = self.resolve(url)
        try:
            response = await self._client.request(method, url, content=content.encode('utf-8'), headers=headers)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {url} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {url} failed: {type(e).__name__}: {e}") from e

        self.logger.debug(f"{method} {url} -> {response.status_code}")
        if response.is_success or response.status_code in accept_statuses:
            return response

        error_cls = AuthenticationError if response.status_code in (401, 403) else TransportError
        raise error_cls(
            f"{method} {url} returned HTTP {response.status_code}",
            status_code=response.status_code,
            body=response.text,
        )

    async def propfind(self, url: str, body: str = PROPFIND_CALENDARS_BODY, depth: str = "1") -> str:
        """Issue a PROPFIND and return the multi-status body."""
        response = await self._request(
            "PROPFIND", url, body, {"Depth": depth, "Content-Type": XML_CONTENT_TYPE}
        )
        return response.text

    async def report(self, url: str, start: datetime, end: datetime) -> str:
        """Issue a calendar-query REPORT for VEVENTs in [start, end)."""
        response = await self._request(
            "REPORT", url, build_calendar_query(start, end),
            {"Depth": "1", "Content-Type": XML_CONTENT_TYPE},
        )
        return response.text

    async def put(self, url: str, ical: str, if_match: Optional[str] = None) -> PutResult:
        """PUT an iCalendar document.

        Without ``if_match`` the request carries ``If-None-Match: *`` and only
        creates; with it the request only overwrites that exact version.
        A 412 is returned as a result, not raised.
        """
        headers = {"Content-Type": ICAL_CONTENT_TYPE}
        if if_match:
            headers["If-Match"] = if_match
        else:
            headers["If-None-Match"] = "*"
        response = await self._request("PUT", url, ical, headers, accept_statuses=(412,))
        return PutResult(
            status_code=response.status_code,
            etag=response.headers.get("ETag"),
            url=str(response.request.url),
        )
