"""Calendar discovery on a CalDAV account."""

import logging
from typing import List, Optional

from .errors import DiscoveryError, MultistatusParseError, TransportError
from .models import AccountCredential, RemoteCalendar, SyncConfiguration
from .retry import call_with_retries
from .services.caldav import CalDAVClient
from .services.multistatus import parse_multistatus

logger = logging.getLogger(__name__)


class CalendarDiscovery:
    """Enumerates the calendar collections of an account with their CTags."""

    def __init__(self, client: CalDAVClient, sync_config: Optional[SyncConfiguration] = None):
        """Initialize discovery.

        Args:
            client: Authenticated CalDAV client for the account
            sync_config: Retry settings for the PROPFIND (no retries if None)
        """
        self.client = client
        self.sync_config = sync_config
        self.logger = logger.getChild('discovery')

    async def discover(self, credential: AccountCredential) -> List[RemoteCalendar]:
        """List calendars under the account's calendar home.

        Only collections exposing both a display name and a CTag are
        returned, in server order. An empty list is a valid result.

        Raises:
            DiscoveryError: If the PROPFIND fails or its response is unparseable
        """
        home_url = credential.home_url
        try:
            body = await call_with_retries(self.sync_config, self.client.propfind, home_url)
            responses = parse_multistatus(body)
        except TransportError as e:
            raise DiscoveryError(f"PROPFIND {home_url} failed: {e}") from e
        except MultistatusParseError as e:
            raise DiscoveryError(f"Unparseable PROPFIND response from {home_url}: {e}") from e

        calendars: List[RemoteCalendar] = []
        for response in responses:
            if not response.is_collection or not response.display_name or not response.ctag:
                continue
            calendars.append(RemoteCalendar(
                href=self.client.resolve(response.href),
                name=response.display_name,
                ctag=response.ctag,
                description=response.description,
                supported_components=response.components,
            ))

        self.logger.info(f"Discovered {len(calendars)} calendar(s) for {credential.user_id}")
        return calendars
