"""CalDAV transport and WebDAV response parsing."""

from .caldav import CalDAVClient, PutResult
from .multistatus import DAVResponse, parse_multistatus

__all__ = [
    'CalDAVClient',
    'PutResult',
    'DAVResponse',
    'parse_multistatus',
]
