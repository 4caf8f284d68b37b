"""Exception hierarchy for CalDAV synchronization."""

from typing import Optional


class CalendarServiceError(Exception):
    """Base exception for calendar sync errors."""
    pass


class TransportError(CalendarServiceError):
    """A CalDAV request failed or returned an unexpected status.

    ``status_code`` is None when no HTTP response was received (connection
    failure, timeout).
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def is_network_failure(self) -> bool:
        """True when the server never answered."""
        return self.status_code is None

    @property
    def retryable(self) -> bool:
        """Whether repeating the request might succeed."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class AuthenticationError(TransportError):
    """Authentication-related errors (401/403)."""

    @property
    def retryable(self) -> bool:
        return False


class MultistatusParseError(CalendarServiceError):
    """A multi-status body could not be parsed by any parser."""
    pass


class DiscoveryError(CalendarServiceError):
    """Calendars could not be enumerated (network/auth)."""
    pass


class FetchError(CalendarServiceError):
    """REPORT failed or its response was unparseable."""
    pass


class DecodeError(CalendarServiceError):
    """A single VEVENT is malformed."""
    pass


class PushTransportError(CalendarServiceError):
    """PUT failed for a reason other than 412."""
    pass


class PushConflictError(CalendarServiceError):
    """PUT returned 412: the remote resource state does not match."""
    pass


class PersistenceError(CalendarServiceError):
    """A datastore write failed."""
    pass
