"""iCalendar (RFC 5545) encoding and decoding of single events.

Only the subset needed for synchronization is handled: one VEVENT per
decode call, the text properties the event store keeps, and DATE /
DATE-TIME values in UTC or with a fixed ``+HHMM`` offset. TZID parameters
are not resolved; such values are read as UTC.
"""

import re
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pytz
from icalendar import Calendar, Event as ICalEvent
from icalendar.parser import Contentlines
from icalendar.prop import vText

from .errors import DecodeError
from .models import LocalEvent, RemoteEvent, ensure_utc

PRODID = "-//icalsync//CalDAV Sync 1.0//EN"

_VEVENT_RE = re.compile(r'^BEGIN:VEVENT[ \t]*\r?$.*?^END:VEVENT[ \t]*\r?$', re.MULTILINE | re.DOTALL | re.IGNORECASE)
_DATE_RE = re.compile(r'^(\d{4})(\d{2})(\d{2})$')
_DATETIME_RE = re.compile(r'^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})(Z|[+-]\d{4})?$', re.IGNORECASE)
_UNESCAPE_RE = re.compile(r'\\(.)', re.DOTALL)

_UNESCAPES = {
    'n': '\n',
    'N': '\n',
    't': '\t',
    'r': '\r',
    ';': ';',
    ',': ',',
    '\\': '\\',
}
_ESCAPES = {
    '\\': '\\\\',
    ';': '\\;',
    ',': '\\,',
    '\n': '\\n',
    '\r': '\\r',
    '\t': '\\t',
}
_ESCAPE_RE = re.compile('|'.join(re.escape(c) for c in _ESCAPES))


def unfold(text: str) -> str:
    """Join RFC 5545 continuation lines (line break followed by one space or tab)."""
    return '\r\n'.join(line for line in Contentlines.from_ical(text) if line)


def escape_text(value: str) -> str:
    """Apply TEXT escaping; the exact inverse of :func:`unescape_text`."""
    return _ESCAPE_RE.sub(lambda m: _ESCAPES[m.group(0)], value)


def unescape_text(value: str) -> str:
    """Undo TEXT escaping in one pass; unknown escape sequences are kept as-is."""
    def _replace(match):
        char = match.group(1)
        return _UNESCAPES.get(char, match.group(0))
    return _UNESCAPE_RE.sub(_replace, value)


class _EscapedText(vText):
    """TEXT value written with :func:`escape_text`; icalendar only folds it."""

    def to_ical(self):
        return escape_text(str(self)).encode(self.encoding)


def parse_ical_datetime(value: str) -> Tuple[datetime, bool]:
    """Parse a DATE or DATE-TIME value.

    Returns:
        ``(instant, all_day)``. DATE values map to midnight UTC; DATE-TIME
        values without an offset or with ``Z`` are UTC, ``+HHMM``/``-HHMM``
        offsets are kept.

    Raises:
        DecodeError: If the value is not a valid date or date-time
    """
    value = value.strip()
    try:
        if 'T' not in value.upper():
            match = _DATE_RE.match(value)
            if not match:
                raise DecodeError(f"Invalid DATE value: {value!r}")
            year, month, day = (int(g) for g in match.groups())
            return datetime(year, month, day, tzinfo=pytz.UTC), True

        match = _DATETIME_RE.match(value)
        if not match:
            raise DecodeError(f"Invalid DATE-TIME value: {value!r}")
        year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
        suffix = match.group(7)
        if suffix and suffix not in ('Z', 'z'):
            sign = 1 if suffix[0] == '+' else -1
            hours, minutes = int(suffix[1:3]), int(suffix[3:5])
            if hours > 23 or minutes > 59:
                raise DecodeError(f"Invalid UTC offset in {value!r}")
            tz = pytz.FixedOffset(sign * (hours * 60 + minutes))
        else:
            tz = pytz.UTC
        return datetime(year, month, day, hour, minute, second, tzinfo=tz), False
    except ValueError as e:
        # Out-of-range components (month 13, hour 25, ...)
        raise DecodeError(f"Invalid date value {value!r}: {e}") from e


def format_utc(dt: datetime) -> str:
    """Format an instant as ``YYYYMMDDTHHMMSSZ``."""
    return ensure_utc(dt).astimezone(pytz.UTC).strftime('%Y%m%dT%H%M%SZ')


def extract_vevents(calendar_data: str) -> List[str]:
    """Return every ``BEGIN:VEVENT ... END:VEVENT`` block of a resource.

    A resource holds several VEVENTs when a recurring series carries
    overridden instances.
    """
    text = unfold(calendar_data)
    return [m.group(0) for m in _VEVENT_RE.finditer(text)]


def decode_vevent(
    block: str,
    etag: Optional[str] = None,
    href: Optional[str] = None,
) -> Optional[RemoteEvent]:
    """Decode one VEVENT block.

    Args:
        block: Raw ``BEGIN:VEVENT``..``END:VEVENT`` text (folded or not)
        etag: ETag of the CalDAV resource the block came from
        href: URL of that resource

    Returns:
        The decoded event, or None when UID, SUMMARY or DTSTART is missing

    Raises:
        DecodeError: If a property value is malformed
    """
    props: Dict[str, Tuple[Dict[str, str], str]] = {}
    depth = 0
    for line in Contentlines.from_ical(block):
        if not line.strip():
            continue
        upper = line.upper()
        if upper.startswith('BEGIN:'):
            depth += 1
            continue
        if upper.startswith('END:'):
            depth -= 1
            continue
        if depth != 1:
            # Properties of nested components (VALARM, ...)
            continue
        try:
            name, params, value = line.raw_parts()
        except ValueError:
            continue
        name = name.upper()
        if name not in props:
            props[name] = (dict(params), value)

    def text(name: str) -> Optional[str]:
        if name not in props:
            return None
        return unescape_text(props[name][1])

    uid = (text('UID') or '').strip()
    summary = text('SUMMARY')
    dtstart = props.get('DTSTART')
    if not uid or not summary or dtstart is None or not dtstart[1].strip():
        return None

    start, all_day = parse_ical_datetime(dtstart[1])

    dtend = props.get('DTEND')
    if dtend is not None and dtend[1].strip():
        end, _ = parse_ical_datetime(dtend[1])
    elif all_day:
        end = start + timedelta(days=1)
    else:
        end = start
    if end < start:
        raise DecodeError(f"DTEND precedes DTSTART in event {uid}")

    rrule = props.get('RRULE')
    status = text('STATUS')

    return RemoteEvent(
        uid=uid,
        summary=summary,
        description=text('DESCRIPTION'),
        location=text('LOCATION'),
        start=start,
        end=end,
        all_day=all_day,
        rrule=rrule[1].strip() if rrule else None,
        status=status.strip().upper() if status else None,
        etag=etag,
        href=href,
    )


def _utc(dt: datetime) -> datetime:
    return ensure_utc(dt).astimezone(pytz.UTC)


def encode_event(event: LocalEvent, now: Optional[datetime] = None) -> str:
    """Serialize a local event as a complete VCALENDAR document.

    Args:
        event: Event to serialize; its id becomes the UID
        now: DTSTAMP value (defaults to the current time)

    Returns:
        iCalendar text with CRLF line endings, folded at 75 octets
    """
    now = now or datetime.now(pytz.UTC)

    cal = Calendar()
    cal.add('prodid', PRODID)
    cal.add('version', '2.0')
    cal.add('calscale', 'GREGORIAN')

    vevent = ICalEvent()
    vevent.add('uid', str(event.id))
    vevent.add('dtstamp', _utc(now))
    vevent.add('created', _utc(event.created_at))
    vevent.add('last-modified', _utc(event.updated_at))

    if event.all_day:
        # All-day events use DATE values on the UTC calendar day
        vevent.add('dtstart', _utc(event.starts_at).date())
        vevent.add('dtend', _utc(event.ends_at).date())
    else:
        vevent.add('dtstart', _utc(event.starts_at))
        vevent.add('dtend', _utc(event.ends_at))

    vevent.add('summary', _EscapedText(event.title))
    if event.description is not None:
        vevent.add('description', _EscapedText(event.description))
    if event.location is not None:
        vevent.add('location', _EscapedText(event.location))
    vevent.add('status', 'CONFIRMED')

    cal.add_component(vevent)
    return cal.to_ical().decode('utf-8')
