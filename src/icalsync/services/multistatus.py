"""WebDAV multi-status (RFC 4918 §13) response parsing.

``parse_multistatus`` uses ElementTree and drops to a regex scanner when the
body is not well-formed XML (unescaped ``&`` in calendar data, truncated
bodies, stray bytes before the prolog). Both parsers produce the same
``DAVResponse`` records.
"""

import html
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..errors import MultistatusParseError

logger = logging.getLogger(__name__)

NAMESPACES = {
    'D': 'DAV:',
    'C': 'urn:ietf:params:xml:ns:caldav',
    'CS': 'http://calendarserver.org/ns/',
}

_COMPONENT_SET = 'supported-calendar-component-set'


@dataclass
class DAVResponse:
    """One ``<response>`` element of a multi-status body.

    ``properties`` maps property local names to their text for every
    propstat whose status is 2xx (or that carries no status).
    """

    href: str
    status: Optional[str] = None
    properties: Dict[str, str] = field(default_factory=dict)
    components: List[str] = field(default_factory=list)

    @property
    def display_name(self) -> Optional[str]:
        return self.properties.get('displayname') or None

    @property
    def description(self) -> Optional[str]:
        return self.properties.get('calendar-description') or None

    @property
    def ctag(self) -> Optional[str]:
        return self.properties.get('getctag') or None

    @property
    def etag(self) -> Optional[str]:
        return self.properties.get('getetag') or None

    @property
    def calendar_data(self) -> Optional[str]:
        return self.properties.get('calendar-data') or None

    @property
    def is_collection(self) -> bool:
        return self.href.endswith('/')


def _status_ok(status: Optional[str]) -> bool:
    if not status:
        return True
    match = re.search(r'\b(\d{3})\b', status)
    return bool(match) and match.group(1).startswith('2')


def _local_name(tag: str) -> str:
    return tag.rsplit('}', 1)[-1] if '}' in tag else tag


def parse_multistatus_xml(body: str) -> List[DAVResponse]:
    """Parse a multi-status body with ElementTree.

    Raises:
        ET.ParseError: If the body is not well-formed
        MultistatusParseError: If the root element is not ``multistatus``
    """
    root = ET.fromstring(body.strip().encode('utf-8'))
    if _local_name(root.tag) != 'multistatus':
        raise MultistatusParseError(f"Unexpected root element {root.tag!r}")

    responses: List[DAVResponse] = []
    for response_elem in root.findall('D:response', NAMESPACES):
        href_elem = response_elem.find('D:href', NAMESPACES)
        if href_elem is None or not (href_elem.text or '').strip():
            continue

        status_elem = response_elem.find('D:status', NAMESPACES)
        response = DAVResponse(
            href=href_elem.text.strip(),
            status=status_elem.text.strip() if status_elem is not None and status_elem.text else None,
        )

        for propstat in response_elem.findall('D:propstat', NAMESPACES):
            propstat_status = propstat.find('D:status', NAMESPACES)
            if not _status_ok(propstat_status.text if propstat_status is not None else None):
                continue
            prop = propstat.find('D:prop', NAMESPACES)
            if prop is None:
                continue
            for child in prop:
                name = _local_name(child.tag)
                if name == _COMPONENT_SET:
                    response.components = [
                        comp.get('name', '').upper()
                        for comp in child
                        if _local_name(comp.tag) == 'comp' and comp.get('name')
                    ]
                    continue
                value = ''.join(child.itertext())
                response.properties[name] = value if name == 'calendar-data' else value.strip()

        responses.append(response)
    return responses


_MULTISTATUS_RE = re.compile(r'<(?:[\w.-]+:)?multistatus\b', re.IGNORECASE)
_RESPONSE_RE = re.compile(
    r'<(?:[\w.-]+:)?response\b[^>]*>(.*?)</(?:[\w.-]+:)?response\s*>', re.DOTALL | re.IGNORECASE
)
_PROPSTAT_RE = re.compile(
    r'<(?:[\w.-]+:)?propstat\b[^>]*>(.*?)</(?:[\w.-]+:)?propstat\s*>', re.DOTALL | re.IGNORECASE
)
_COMP_RE = re.compile(r'<(?:[\w.-]+:)?comp\b[^>]*?\bname\s*=\s*["\']([^"\']+)["\']', re.IGNORECASE)
_CDATA_RE = re.compile(r'<!\[CDATA\[(.*?)\]\]>', re.DOTALL)

_FALLBACK_PROPERTIES = ('displayname', 'calendar-description', 'getctag', 'getetag', 'calendar-data')


def _element_text(fragment: str, name: str) -> Optional[str]:
    """Text of the first ``<prefix:name>`` element in ``fragment``."""
    pattern = re.compile(
        r'<(?:[\w.-]+:)?' + re.escape(name) + r'\b[^>]*?(?:/>|>(.*?)</(?:[\w.-]+:)?'
        + re.escape(name) + r'\s*>)',
        re.DOTALL | re.IGNORECASE,
    )
    match = pattern.search(fragment)
    if not match:
        return None
    raw = match.group(1) or ''
    cdata = _CDATA_RE.findall(raw)
    if cdata:
        return ''.join(cdata)
    return html.unescape(raw)


def parse_multistatus_fallback(body: str) -> List[DAVResponse]:
    """Regex scanner for multi-status bodies ElementTree rejects.

    Matches elements by local name with any namespace prefix and only
    recognizes the properties this package requests.

    Raises:
        MultistatusParseError: If the body has no ``multistatus`` element
    """
    if not _MULTISTATUS_RE.search(body):
        raise MultistatusParseError("Body does not contain a multistatus element")

    responses: List[DAVResponse] = []
    for response_match in _RESPONSE_RE.finditer(body):
        fragment = response_match.group(1)
        propstats = _PROPSTAT_RE.findall(fragment)
        outer = _PROPSTAT_RE.sub('', fragment)

        href = _element_text(outer, 'href')
        if not href or not href.strip():
            continue
        response = DAVResponse(href=href.strip(), status=(_element_text(outer, 'status') or '').strip() or None)

        for block in propstats or [fragment]:
            if not _status_ok(_element_text(block, 'status')):
                continue
            for name in _FALLBACK_PROPERTIES:
                value = _element_text(block, name)
                if value is None or name in response.properties:
                    continue
                response.properties[name] = value if name == 'calendar-data' else value.strip()
            component_set = _element_text(block, _COMPONENT_SET)
            if component_set and not response.components:
                response.components = [c.upper() for c in _COMP_RE.findall(component_set)]

        responses.append(response)
    return responses


def parse_multistatus(body: str) -> List[DAVResponse]:
    """Parse a multi-status body, falling back to regex scanning on malformed XML.

    Raises:
        MultistatusParseError: If neither parser can make sense of the body
    """
    if not body or not body.strip():
        raise MultistatusParseError("Empty multi-status body")
    try:
        return parse_multistatus_xml(body)
    except ET.ParseError as e:
        logger.warning(f"Malformed multi-status XML ({e}); using fallback parser")
        return parse_multistatus_fallback(body)
