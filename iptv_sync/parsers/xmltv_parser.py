from typing import Optional
import logging

from lxml import etree # type: ignore

from iptv_sync.errors import MalformedContentError
from iptv_sync.parsers.encoding import decode_content
from iptv_sync.services.sync_types import ProgrammePayload
from iptv_sync.utils.timezone import DateFormatError, parse_xmltv_time

logger = logging.getLogger(__name__)


def parse_xmltv(content: bytes | str) -> list[ProgrammePayload]:
    """
    Parse XMLTV document and return programmes

    Programmes referencing channels that are not declared in the document are
    kept; association with playlist channels happens at query time.

    Args:
        content: Raw XMLTV bytes (or already decoded text)

    Returns:
        Programmes in document order, times normalized to UTC

    Raises:
        EncodingError: If the content is not text
        MalformedContentError: If XML is malformed
    """
    text = decode_content(content)
    if not text.strip():
        return []

    try:
        logger.debug("  Loading XML document...")
        # lxml refuses str input carrying an encoding declaration
        parser = etree.XMLParser(huge_tree=True, resolve_entities=False, no_network=True)
        root = etree.fromstring(text.encode("utf-8"), parser=parser)
        logger.debug(f"  XML document loaded (root tag: {root.tag})")
    except etree.XMLSyntaxError as e:
        logger.error(f"  XML parsing error: {e}")
        raise MalformedContentError(f"Invalid XMLTV document: {e}") from e

    if root.tag != "tv":
        raise MalformedContentError(f"Unexpected XMLTV root element: {root.tag}")

    programmes = []
    skipped = 0
    for element in root.iter("programme"):
        programme = _parse_single_programme(element)
        if programme is None:
            skipped += 1
            continue
        programmes.append(programme)

    logger.info(f"XMLTV parsing complete: {len(programmes)} programmes, {skipped} skipped")

    return programmes


def _parse_single_programme(programme: etree._Element) -> Optional[ProgrammePayload]:
    """Parse single programme element"""
    # Required fields
    channel_id = programme.get('channel')
    start_str = programme.get('start')
    stop_str = programme.get('stop')
    title_text = _get_text(programme, 'title')

    # Skip if missing required fields
    if not channel_id or not start_str or not stop_str or title_text is None:
        return None

    # Parse times (skip invalid formats)
    try:
        start_time = parse_xmltv_time(start_str)
        stop_time = parse_xmltv_time(stop_str)
    except DateFormatError:
        logger.debug(f"Skipping programme with invalid time on {channel_id}: {start_str} - {stop_str}")
        return None

    if stop_time <= start_time:
        return None

    icon = None
    icon_elem = programme.find('icon')
    if icon_elem is not None:
        icon = icon_elem.get('src') or None

    return ProgrammePayload(
        channel_id=channel_id,
        start_time=start_time,
        stop_time=stop_time,
        title=title_text,
        description=_get_text(programme, 'desc'),
        icon=icon,
    )


def _get_text(element: etree._Element, tag: str, default: Optional[str] = None) -> Optional[str]:
    """Safely extract text from XML element"""
    child = element.find(tag)
    if child is None or not child.text:
        return default
    return child.text.strip()
