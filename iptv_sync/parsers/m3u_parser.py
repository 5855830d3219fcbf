"""
M3U extended playlist parser

Turns `#EXTM3U` playlists into normalized channel payloads. Malformed entries
are skipped with a logged diagnostic; every well-formed entry is returned.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from urllib.parse import unquote, urljoin, urlsplit, urlunsplit

from iptv_sync.parsers.encoding import decode_content
from iptv_sync.parsers.identity import dedupe_channel_ids, derive_channel_id
from iptv_sync.services.sync_types import ChannelPayload

logger = logging.getLogger(__name__)

_ATTRIBUTE_RE = re.compile(r'([A-Za-z0-9_\-]+)\s*=\s*"([^"]*)"')
_DURATION_RE = re.compile(r'^\s*(-?\d+(?:\.\d+)?)')

_LICENSE_TYPE_PROPS = ("inputstream.adaptive.license_type", "license_type")
_LICENSE_KEY_PROPS = ("inputstream.adaptive.license_key", "license_key")


@dataclass(slots=True)
class M3UDocument:
    channels: list[ChannelPayload] = field(default_factory=list)
    epg_urls: list[str] = field(default_factory=list)
    skipped: int = 0


@dataclass(slots=True)
class _Directive:
    line_number: int
    title: str
    attributes: dict[str, str]


def parse_m3u(content: bytes | str, playlist_url: str) -> M3UDocument:
    """
    Parse an M3U extended playlist

    Args:
        content: Raw playlist bytes (or already decoded text)
        playlist_url: URL the playlist was fetched from, used to resolve entry URLs

    Returns:
        M3UDocument with channels in playlist order and EPG URLs declared in the header

    Raises:
        EncodingError: If the content is not text
    """
    text = decode_content(content)
    document = M3UDocument()
    if not text.strip():
        return document

    directive: _Directive | None = None
    discard_next_url = False
    group: str | None = None
    props: dict[str, str] = {}

    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue

        if line.startswith("#EXTM3U"):
            document.epg_urls = _parse_header(line)
            continue

        if line.startswith("#EXTINF:"):
            if directive is not None:
                logger.warning("Line %s: #EXTINF without a URL line, entry skipped", directive.line_number)
                document.skipped += 1
            if directive is not None or discard_next_url:
                # Group and DRM lines belonged to the discarded entry
                group = None
                props = {}
            directive = _parse_directive(line, line_number)
            discard_next_url = directive is None
            if directive is None:
                document.skipped += 1
            continue

        if line.startswith("#KODIPROP:"):
            key, sep, value = line[len("#KODIPROP:"):].partition("=")
            if sep:
                props[key.strip().lower()] = value.strip()
            else:
                logger.debug("Line %s: ignoring #KODIPROP without value", line_number)
            continue

        if line.startswith("#EXTGRP:"):
            group = line[len("#EXTGRP:"):].strip()
            continue

        if line.startswith("#"):
            continue

        if discard_next_url:
            logger.debug("Line %s: dropping URL of malformed entry", line_number)
        else:
            document.channels.append(_build_channel(directive, line, playlist_url, group, props))

        directive = None
        discard_next_url = False
        group = None
        props = {}

    if directive is not None:
        logger.warning("Line %s: trailing #EXTINF without a URL line, entry skipped", directive.line_number)
        document.skipped += 1

    document.channels = dedupe_channel_ids(document.channels)

    logger.info(
        "M3U parsing complete: %s channels, %s skipped, %s EPG URLs",
        len(document.channels),
        document.skipped,
        len(document.epg_urls),
    )
    return document


def resolve_stream_url(url: str, playlist_url: str) -> str:
    """
    Make an entry URL absolute.

    `file:` entries (`file:///rest`, `file:/rest`, `file://localhost/rest`)
    are rewritten relative to the directory of the playlist, keeping the
    playlist's scheme, host and query. Scheme-less URLs are joined against
    the playlist URL.
    """
    entry = urlsplit(url)
    if entry.scheme.lower() == "file" and not playlist_url.startswith("file:"):
        parts = urlsplit(playlist_url)
        directory = parts.path.rsplit("/", 1)[0]
        path = f"{directory}/{entry.path.lstrip('/')}"
        return urlunsplit((parts.scheme, parts.netloc, path, parts.query, ""))

    if not entry.scheme:
        return urljoin(playlist_url, url)

    return url


def _parse_header(line: str) -> list[str]:
    attributes = {key.lower(): value for key, value in _ATTRIBUTE_RE.findall(line)}
    urls: list[str] = []
    for key in ("x-tvg-url", "url-tvg"):
        for candidate in attributes.get(key, "").split(","):
            candidate = candidate.strip()
            if candidate and candidate not in urls:
                urls.append(candidate)
    return urls


def _parse_directive(line: str, line_number: int) -> _Directive | None:
    body = line[len("#EXTINF:"):]
    split_at = _find_title_separator(body)
    if split_at < 0:
        logger.warning("Line %s: malformed #EXTINF (no title separator), entry skipped", line_number)
        return None

    head, title = body[:split_at], body[split_at + 1:].strip()
    if not _DURATION_RE.match(head):
        logger.warning("Line %s: malformed #EXTINF (invalid duration), entry skipped", line_number)
        return None

    attributes = {key.lower(): value.strip() for key, value in _ATTRIBUTE_RE.findall(head)}
    return _Directive(line_number=line_number, title=title, attributes=attributes)


def _find_title_separator(body: str) -> int:
    """Index of the first comma outside of quoted attribute values, or -1."""
    in_quotes = False
    for index, char in enumerate(body):
        if char == '"':
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            return index
    return -1


def _build_channel(
    directive: _Directive | None,
    raw_url: str,
    playlist_url: str,
    group: str | None,
    props: dict[str, str],
) -> ChannelPayload:
    url = resolve_stream_url(raw_url, playlist_url)
    attributes = directive.attributes if directive else {}

    title = (directive.title if directive else "") or attributes.get("tvg-name") or _title_from_url(url)
    tvg_id = attributes.get("tvg-id") or None
    cover = attributes.get("tvg-logo") or attributes.get("cover") or None
    category = attributes.get("group-title") or group or ""

    license_type = _first_prop(props, _LICENSE_TYPE_PROPS)
    license_key = _first_prop(props, _LICENSE_KEY_PROPS)
    if not (license_type and license_key):
        if license_type or license_key:
            logger.debug("Incomplete DRM properties for %s, ignoring", title)
        license_type = license_key = None

    return ChannelPayload(
        channel_id=tvg_id or derive_channel_id(url),
        playlist_url=playlist_url,
        title=title,
        url=url,
        cover=cover,
        category=category,
        epg_id=tvg_id,
        license_type=license_type,
        license_key=license_key,
    )


def _first_prop(props: dict[str, str], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = props.get(key)
        if value:
            return value
    return None


def _title_from_url(url: str) -> str:
    path = urlsplit(url).path.rstrip("/")
    return unquote(path.rsplit("/", 1)[-1]) or url
