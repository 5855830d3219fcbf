"""
Parsers package

Pure functions turning raw playlist and guide content into normalized payloads.
"""
from iptv_sync.parsers.m3u_parser import M3UDocument, parse_m3u, resolve_stream_url
from iptv_sync.parsers.xmltv_parser import parse_xmltv
from iptv_sync.parsers.xtream_parser import parse_series_episodes, parse_xtream
from iptv_sync.services.sync_types import ChannelPayload, SourceKind, XtreamCredentials


def parse_playlist(
    kind: SourceKind,
    content: bytes | str | tuple[bytes | str, bytes | str],
    base_url: str,
    credentials: XtreamCredentials | None = None,
    *,
    live_extension: str = "ts",
) -> list[ChannelPayload]:
    """
    Parse either playlist format into one channel shape.

    For M3U `content` is the playlist body. For Xtream kinds it is the pair
    of (category list, stream list) responses and `credentials` is required.
    """
    if kind is SourceKind.M3U:
        return parse_m3u(content, base_url).channels

    if credentials is None:
        raise ValueError("Xtream sources require credentials")
    categories_content, streams_content = content
    return parse_xtream(
        kind,
        categories_content,
        streams_content,
        credentials,
        base_url,
        live_extension=live_extension,
    )


__all__ = [
    "M3UDocument",
    "parse_m3u",
    "parse_playlist",
    "parse_series_episodes",
    "parse_xmltv",
    "parse_xtream",
    "resolve_stream_url",
]
