"""
Xtream-Codes panel parser

Merges the category list and stream list returned by `player_api.php` into
normalized channel payloads, and builds playback URLs from the panel's
credentials.
"""
from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import urlencode

from iptv_sync.errors import MalformedContentError
from iptv_sync.parsers.encoding import decode_content
from iptv_sync.parsers.identity import dedupe_channel_ids
from iptv_sync.services.sync_types import (
    ChannelPayload,
    EpisodePayload,
    SourceKind,
    XtreamCredentials,
)

logger = logging.getLogger(__name__)

_CATEGORY_ACTIONS = {
    SourceKind.XTREAM_LIVE: "get_live_categories",
    SourceKind.XTREAM_VOD: "get_vod_categories",
    SourceKind.XTREAM_SERIES: "get_series_categories",
}

_STREAM_ACTIONS = {
    SourceKind.XTREAM_LIVE: "get_live_streams",
    SourceKind.XTREAM_VOD: "get_vod_streams",
    SourceKind.XTREAM_SERIES: "get_series",
}


def normalize_base_url(base_url: str) -> str:
    return base_url.strip().rstrip("/")


def api_url(credentials: XtreamCredentials, **params: str) -> str:
    query = urlencode({"username": credentials.username, "password": credentials.password, **params})
    return f"{normalize_base_url(credentials.base_url)}/player_api.php?{query}"


def playlist_url_for(credentials: XtreamCredentials, kind: SourceKind) -> str:
    """Primary key of an Xtream subscription."""
    return api_url(credentials, type=kind.xtream_type)


def category_list_url(credentials: XtreamCredentials, kind: SourceKind) -> str:
    return api_url(credentials, action=_CATEGORY_ACTIONS[kind])


def stream_list_url(credentials: XtreamCredentials, kind: SourceKind) -> str:
    return api_url(credentials, action=_STREAM_ACTIONS[kind])


def series_info_url(credentials: XtreamCredentials, series_id: str) -> str:
    return api_url(credentials, action="get_series_info", series_id=series_id)


def stream_playback_url(
    credentials: XtreamCredentials,
    segment: str,
    stream_id: str,
    extension: str,
) -> str:
    base = normalize_base_url(credentials.base_url)
    return f"{base}/{segment}/{credentials.username}/{credentials.password}/{stream_id}.{extension}"


def parse_xtream(
    kind: SourceKind,
    categories_content: bytes | str,
    streams_content: bytes | str,
    credentials: XtreamCredentials,
    playlist_url: str,
    *,
    live_extension: str = "ts",
) -> list[ChannelPayload]:
    """
    Parse Xtream category and stream listings into channels

    Args:
        kind: Which Xtream listing the responses belong to
        categories_content: Raw `get_*_categories` response
        streams_content: Raw `get_*_streams` / `get_series` response
        credentials: Panel credentials used to build playback URLs
        playlist_url: Owning playlist URL
        live_extension: Container extension used for live streams

    Returns:
        Channels in panel order

    Raises:
        MalformedContentError: If either response root is not a JSON list
        EncodingError: If a response is not text
    """
    if not kind.is_xtream:
        raise ValueError(f"Not an Xtream source kind: {kind.value}")

    categories = _load_list(categories_content, "category list", allow_empty=True)
    streams = _load_list(streams_content, "stream list", allow_empty=True)

    category_names: dict[str, str] = {}
    for category in categories:
        if not isinstance(category, dict) or category.get("category_id") is None:
            logger.debug("Skipping malformed Xtream category entry: %r", category)
            continue
        category_names[str(category["category_id"])] = str(category.get("category_name") or "")

    channels: list[ChannelPayload] = []
    skipped = 0
    for entry in streams:
        channel = _build_channel(kind, entry, category_names, credentials, playlist_url, live_extension)
        if channel is None:
            skipped += 1
            continue
        channels.append(channel)

    if skipped:
        logger.warning("Skipped %s malformed Xtream %s entries", skipped, kind.xtream_type)

    channels = dedupe_channel_ids(channels)
    logger.info(
        "Xtream parsing complete: %s channels in %s categories (%s)",
        len(channels),
        len(category_names),
        kind.value,
    )
    return channels


def parse_series_episodes(
    content: bytes | str,
    series_id: str,
    credentials: XtreamCredentials,
) -> list[EpisodePayload]:
    """Parse a `get_series_info` response into episodes sorted by season and number."""
    document = _load_json(content, "series info")
    if not isinstance(document, dict):
        raise MalformedContentError("Xtream series info root must be a JSON object")

    raw_episodes = document.get("episodes") or {}
    if isinstance(raw_episodes, dict):
        groups = list(raw_episodes.items())
    elif isinstance(raw_episodes, list):
        # Some panels return a list of per-season lists
        groups = [(str(index + 1), group) for index, group in enumerate(raw_episodes)]
    else:
        raise MalformedContentError("Xtream series episodes must be an object or a list")

    episodes: list[EpisodePayload] = []
    for season_key, items in groups:
        if not isinstance(items, list):
            continue
        for item in items:
            if not isinstance(item, dict) or item.get("id") is None:
                logger.debug("Skipping malformed episode entry in series %s", series_id)
                continue
            episode_id = str(item["id"])
            extension = str(item.get("container_extension") or "mp4")
            episodes.append(
                EpisodePayload(
                    episode_id=episode_id,
                    series_id=series_id,
                    season=_as_int(item.get("season"), _as_int(season_key, 0)),
                    episode_num=_as_int(item.get("episode_num"), 0),
                    title=str(item.get("title") or f"Episode {episode_id}"),
                    url=stream_playback_url(credentials, "series", episode_id, extension),
                )
            )

    episodes.sort(key=lambda episode: (episode.season, episode.episode_num))
    return episodes


def _build_channel(
    kind: SourceKind,
    entry: Any,
    category_names: dict[str, str],
    credentials: XtreamCredentials,
    playlist_url: str,
    live_extension: str,
) -> ChannelPayload | None:
    if not isinstance(entry, dict):
        return None

    id_field = "series_id" if kind is SourceKind.XTREAM_SERIES else "stream_id"
    raw_id = entry.get(id_field)
    if raw_id is None or str(raw_id).strip() == "":
        return None
    stream_id = str(raw_id).strip()

    if kind is SourceKind.XTREAM_LIVE:
        url = stream_playback_url(credentials, "live", stream_id, live_extension)
        cover = entry.get("stream_icon")
        epg_id = entry.get("epg_channel_id") or None
    elif kind is SourceKind.XTREAM_VOD:
        extension = entry.get("container_extension") or "mp4"
        url = stream_playback_url(credentials, "movie", stream_id, extension)
        cover = entry.get("stream_icon")
        epg_id = None
    else:
        url = series_info_url(credentials, stream_id)
        cover = entry.get("cover")
        epg_id = None

    category_id = entry.get("category_id")
    return ChannelPayload(
        channel_id=stream_id,
        playlist_url=playlist_url,
        title=str(entry.get("name") or stream_id),
        url=url,
        cover=cover or None,
        category=category_names.get(str(category_id), "") if category_id is not None else "",
        epg_id=epg_id,
    )


def _load_json(content: bytes | str, label: str) -> Any:
    text = decode_content(content)
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedContentError(f"Xtream {label} is not valid JSON: {exc}") from exc


def _load_list(content: bytes | str, label: str, *, allow_empty: bool) -> list:
    text = decode_content(content)
    if allow_empty and not text.strip():
        return []
    document = _load_json(text, label)
    if not isinstance(document, list):
        raise MalformedContentError(f"Xtream {label} root must be a JSON list")
    return document


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
