"""
Channel identity helpers shared by the playlist parsers.
"""
import hashlib
import logging

from iptv_sync.services.sync_types import ChannelPayload

logger = logging.getLogger(__name__)


def _url_digest(url: str, length: int) -> str:
    return hashlib.sha1(url.encode("utf-8")).hexdigest()[:length]


def derive_channel_id(url: str) -> str:
    """Stable fallback identifier for entries without a source-provided id."""
    return _url_digest(url, 16)


def dedupe_channel_ids(channels: list[ChannelPayload]) -> list[ChannelPayload]:
    """
    Make channel ids unique within one parsed playlist.

    The first occurrence keeps its id; later entries sharing it get a suffix
    derived from their playback URL. Entries repeating both id and URL are
    dropped.
    """
    seen_ids: set[str] = set()
    seen_entries: set[tuple[str, str]] = set()
    unique: list[ChannelPayload] = []
    for channel in channels:
        entry = (channel.channel_id, channel.url)
        if entry in seen_entries:
            logger.warning(
                "Dropping duplicate channel %s (%s)",
                channel.channel_id,
                channel.title,
            )
            continue
        seen_entries.add(entry)

        if channel.channel_id in seen_ids:
            channel.channel_id = f"{channel.channel_id}~{_url_digest(channel.url, 10)}"
        seen_ids.add(channel.channel_id)
        unique.append(channel)
    return unique
