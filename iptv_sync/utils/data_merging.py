"""
Data merging utilities

This module merges freshly parsed channels and programmes against the
persisted snapshot.
"""
import logging
from bisect import bisect_left
from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime

from iptv_sync.services.sync_types import ChannelPayload, ProgressCallback, ProgrammePayload

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ChannelMergeResult:
    channels: list[ChannelPayload] = field(default_factory=list)
    removed_ids: list[str] = field(default_factory=list)
    added: int = 0
    updated: int = 0
    new_categories: list[str] = field(default_factory=list)


def merge_channels(
    existing: Mapping[str, ChannelPayload],
    incoming: Sequence[ChannelPayload],
    *,
    seen_at: datetime,
    known_categories: set[str],
    pending_flags: Mapping[str, tuple[bool, bool]] | None = None,
    progress: ProgressCallback | None = None,
    progress_step: int = 100,
) -> ChannelMergeResult:
    """
    Full-replace merge of one playlist's channels, keyed by channel id.

    Channels present in both sets keep their `favorite`/`muted` flags and take
    every other field from the fetch. New channels take flags restored from a
    backup when available, else default to False. Stored channels missing
    from the fetch are reported for deletion.

    Args:
        existing: Stored channels of the playlist (channel_id -> ChannelPayload)
        incoming: Freshly parsed channels
        seen_at: Timestamp written to `last_seen_at`
        known_categories: Categories that already have a flag record
        pending_flags: channel_id -> (favorite, muted) restored from a backup
        progress: Called with the running count of merged channels
        progress_step: Number of channels between progress calls

    Returns:
        ChannelMergeResult
    """
    result = ChannelMergeResult()
    pending = pending_flags or {}
    incoming_ids: set[str] = set()
    new_categories: dict[str, None] = {}

    for count, channel in enumerate(incoming, start=1):
        incoming_ids.add(channel.channel_id)
        current = existing.get(channel.channel_id)
        if current is not None:
            favorite, muted = current.favorite, current.muted
            result.updated += 1
        else:
            favorite, muted = pending.get(channel.channel_id, (False, False))
            result.added += 1

        result.channels.append(
            replace(channel, last_seen_at=seen_at, favorite=favorite, muted=muted)
        )

        if channel.category not in known_categories:
            new_categories[channel.category] = None

        if progress is not None and count % progress_step == 0:
            progress(count)

    if progress is not None and result.channels and len(result.channels) % progress_step != 0:
        progress(len(result.channels))

    result.removed_ids = sorted(set(existing) - incoming_ids)
    result.new_categories = list(new_categories)

    logger.debug(
        "Channel merge: %s added, %s updated, %s removed, %s new categories",
        result.added,
        result.updated,
        len(result.removed_ids),
        len(result.new_categories),
    )
    return result


def merge_programmes(
    existing: Sequence[ProgrammePayload],
    incoming: Sequence[ProgrammePayload],
) -> list[ProgrammePayload]:
    """
    Merge programmes of a single channel.

    Fetched intervals replace any stored interval they overlap. Among fetched
    intervals that overlap each other the earliest one wins. The result is
    sorted by start time and non-overlapping.
    """
    fetched: list[ProgrammePayload] = []
    for programme in sorted(incoming, key=lambda p: (p.start_time, p.stop_time)):
        if fetched and programme.start_time < fetched[-1].stop_time:
            logger.debug(
                "Dropping overlapping programme %s on %s",
                programme.title,
                programme.channel_id,
            )
            continue
        fetched.append(programme)

    starts = [programme.start_time for programme in fetched]
    kept = [
        programme for programme in existing
        if not _overlaps_any(programme, fetched, starts)
    ]

    merged = kept + fetched
    merged.sort(key=lambda p: p.start_time)
    return merged


def merge_programme_sets(
    existing: Sequence[ProgrammePayload],
    incoming: Sequence[ProgrammePayload],
) -> list[ProgrammePayload]:
    """Group both sets by channel and merge each channel independently."""
    existing_by_channel = group_by_channel(existing)
    incoming_by_channel = group_by_channel(incoming)

    merged: list[ProgrammePayload] = []
    for channel_id in sorted(existing_by_channel.keys() | incoming_by_channel.keys()):
        merged.extend(
            merge_programmes(
                existing_by_channel.get(channel_id, []),
                incoming_by_channel.get(channel_id, []),
            )
        )
    return merged


def group_by_channel(programmes: Sequence[ProgrammePayload]) -> dict[str, list[ProgrammePayload]]:
    grouped: dict[str, list[ProgrammePayload]] = defaultdict(list)
    for programme in programmes:
        grouped[programme.channel_id].append(programme)
    return grouped


def _overlaps_any(
    programme: ProgrammePayload,
    fetched: list[ProgrammePayload],
    starts: list[datetime],
) -> bool:
    # fetched is sorted and non-overlapping, so the last interval starting
    # before `programme` ends is the only one that can reach into it
    index = bisect_left(starts, programme.stop_time)
    return index > 0 and fetched[index - 1].stop_time > programme.start_time
