"""
Shared dataclasses used across the playlist and EPG sync pipelines.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Literal


ProgressCallback = Callable[[int], None]


class SourceKind(str, Enum):
    M3U = "m3u"
    XTREAM_LIVE = "xtream-live"
    XTREAM_VOD = "xtream-vod"
    XTREAM_SERIES = "xtream-series"

    @property
    def is_xtream(self) -> bool:
        return self is not SourceKind.M3U

    @property
    def xtream_type(self) -> str:
        """Short type name used by Xtream panels (live, vod, series)."""
        return self.value.split("-", 1)[1]


@dataclass(slots=True, frozen=True)
class XtreamCredentials:
    base_url: str
    username: str
    password: str


@dataclass(slots=True)
class ChannelPayload:
    """In-memory representation of a channel row before persistence."""
    channel_id: str
    playlist_url: str
    title: str
    url: str
    cover: str | None = None
    category: str = ""
    epg_id: str | None = None
    license_type: str | None = None
    license_key: str | None = None
    last_seen_at: datetime | None = None
    favorite: bool = False
    muted: bool = False


@dataclass(slots=True)
class ProgrammePayload:
    """In-memory representation of a programme row before persistence."""
    channel_id: str
    start_time: datetime
    stop_time: datetime
    title: str
    description: str | None = None
    icon: str | None = None


@dataclass(slots=True, frozen=True)
class EpisodePayload:
    """Xtream series episode, fetched on demand and never persisted."""
    episode_id: str
    series_id: str
    season: int
    episode_num: int
    title: str
    url: str


@dataclass(slots=True)
class PlaylistRecord:
    url: str
    title: str
    kind: SourceKind
    credentials: XtreamCredentials | None = None
    user_agent: str | None = None
    epg_urls: list[str] = field(default_factory=list)
    last_sync_at: datetime | None = None
    is_refreshing: bool = False
    last_error: str | None = None


@dataclass(slots=True, frozen=True)
class CategoryFlagRecord:
    playlist_url: str
    category: str
    pinned: bool = False
    hidden: bool = False


@dataclass(slots=True, frozen=True)
class ChannelFlagRecord:
    playlist_url: str
    channel_id: str
    favorite: bool = False
    muted: bool = False


@dataclass(slots=True)
class SyncReport:
    playlist_url: str
    started_at: datetime
    completed_at: datetime
    channels_total: int = 0
    channels_added: int = 0
    channels_updated: int = 0
    channels_removed: int = 0
    categories_added: int = 0

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.completed_at - self.started_at).total_seconds())

    def to_dict(self) -> dict:
        return {
            "playlist_url": self.playlist_url,
            "channels_total": self.channels_total,
            "channels_added": self.channels_added,
            "channels_updated": self.channels_updated,
            "channels_removed": self.channels_removed,
            "categories_added": self.categories_added,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
        }


@dataclass(slots=True)
class EpgSyncReport:
    epg_url: str
    status: Literal["success", "skipped"]
    programmes_parsed: int = 0
    programmes_stored: int = 0
    programmes_trimmed: int = 0
    valid_until: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "epg_url": self.epg_url,
            "status": self.status,
            "programmes_parsed": self.programmes_parsed,
            "programmes_stored": self.programmes_stored,
            "programmes_trimmed": self.programmes_trimmed,
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
        }


@dataclass(slots=True)
class ImportSummary:
    playlists_added: int = 0
    playlists_merged: int = 0
    categories_added: int = 0
    channel_flags_added: int = 0

    def to_dict(self) -> dict:
        return {
            "playlists_added": self.playlists_added,
            "playlists_merged": self.playlists_merged,
            "categories_added": self.categories_added,
            "channel_flags_added": self.channel_flags_added,
        }


__all__ = [
    "ProgressCallback",
    "SourceKind",
    "XtreamCredentials",
    "ChannelPayload",
    "ProgrammePayload",
    "EpisodePayload",
    "PlaylistRecord",
    "CategoryFlagRecord",
    "ChannelFlagRecord",
    "SyncReport",
    "EpgSyncReport",
    "ImportSummary",
]
