"""
Backup codec

Serializes the subscription set (playlists, category flags, channel flags)
to a portable JSON document and back. Channel data itself is never backed
up; it is re-derived by the next refresh.

Exports are deterministic: playlists are ordered by URL, categories by name
and channels by id, so unchanged state always produces identical bytes.
"""
import logging
from collections import defaultdict
from collections.abc import Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from iptv_sync.errors import MalformedContentError
from iptv_sync.services.sync_types import (
    CategoryFlagRecord,
    ChannelFlagRecord,
    PlaylistRecord,
    SourceKind,
    XtreamCredentials,
)


logger = logging.getLogger(__name__)

BACKUP_VERSION = 1


class BackupCredentials(BaseModel):
    base_url: str
    username: str
    password: str


class BackupPlaylist(BaseModel):
    url: str = Field(..., min_length=1)
    title: str
    kind: SourceKind
    credentials: BackupCredentials | None = None
    user_agent: str | None = None
    epg_urls: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_credentials(self):
        if self.kind.is_xtream and self.credentials is None:
            raise ValueError(f"Xtream playlist {self.url} has no credentials")
        return self


class BackupCategory(BaseModel):
    name: str
    pinned: bool = False
    hidden: bool = False


class BackupChannel(BaseModel):
    channel_id: str = Field(..., min_length=1)
    favorite: bool = False
    muted: bool = False


class BackupBlock(BaseModel):
    playlist: BackupPlaylist
    categories: list[BackupCategory] = Field(default_factory=list)
    channels: list[BackupChannel] = Field(default_factory=list)


class BackupDocument(BaseModel):
    """Ordered list of playlist blocks"""
    version: int = BACKUP_VERSION
    playlists: list[BackupBlock] = Field(default_factory=list)

    @field_validator("version")
    @classmethod
    def validate_version(cls, value: int) -> int:
        if value != BACKUP_VERSION:
            raise ValueError(f"Unsupported backup version {value}")
        return value

    @model_validator(mode="after")
    def validate_unique_playlists(self):
        urls = [block.playlist.url for block in self.playlists]
        duplicates = sorted({url for url in urls if urls.count(url) > 1})
        if duplicates:
            raise ValueError(f"Duplicate playlists in backup: {duplicates}")
        return self


def export_document(
    playlists: Sequence[PlaylistRecord],
    category_flags: Sequence[CategoryFlagRecord],
    channel_flags: Sequence[ChannelFlagRecord],
) -> str:
    """
    Encode the subscription set as a JSON document.

    Flags belonging to playlists that are not in `playlists` are dropped.
    """
    categories_by_playlist: dict[str, list[CategoryFlagRecord]] = defaultdict(list)
    for flag in category_flags:
        categories_by_playlist[flag.playlist_url].append(flag)

    channels_by_playlist: dict[str, list[ChannelFlagRecord]] = defaultdict(list)
    for flag in channel_flags:
        if flag.favorite or flag.muted:
            channels_by_playlist[flag.playlist_url].append(flag)

    known_urls = {playlist.url for playlist in playlists}
    orphaned = (set(categories_by_playlist) | set(channels_by_playlist)) - known_urls
    if orphaned:
        logger.warning("Dropping flags of %s unknown playlist(s) from backup", len(orphaned))

    blocks = []
    for playlist in sorted(playlists, key=lambda p: p.url):
        credentials = playlist.credentials
        blocks.append(
            BackupBlock(
                playlist=BackupPlaylist(
                    url=playlist.url,
                    title=playlist.title,
                    kind=playlist.kind,
                    credentials=BackupCredentials(
                        base_url=credentials.base_url,
                        username=credentials.username,
                        password=credentials.password,
                    ) if credentials else None,
                    user_agent=playlist.user_agent,
                    epg_urls=sorted(set(playlist.epg_urls)),
                ),
                categories=[
                    BackupCategory(name=flag.category, pinned=flag.pinned, hidden=flag.hidden)
                    for flag in sorted(categories_by_playlist[playlist.url], key=lambda f: f.category)
                ],
                channels=[
                    BackupChannel(channel_id=flag.channel_id, favorite=flag.favorite, muted=flag.muted)
                    for flag in sorted(channels_by_playlist[playlist.url], key=lambda f: f.channel_id)
                ],
            )
        )

    document = BackupDocument(version=BACKUP_VERSION, playlists=blocks)
    logger.info("Exported backup with %s playlists", len(blocks))
    return document.model_dump_json(indent=2)


def import_document(text: str | bytes) -> BackupDocument:
    """
    Decode and validate a backup document.

    Raises:
        MalformedContentError: If the document is not valid JSON, has an
            unexpected shape or an unsupported version
    """
    try:
        document = BackupDocument.model_validate_json(text)
    except ValidationError as exc:
        logger.error("Invalid backup document: %s", exc.error_count())
        raise MalformedContentError(f"Invalid backup document: {exc}") from exc

    logger.info("Decoded backup with %s playlists", len(document.playlists))
    return document


def to_records(
    document: BackupDocument,
) -> tuple[list[PlaylistRecord], list[CategoryFlagRecord], list[ChannelFlagRecord]]:
    """Flatten a decoded document into store records."""
    playlists: list[PlaylistRecord] = []
    category_flags: list[CategoryFlagRecord] = []
    channel_flags: list[ChannelFlagRecord] = []

    for block in document.playlists:
        source = block.playlist
        credentials = source.credentials
        playlists.append(
            PlaylistRecord(
                url=source.url,
                title=source.title,
                kind=source.kind,
                credentials=XtreamCredentials(
                    base_url=credentials.base_url,
                    username=credentials.username,
                    password=credentials.password,
                ) if credentials else None,
                user_agent=source.user_agent,
                epg_urls=list(source.epg_urls),
            )
        )
        # Later duplicates of a key win
        categories = {category.name: category for category in block.categories}
        category_flags.extend(
            CategoryFlagRecord(source.url, category.name, category.pinned, category.hidden)
            for category in categories.values()
        )
        channels = {channel.channel_id: channel for channel in block.channels}
        channel_flags.extend(
            ChannelFlagRecord(source.url, channel.channel_id, channel.favorite, channel.muted)
            for channel in channels.values()
        )

    return playlists, category_flags, channel_flags
