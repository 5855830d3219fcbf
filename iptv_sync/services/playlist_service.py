"""
Playlist Service

Public operations of the ingestion engine: subscriptions, refreshes, user
flags, backups and EPG sources. Every operation raises a typed IngestError
subclass on failure.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from iptv_sync.config import settings
from iptv_sync.errors import (
    ChannelNotFoundError,
    InvalidRequestError,
    PlaylistConflictError,
    PlaylistNotFoundError,
)
from iptv_sync.parsers.xtream_parser import normalize_base_url, parse_series_episodes, playlist_url_for, series_info_url
from iptv_sync.services.backup_codec import export_document, import_document, to_records
from iptv_sync.services.category_state import CategoryStateStore
from iptv_sync.services.epg_sync_service import EpgSyncPipeline
from iptv_sync.services.playlist_sync_service import PlaylistSyncPipeline
from iptv_sync.services.store import PlaylistStore
from iptv_sync.services.sync_coordinator import SyncCoordinator, SyncState, SyncStatus
from iptv_sync.services.sync_types import (
    CategoryFlagRecord,
    EpgSyncReport,
    EpisodePayload,
    ImportSummary,
    PlaylistRecord,
    ProgrammePayload,
    ProgressCallback,
    SourceKind,
    SyncReport,
    XtreamCredentials,
)
from iptv_sync.utils.file_operations import Fetcher, HttpFetcher
from iptv_sync.utils.timezone import Clock, utc_now
from iptv_sync.utils.url_helpers import sanitize_url_for_logging


logger = logging.getLogger(__name__)


class PlaylistService:
    """Entry point used by the HTTP layer and the scheduler."""

    def __init__(
        self,
        store: PlaylistStore,
        fetcher: Fetcher,
        clock: Clock = utc_now,
        *,
        progress_step: int = 100,
        live_extension: str = "ts",
        parse_timeout_seconds: int | None = None,
        archive_days: int = 2,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.clock = clock
        self.categories = CategoryStateStore(store)
        self.playlist_sync = PlaylistSyncPipeline(
            store,
            fetcher,
            clock,
            progress_step=progress_step,
            live_extension=live_extension,
        )
        self.epg_sync = EpgSyncPipeline(
            store,
            fetcher,
            clock,
            parse_timeout_seconds=parse_timeout_seconds,
            archive_days=archive_days,
        )
        self.playlist_coordinator = SyncCoordinator(clock)
        self.epg_coordinator = SyncCoordinator(clock)

    @classmethod
    def from_settings(cls, store: PlaylistStore | None = None, fetcher: Fetcher | None = None) -> "PlaylistService":
        return cls(
            store or PlaylistStore(),
            fetcher or HttpFetcher(
                timeout=settings.fetch_timeout_sec,
                max_retries=settings.fetch_max_retries,
                backoff_factor=settings.fetch_backoff_factor,
                default_user_agent=settings.default_user_agent,
            ),
            progress_step=settings.sync_progress_step,
            live_extension=settings.xtream_live_extension,
            parse_timeout_seconds=settings.epg_parse_timeout_sec,
            archive_days=settings.max_epg_depth,
        )

    # Subscriptions

    async def subscribe_m3u(self, title: str, url: str, progress: ProgressCallback | None = None) -> int:
        """Subscribe to an M3U playlist and run its first sync. Returns the channel count."""
        url = url.strip()
        if not url:
            raise InvalidRequestError("Playlist URL must not be empty")
        record = PlaylistRecord(url=url, title=title.strip() or url, kind=SourceKind.M3U)
        return await self._subscribe(record, progress)

    async def subscribe_xtream(
        self,
        title: str,
        base_url: str,
        username: str,
        password: str,
        kind: SourceKind | str,
        progress: ProgressCallback | None = None,
    ) -> int:
        """Subscribe to one listing of an Xtream panel. Returns the channel count."""
        try:
            kind = SourceKind(kind)
        except ValueError:
            raise InvalidRequestError(f"Unknown source kind: {kind}") from None
        if not kind.is_xtream:
            raise InvalidRequestError(f"Not an Xtream source kind: {kind.value}")
        if not base_url.strip() or not username:
            raise InvalidRequestError("Xtream base URL and username are required")

        credentials = XtreamCredentials(
            base_url=normalize_base_url(base_url),
            username=username,
            password=password,
        )
        url = playlist_url_for(credentials, kind)
        record = PlaylistRecord(url=url, title=title.strip() or credentials.base_url, kind=kind, credentials=credentials)
        return await self._subscribe(record, progress)

    async def _subscribe(self, record: PlaylistRecord, progress: ProgressCallback | None) -> int:
        if not await self.store.insert_playlist(record, self.clock()):
            raise PlaylistConflictError(record.url)

        logger.info("Subscribed to %s", sanitize_url_for_logging(record.url))
        try:
            report = await self.refresh(record.url, progress)
        except (Exception, asyncio.CancelledError):
            # A subscription only exists once its first sync succeeded
            await self.store.delete_playlist(record.url)
            self.playlist_coordinator.forget(record.url)
            raise
        return report.channels_total

    async def refresh(self, playlist_url: str, progress: ProgressCallback | None = None) -> SyncReport:
        """
        Run a sync pass for a playlist.

        Concurrent calls for the same URL share one pass and its outcome.
        """
        playlist = await self._require_playlist(playlist_url)
        return await self.playlist_coordinator.execute(
            playlist_url,
            lambda: self.playlist_sync.run(playlist, progress),
        )

    async def unsubscribe(self, playlist_url: str) -> PlaylistRecord | None:
        await self.playlist_coordinator.cancel(playlist_url)
        record = await self.store.delete_playlist(playlist_url)
        self.playlist_coordinator.forget(playlist_url)
        return record

    async def edit_title(self, playlist_url: str, title: str) -> None:
        if not await self.store.update_playlist(playlist_url, title=title):
            raise PlaylistNotFoundError(playlist_url)

    async def edit_user_agent(self, playlist_url: str, user_agent: str | None) -> None:
        value = user_agent.strip() if user_agent else None
        if not await self.store.update_playlist(playlist_url, user_agent=value or None):
            raise PlaylistNotFoundError(playlist_url)

    async def list_playlists_with_counts(self) -> list[tuple[PlaylistRecord, int]]:
        return await self.store.list_playlists_with_counts()

    def epg_status(self, epg_url: str) -> SyncStatus:
        return self.epg_coordinator.status(epg_url)

    async def playlist_status(self, playlist_url: str) -> SyncStatus:
        """Status of a playlist, falling back to the persisted failure reason."""
        playlist = await self._require_playlist(playlist_url)
        status = self.playlist_coordinator.status(playlist_url)
        if status.started_at is None:
            return SyncStatus(
                state=SyncState.REFRESHING if playlist.is_refreshing else SyncState.IDLE,
                finished_at=playlist.last_sync_at,
                succeeded=_persisted_outcome(playlist),
                error=playlist.last_error,
            )
        return status

    # User flags

    async def pin_or_unpin_category(self, playlist_url: str, category: str) -> CategoryFlagRecord | None:
        return await self.categories.pin_or_unpin(playlist_url, category)

    async def hide_or_unhide_category(self, playlist_url: str, category: str) -> CategoryFlagRecord | None:
        return await self.categories.hide_or_unhide(playlist_url, category)

    async def set_favorite(self, playlist_url: str, channel_id: str, value: bool) -> None:
        if not await self.store.set_channel_flag(playlist_url, channel_id, "favorite", value):
            raise ChannelNotFoundError(playlist_url, channel_id)

    async def set_muted(self, playlist_url: str, channel_id: str, value: bool) -> None:
        if not await self.store.set_channel_flag(playlist_url, channel_id, "muted", value):
            raise ChannelNotFoundError(playlist_url, channel_id)

    # Backup

    async def export_backup(self) -> str:
        return export_document(
            await self.store.list_playlists(),
            await self.store.list_category_flags(),
            await self.store.list_channel_flags(),
        )

    async def import_backup(self, document: str | bytes) -> ImportSummary:
        playlists, category_flags, channel_flags = to_records(import_document(document))
        return await self.store.apply_backup(playlists, category_flags, channel_flags, self.clock())

    # Series

    async def read_episodes(self, playlist_url: str, series_channel_id: str) -> list[EpisodePayload]:
        """Fetch the episodes of an Xtream series on demand."""
        playlist = await self._require_playlist(playlist_url)
        if playlist.kind is not SourceKind.XTREAM_SERIES or playlist.credentials is None:
            raise InvalidRequestError("Episodes are only available for Xtream series playlists")
        if await self.store.get_channel(playlist_url, series_channel_id) is None:
            raise ChannelNotFoundError(playlist_url, series_channel_id)

        content = await self.fetcher.fetch(
            series_info_url(playlist.credentials, series_channel_id),
            playlist.user_agent,
        )
        return parse_series_episodes(content, series_channel_id, playlist.credentials)

    # EPG

    async def fetch_epg(self, epg_url: str, force: bool = False) -> EpgSyncReport:
        """Refresh an EPG source unless its snapshot is still valid (or `force`)."""
        return await self.epg_coordinator.execute(
            epg_url,
            lambda: self.epg_sync.run(epg_url, force=force),
        )

    async def add_epg_to_playlist(self, epg_url: str, playlist_url: str) -> None:
        await self._require_playlist(playlist_url)
        await self.store.add_epg_link(epg_url, playlist_url)

    async def remove_epg_from_playlist(self, epg_url: str, playlist_url: str) -> bool:
        await self._require_playlist(playlist_url)
        return await self.store.remove_epg_link(epg_url, playlist_url)

    async def delete_epg_source(self, epg_url: str) -> int:
        await self.epg_coordinator.cancel(epg_url)
        self.epg_coordinator.forget(epg_url)
        return await self.store.delete_epg_source(epg_url)

    async def get_programmes(
        self,
        playlist_url: str,
        channel_id: str,
        start: datetime,
        end: datetime,
    ) -> list[ProgrammePayload]:
        """Guide of a channel across every EPG source linked to its playlist."""
        playlist = await self._require_playlist(playlist_url)
        channel = await self.store.get_channel(playlist_url, channel_id)
        if channel is None:
            raise ChannelNotFoundError(playlist_url, channel_id)

        programmes = await self.store.query_programmes(
            playlist.epg_urls,
            channel.epg_id or channel.channel_id,
            start,
            end,
        )
        logger.info(
            "Guide for %s: %s programmes between %s and %s",
            channel.title,
            len(programmes),
            start.isoformat(),
            end.isoformat(),
        )
        return programmes

    async def _require_playlist(self, playlist_url: str) -> PlaylistRecord:
        playlist = await self.store.get_playlist(playlist_url)
        if playlist is None:
            raise PlaylistNotFoundError(playlist_url)
        return playlist


def _persisted_outcome(playlist: PlaylistRecord) -> bool | None:
    if playlist.last_error is not None:
        return False
    if playlist.last_sync_at is not None:
        return True
    return None
