"""
Playlist Sync Service

Runs one sync pass for a playlist: fetch, parse, merge against the stored
snapshot, and commit. A pass is all-or-nothing.
"""
from __future__ import annotations

import asyncio
import functools
import logging

from iptv_sync.errors import IngestError, InvalidRequestError
from iptv_sync.parsers import parse_m3u, parse_xtream
from iptv_sync.parsers.xtream_parser import category_list_url, stream_list_url
from iptv_sync.services.store import PlaylistStore
from iptv_sync.services.sync_types import (
    ChannelPayload,
    PlaylistRecord,
    ProgressCallback,
    SourceKind,
    SyncReport,
)
from iptv_sync.utils.data_merging import merge_channels
from iptv_sync.utils.file_operations import Fetcher
from iptv_sync.utils.timezone import Clock
from iptv_sync.utils.url_helpers import sanitize_url_for_logging


logger = logging.getLogger(__name__)


class PlaylistSyncPipeline:
    """Coordinates fetch, parse, merge and commit stages for one playlist."""

    def __init__(
        self,
        store: PlaylistStore,
        fetcher: Fetcher,
        clock: Clock,
        *,
        progress_step: int = 100,
        live_extension: str = "ts",
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.clock = clock
        self.progress_step = progress_step
        self.live_extension = live_extension

    async def run(self, playlist: PlaylistRecord, progress: ProgressCallback | None = None) -> SyncReport:
        safe_url = sanitize_url_for_logging(playlist.url)
        started_at = self.clock()
        logger.info("Sync started for %s (%s)", safe_url, playlist.kind.value)

        await self.store.mark_refreshing(playlist.url)
        try:
            channels, epg_urls = await self._fetch_and_parse(playlist)

            existing = await self.store.load_channels(playlist.url)
            category_flags = await self.store.load_category_flags(playlist.url)
            pending_flags = await self.store.load_pending_flags(playlist.url)

            merge = merge_channels(
                existing,
                channels,
                seen_at=self.clock(),
                known_categories=set(category_flags),
                pending_flags=pending_flags,
                progress=progress,
                progress_step=self.progress_step,
            )
            await self.store.commit_playlist_sync(playlist.url, merge, self.clock(), epg_urls)
        except asyncio.CancelledError:
            logger.warning("Sync cancelled for %s, nothing committed", safe_url)
            await self.store.update_playlist(playlist.url, is_refreshing=False)
            raise
        except IngestError as exc:
            logger.error("Sync failed for %s: %s", safe_url, exc)
            await self.store.record_sync_failure(playlist.url, str(exc))
            raise
        except Exception as exc:
            logger.error("Unexpected error during sync of %s: %s", safe_url, exc, exc_info=True)
            await self.store.record_sync_failure(playlist.url, f"{type(exc).__name__}: {exc}")
            raise

        report = SyncReport(
            playlist_url=playlist.url,
            started_at=started_at,
            completed_at=self.clock(),
            channels_total=len(merge.channels),
            channels_added=merge.added,
            channels_updated=merge.updated,
            channels_removed=len(merge.removed_ids),
            categories_added=len(merge.new_categories),
        )
        logger.info(
            "Sync completed for %s: %s channels (%s added, %s removed) in %.2fs",
            safe_url,
            report.channels_total,
            report.channels_added,
            report.channels_removed,
            report.duration_seconds,
        )
        return report

    async def _fetch_and_parse(self, playlist: PlaylistRecord) -> tuple[list[ChannelPayload], list[str]]:
        loop = asyncio.get_running_loop()

        if playlist.kind is SourceKind.M3U:
            content = await self.fetcher.fetch(playlist.url, playlist.user_agent)
            document = await loop.run_in_executor(None, parse_m3u, content, playlist.url)
            return document.channels, document.epg_urls

        credentials = playlist.credentials
        if credentials is None:
            raise InvalidRequestError(f"Xtream playlist without credentials: {sanitize_url_for_logging(playlist.url)}")

        # A failed listing cancels its sibling before the pass aborts
        try:
            async with asyncio.TaskGroup() as group:
                categories_task = group.create_task(
                    self.fetcher.fetch(category_list_url(credentials, playlist.kind), playlist.user_agent)
                )
                streams_task = group.create_task(
                    self.fetcher.fetch(stream_list_url(credentials, playlist.kind), playlist.user_agent)
                )
        except ExceptionGroup as group_error:
            raise group_error.exceptions[0] from None

        channels = await loop.run_in_executor(
            None,
            functools.partial(
                parse_xtream,
                playlist.kind,
                categories_task.result(),
                streams_task.result(),
                credentials,
                playlist.url,
                live_extension=self.live_extension,
            ),
        )
        return channels, []
