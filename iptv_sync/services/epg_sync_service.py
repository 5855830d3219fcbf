"""
EPG Sync Service

Coordinates downloading, parsing, merging and persistence of one EPG source.
Passes are keyed by EPG URL since one source may serve several playlists.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from iptv_sync.errors import IngestError, MalformedContentError
from iptv_sync.parsers.xmltv_parser import parse_xmltv
from iptv_sync.services.store import PlaylistStore
from iptv_sync.services.sync_types import EpgSyncReport, ProgrammePayload
from iptv_sync.utils.data_merging import merge_programme_sets
from iptv_sync.utils.file_operations import Fetcher
from iptv_sync.utils.timezone import Clock
from iptv_sync.utils.url_helpers import sanitize_url_for_logging


logger = logging.getLogger(__name__)


class EpgSyncPipeline:
    """Refreshes the programme snapshot of an EPG source when it has expired."""

    def __init__(
        self,
        store: PlaylistStore,
        fetcher: Fetcher,
        clock: Clock,
        *,
        parse_timeout_seconds: int | None = None,
        archive_days: int = 2,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.clock = clock
        self.parse_timeout_seconds = parse_timeout_seconds
        self.archive_days = archive_days

    async def valid_until(self, epg_url: str) -> datetime | None:
        """
        End of the latest stored programme if the snapshot is still valid.

        A snapshot stays valid until its latest programme has ended.
        """
        latest = await self.store.latest_programme_end(epg_url)
        if latest is not None and latest > self.clock():
            return latest
        return None

    async def run(self, epg_url: str, *, force: bool = False) -> EpgSyncReport:
        safe_url = sanitize_url_for_logging(epg_url)

        valid_until = await self.valid_until(epg_url)
        if valid_until is not None and not force:
            logger.info("EPG snapshot for %s valid until %s, skipping", safe_url, valid_until.isoformat())
            return EpgSyncReport(epg_url=epg_url, status="skipped", valid_until=valid_until)

        logger.info("EPG sync started for %s (forced=%s)", safe_url, force)
        try:
            content = await self.fetcher.fetch(epg_url)
            programmes = await parse_xmltv_async(content, parse_timeout_seconds=self.parse_timeout_seconds)

            existing = await self.store.load_programmes(epg_url)
            merged = merge_programme_sets(existing, programmes)
            kept, trimmed = self._trim_archive(merged)

            stored = await self.store.replace_programmes(epg_url, kept, self.clock())
        except IngestError as exc:
            logger.error("EPG sync failed for %s: %s", safe_url, exc)
            await self.store.record_epg_failure(epg_url, str(exc))
            raise

        latest = max((programme.stop_time for programme in kept), default=None)
        logger.info(
            "EPG sync completed for %s: %s parsed, %s stored, %s trimmed",
            safe_url,
            len(programmes),
            stored,
            trimmed,
        )
        return EpgSyncReport(
            epg_url=epg_url,
            status="success",
            programmes_parsed=len(programmes),
            programmes_stored=stored,
            programmes_trimmed=trimmed,
            valid_until=latest if latest and latest > self.clock() else None,
        )

    def _trim_archive(self, programmes: list[ProgrammePayload]) -> tuple[list[ProgrammePayload], int]:
        cutoff = self.clock() - timedelta(days=self.archive_days)
        kept = [programme for programme in programmes if programme.stop_time >= cutoff]
        return kept, len(programmes) - len(kept)


async def parse_xmltv_async(
    content: bytes | str,
    *,
    parse_timeout_seconds: int | None = None
) -> list[ProgrammePayload]:
    """
    Parse XMLTV content asynchronously with timeout protection.

    Parsing is offloaded to the thread pool to avoid blocking the event loop.

    Keyword Args:
        parse_timeout_seconds: Timeout in seconds for parsing (0/None disables timeout)

    Raises:
        MalformedContentError: If XML is malformed or parsing times out
        EncodingError: If the content is not text
    """
    effective_timeout = parse_timeout_seconds if parse_timeout_seconds and parse_timeout_seconds > 0 else None
    timeout_display = f"{effective_timeout}s" if effective_timeout else "disabled"

    loop = asyncio.get_running_loop()
    logger.debug("Offloading XML parsing to thread pool executor (timeout: %s)...", timeout_display)
    parse_task = loop.run_in_executor(None, parse_xmltv, content)
    try:
        if effective_timeout:
            return await asyncio.wait_for(parse_task, timeout=effective_timeout)
        return await parse_task
    except asyncio.TimeoutError as exc:
        logger.error("XML parsing timed out after %s", timeout_display)
        raise MalformedContentError("XML parsing timed out - document may be too large or malformed") from exc
