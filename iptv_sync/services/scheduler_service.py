import asyncio
import logging
from datetime import datetime
from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from iptv_sync.config import settings
from iptv_sync.errors import IngestError
from iptv_sync.services.playlist_service import PlaylistService
from iptv_sync.utils.url_helpers import sanitize_url_for_logging


logger = logging.getLogger(__name__)


async def refresh_all_playlists(service: PlaylistService, max_concurrency: int) -> dict:
    """Refresh every subscribed playlist, a bounded number at a time."""
    playlists = await service.store.list_playlists()
    semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def refresh_one(url: str) -> bool:
        async with semaphore:
            try:
                await service.refresh(url)
                return True
            except IngestError as exc:
                logger.error("Scheduled refresh of %s failed: %s", sanitize_url_for_logging(url), exc)
                return False

    results = await asyncio.gather(*(refresh_one(p.url) for p in playlists))
    summary = {"playlists": len(results), "succeeded": sum(results), "failed": len(results) - sum(results)}
    logger.info("Scheduled playlist refresh finished: %s", summary)
    return summary


async def refresh_all_epgs(service: PlaylistService) -> dict:
    """Refresh every known EPG source whose snapshot has expired."""
    summary = {"sources": 0, "refreshed": 0, "skipped": 0, "failed": 0}
    for epg_url in await service.store.all_epg_urls():
        summary["sources"] += 1
        try:
            report = await service.fetch_epg(epg_url)
        except IngestError as exc:
            logger.error("Scheduled EPG sync of %s failed: %s", sanitize_url_for_logging(epg_url), exc)
            summary["failed"] += 1
            continue
        summary["refreshed" if report.status == "success" else "skipped"] += 1
    logger.info("Scheduled EPG refresh finished: %s", summary)
    return summary


class SyncScheduler:
    """Scheduler for automatic playlist and EPG refreshes"""

    def __init__(self, service_provider: Callable[[], PlaylistService]):
        self._service_provider = service_provider
        self.scheduler: AsyncIOScheduler | None = None

    async def _playlist_job(self) -> None:
        """Background job that refreshes all playlists"""
        logger.info("Scheduled playlist refresh triggered")
        try:
            await refresh_all_playlists(self._service_provider(), settings.sync_max_concurrency)
        except Exception as e:
            logger.error(f"Exception in scheduled playlist refresh: {e}", exc_info=True)

    async def _epg_job(self) -> None:
        """Background job that refreshes expired EPG sources"""
        logger.info("Scheduled EPG refresh triggered")
        try:
            await refresh_all_epgs(self._service_provider())
        except Exception as e:
            logger.error(f"Exception in scheduled EPG refresh: {e}", exc_info=True)

    def start(self) -> None:
        """Start the scheduler with refresh jobs"""
        if self.scheduler and self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler = AsyncIOScheduler(timezone='UTC')
        self.scheduler.add_job(
            self._playlist_job,
            trigger=CronTrigger.from_crontab(settings.playlist_refresh_cron),
            id='playlist_refresh',
            max_instances=1,
            coalesce=True,
            misfire_grace_time=settings.scheduler_misfire_grace_sec
        )
        self.scheduler.add_job(
            self._epg_job,
            trigger=CronTrigger.from_crontab(settings.epg_refresh_cron),
            id='epg_refresh',
            max_instances=1,
            coalesce=True,
            misfire_grace_time=settings.scheduler_misfire_grace_sec
        )

        self.scheduler.start()
        next_time = self.get_next_run_time('playlist_refresh')
        logger.info(
            "Scheduler started. Next playlist refresh: %s",
            next_time.isoformat() if next_time else "unknown"
        )

    def shutdown(self) -> None:
        """Shutdown the scheduler"""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Scheduler stopped")
            self.scheduler = None

    def get_next_run_time(self, job_id: str = 'playlist_refresh') -> datetime | None:
        """Get next scheduled run time of a job"""
        if not self.scheduler:
            return None
        job = self.scheduler.get_job(job_id)
        return job.next_run_time if job else None
