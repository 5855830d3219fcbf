"""
Dependency wiring

Holds the process-wide PlaylistService and scheduler. Tests replace the
service through `set_playlist_service`.
"""
import logging

from iptv_sync.services.playlist_service import PlaylistService
from iptv_sync.services.scheduler_service import SyncScheduler


logger = logging.getLogger(__name__)

_service: PlaylistService | None = None


def get_playlist_service() -> PlaylistService:
    """
    Get or create the global PlaylistService singleton.

    Usable directly as a FastAPI dependency.
    """
    global _service
    if _service is None:
        _service = PlaylistService.from_settings()
        logger.debug("Created PlaylistService from settings")
    return _service


def set_playlist_service(service: PlaylistService | None) -> None:
    """Install a preconfigured service (or clear it with None)."""
    global _service
    _service = service


sync_scheduler = SyncScheduler(get_playlist_service)
