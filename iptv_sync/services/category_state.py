"""
Category state

Pinned/hidden flags per (playlist, category). Flags outlive channel churn:
a category that disappears from a playlist keeps its flags until the
playlist is unsubscribed.
"""
import logging

from iptv_sync.errors import PlaylistNotFoundError
from iptv_sync.services.store import PlaylistStore
from iptv_sync.services.sync_types import CategoryFlagRecord


logger = logging.getLogger(__name__)


class CategoryStateStore:
    def __init__(self, store: PlaylistStore):
        self.store = store

    async def pin_or_unpin(self, playlist_url: str, category: str) -> CategoryFlagRecord | None:
        return await self._toggle(playlist_url, category, "pinned")

    async def hide_or_unhide(self, playlist_url: str, category: str) -> CategoryFlagRecord | None:
        return await self._toggle(playlist_url, category, "hidden")

    async def list_flags(self, playlist_url: str) -> list[CategoryFlagRecord]:
        await self._require_playlist(playlist_url)
        flags = await self.store.load_category_flags(playlist_url)
        return [flags[name] for name in sorted(flags)]

    async def _toggle(self, playlist_url: str, category: str, flag: str) -> CategoryFlagRecord | None:
        await self._require_playlist(playlist_url)
        record = await self.store.toggle_category_flag(playlist_url, category, flag)
        logger.info("Category %r %s -> %s", category, flag, getattr(record, flag, None))
        return record

    async def _require_playlist(self, playlist_url: str) -> None:
        if await self.store.get_playlist(playlist_url) is None:
            raise PlaylistNotFoundError(playlist_url)
