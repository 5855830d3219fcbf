"""
Database operations for playlists, channels, category flags and programmes

Every method opens its own transaction through `session_scope`, so each call
is atomic with respect to readers.
"""
import logging
from collections.abc import Iterable, Sequence
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from iptv_sync.database import session_scope
from iptv_sync.models import (
    CategoryFlag,
    Channel,
    EpgSource,
    PendingChannelFlag,
    Playlist,
    Programme,
    playlist_epg_links,
)
from iptv_sync.services.sync_types import (
    CategoryFlagRecord,
    ChannelFlagRecord,
    ChannelPayload,
    ImportSummary,
    PlaylistRecord,
    ProgrammePayload,
    SourceKind,
    XtreamCredentials,
)
from iptv_sync.utils.data_merging import ChannelMergeResult
from iptv_sync.utils.timezone import ensure_utc, parse_iso8601_to_utc, to_storage_string

logger = logging.getLogger(__name__)

CHUNK_SIZE = 500


class PlaylistStore:
    """Keyed relational store backing the sync engine."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    def _scope(self):
        return session_scope(self._session_factory)

    # Playlists

    async def get_playlist(self, url: str) -> PlaylistRecord | None:
        async with self._scope() as session:
            playlist = await session.get(Playlist, url)
            if playlist is None:
                return None
            epg_urls = await self._epg_urls_for(session, url)
            return _to_playlist_record(playlist, epg_urls)

    async def list_playlists(self) -> list[PlaylistRecord]:
        async with self._scope() as session:
            result = await session.execute(select(Playlist).order_by(Playlist.url))
            playlists = list(result.scalars().all())
            links = await self._all_epg_links(session)
            return [_to_playlist_record(p, links.get(p.url, [])) for p in playlists]

    async def list_playlists_with_counts(self) -> list[tuple[PlaylistRecord, int]]:
        async with self._scope() as session:
            count_result = await session.execute(
                select(Channel.playlist_url, func.count()).group_by(Channel.playlist_url)
            )
            counts = {url: count for url, count in count_result.all()}
            result = await session.execute(select(Playlist).order_by(Playlist.url))
            links = await self._all_epg_links(session)
            return [
                (_to_playlist_record(p, links.get(p.url, [])), counts.get(p.url, 0))
                for p in result.scalars().all()
            ]

    async def insert_playlist(self, record: PlaylistRecord, created_at: datetime) -> bool:
        """Insert a playlist row. Returns False when the URL already exists."""
        credentials = record.credentials
        stmt = sqlite_insert(Playlist).values(
            url=record.url,
            title=record.title,
            kind=record.kind.value,
            xtream_base_url=credentials.base_url if credentials else None,
            xtream_username=credentials.username if credentials else None,
            xtream_password=credentials.password if credentials else None,
            user_agent=record.user_agent,
            is_refreshing=False,
            created_at=created_at,
        ).on_conflict_do_nothing(index_elements=[Playlist.url])
        async with self._scope() as session:
            result = await session.execute(stmt)
            inserted = bool(result.rowcount)
        if inserted:
            logger.info("Stored playlist %s (%s)", record.title, record.kind.value)
        return inserted

    async def update_playlist(self, url: str, **values) -> bool:
        async with self._scope() as session:
            result = await session.execute(
                update(Playlist).where(Playlist.url == url).values(**values)
            )
            return bool(result.rowcount)

    async def mark_refreshing(self, url: str) -> None:
        await self.update_playlist(url, is_refreshing=True, last_error=None)

    async def record_sync_failure(self, url: str, error: str) -> None:
        await self.update_playlist(url, is_refreshing=False, last_error=error)

    async def reset_refreshing_flags(self) -> int:
        """Clear `is_refreshing` flags left behind by an interrupted process."""
        async with self._scope() as session:
            result = await session.execute(
                update(Playlist).where(Playlist.is_refreshing.is_(True)).values(is_refreshing=False)
            )
            count = result.rowcount or 0
        if count:
            logger.warning("Reset %s stale refreshing flag(s)", count)
        return count

    async def delete_playlist(self, url: str) -> PlaylistRecord | None:
        """Remove a playlist with its channels, category flags and EPG links."""
        async with self._scope() as session:
            playlist = await session.get(Playlist, url)
            if playlist is None:
                return None
            record = _to_playlist_record(playlist, await self._epg_urls_for(session, url))

            await session.execute(delete(Channel).where(Channel.playlist_url == url))
            await session.execute(delete(PendingChannelFlag).where(PendingChannelFlag.playlist_url == url))
            await session.execute(delete(CategoryFlag).where(CategoryFlag.playlist_url == url))
            await session.execute(delete(playlist_epg_links).where(playlist_epg_links.c.playlist_url == url))
            await session.delete(playlist)

        logger.info("Deleted playlist %s", record.title)
        return record

    # Channels

    async def load_channels(self, playlist_url: str) -> dict[str, ChannelPayload]:
        async with self._scope() as session:
            result = await session.execute(
                select(Channel).where(Channel.playlist_url == playlist_url)
            )
            return {row.channel_id: _to_channel_payload(row) for row in result.scalars().all()}

    async def list_channels(self, playlist_url: str) -> list[ChannelPayload]:
        async with self._scope() as session:
            result = await session.execute(
                select(Channel)
                .where(Channel.playlist_url == playlist_url)
                .order_by(Channel.category, Channel.channel_id)
            )
            return [_to_channel_payload(row) for row in result.scalars().all()]

    async def get_channel(self, playlist_url: str, channel_id: str) -> ChannelPayload | None:
        async with self._scope() as session:
            row = await session.get(Channel, (playlist_url, channel_id))
            return _to_channel_payload(row) if row else None

    async def load_pending_flags(self, playlist_url: str) -> dict[str, tuple[bool, bool]]:
        async with self._scope() as session:
            result = await session.execute(
                select(PendingChannelFlag).where(PendingChannelFlag.playlist_url == playlist_url)
            )
            return {row.channel_id: (row.favorite, row.muted) for row in result.scalars().all()}

    async def set_channel_flag(self, playlist_url: str, channel_id: str, flag: str, value: bool) -> bool:
        if flag not in ("favorite", "muted"):
            raise ValueError(f"Unknown channel flag: {flag}")
        async with self._scope() as session:
            result = await session.execute(
                update(Channel)
                .where(Channel.playlist_url == playlist_url, Channel.channel_id == channel_id)
                .values({flag: value})
            )
            return bool(result.rowcount)

    async def commit_playlist_sync(
        self,
        playlist_url: str,
        merge: ChannelMergeResult,
        synced_at: datetime,
        epg_urls: Sequence[str] = (),
    ) -> None:
        """
        Persist a merged channel set in a single transaction.

        Existing rows keep their stored `favorite`/`muted` values; flags in the
        payload only apply to inserted rows.
        """
        async with self._scope() as session:
            await _upsert_channels(session, merge.channels)
            await _delete_channels(session, playlist_url, merge.removed_ids)

            if merge.new_categories:
                stmt = sqlite_insert(CategoryFlag).on_conflict_do_nothing(
                    index_elements=[CategoryFlag.playlist_url, CategoryFlag.category]
                )
                await session.execute(
                    stmt,
                    [
                        {"playlist_url": playlist_url, "category": category, "pinned": False, "hidden": False}
                        for category in merge.new_categories
                    ],
                )

            if epg_urls:
                await _link_epg_urls(session, playlist_url, epg_urls)

            await session.execute(
                delete(PendingChannelFlag).where(PendingChannelFlag.playlist_url == playlist_url)
            )
            await session.execute(
                update(Playlist)
                .where(Playlist.url == playlist_url)
                .values(last_sync_at=synced_at, is_refreshing=False, last_error=None)
            )

        logger.info(
            "Committed %s channels for playlist (%s removed, %s new categories)",
            len(merge.channels),
            len(merge.removed_ids),
            len(merge.new_categories),
        )

    # Category flags

    async def load_category_flags(self, playlist_url: str) -> dict[str, CategoryFlagRecord]:
        async with self._scope() as session:
            result = await session.execute(
                select(CategoryFlag).where(CategoryFlag.playlist_url == playlist_url)
            )
            return {row.category: _to_category_record(row) for row in result.scalars().all()}

    async def toggle_category_flag(
        self,
        playlist_url: str,
        category: str,
        flag: str,
    ) -> CategoryFlagRecord | None:
        """
        Flip `pinned` or `hidden` for a category present in the channel set.

        Returns the stored flag untouched (or None) when the category has no
        channels.
        """
        if flag not in ("pinned", "hidden"):
            raise ValueError(f"Unknown category flag: {flag}")

        async with self._scope() as session:
            present = await session.execute(
                select(Channel.channel_id)
                .where(Channel.playlist_url == playlist_url, Channel.category == category)
                .limit(1)
            )
            row = await session.get(CategoryFlag, (playlist_url, category))
            if present.first() is None:
                logger.debug("Category %r not in channel set, toggle ignored", category)
                return _to_category_record(row) if row else None

            if row is None:
                row = CategoryFlag(playlist_url=playlist_url, category=category, pinned=False, hidden=False)
                session.add(row)
            setattr(row, flag, not getattr(row, flag))
            await session.flush()
            return _to_category_record(row)

    # Backup

    async def list_category_flags(self) -> list[CategoryFlagRecord]:
        async with self._scope() as session:
            result = await session.execute(
                select(CategoryFlag).order_by(CategoryFlag.playlist_url, CategoryFlag.category)
            )
            return [_to_category_record(row) for row in result.scalars().all()]

    async def list_channel_flags(self) -> list[ChannelFlagRecord]:
        """Non-default channel flags, including ones restored but not yet synced."""
        async with self._scope() as session:
            channel_rows = await session.execute(
                select(Channel.playlist_url, Channel.channel_id, Channel.favorite, Channel.muted)
                .where((Channel.favorite.is_(True)) | (Channel.muted.is_(True)))
            )
            pending_rows = await session.execute(
                select(
                    PendingChannelFlag.playlist_url,
                    PendingChannelFlag.channel_id,
                    PendingChannelFlag.favorite,
                    PendingChannelFlag.muted,
                ).where((PendingChannelFlag.favorite.is_(True)) | (PendingChannelFlag.muted.is_(True)))
            )
            flags: dict[tuple[str, str], ChannelFlagRecord] = {}
            for playlist_url, channel_id, favorite, muted in pending_rows.all():
                flags[(playlist_url, channel_id)] = ChannelFlagRecord(playlist_url, channel_id, favorite, muted)
            # Synced channels take precedence over pending restores
            for playlist_url, channel_id, favorite, muted in channel_rows.all():
                flags[(playlist_url, channel_id)] = ChannelFlagRecord(playlist_url, channel_id, favorite, muted)
            return [flags[key] for key in sorted(flags)]

    async def apply_backup(
        self,
        playlists: Sequence[PlaylistRecord],
        category_flags: Sequence[CategoryFlagRecord],
        channel_flags: Sequence[ChannelFlagRecord],
        imported_at: datetime,
    ) -> ImportSummary:
        """
        Additively merge a decoded backup in one transaction.

        Playlists already present are kept as they are; flags already stored
        win over the backup, and only missing keys are inserted.
        """
        summary = ImportSummary()
        async with self._scope() as session:
            for record in playlists:
                if await session.get(Playlist, record.url) is not None:
                    summary.playlists_merged += 1
                else:
                    session.add(_to_playlist_row(record, imported_at))
                    summary.playlists_added += 1
                if record.epg_urls:
                    await session.flush()
                    await _link_epg_urls(session, record.url, record.epg_urls)
            await session.flush()

            for flag in category_flags:
                if await session.get(CategoryFlag, (flag.playlist_url, flag.category)) is not None:
                    continue
                session.add(
                    CategoryFlag(
                        playlist_url=flag.playlist_url,
                        category=flag.category,
                        pinned=flag.pinned,
                        hidden=flag.hidden,
                    )
                )
                summary.categories_added += 1

            for flag in channel_flags:
                key = (flag.playlist_url, flag.channel_id)
                if await session.get(Channel, key) is not None:
                    continue
                if await session.get(PendingChannelFlag, key) is not None:
                    continue
                session.add(
                    PendingChannelFlag(
                        playlist_url=flag.playlist_url,
                        channel_id=flag.channel_id,
                        favorite=flag.favorite,
                        muted=flag.muted,
                    )
                )
                summary.channel_flags_added += 1

        logger.info(
            "Backup applied: %s playlists added, %s merged, %s category flags, %s channel flags",
            summary.playlists_added,
            summary.playlists_merged,
            summary.categories_added,
            summary.channel_flags_added,
        )
        return summary

    # EPG

    async def all_epg_urls(self) -> list[str]:
        async with self._scope() as session:
            linked = await session.execute(select(playlist_epg_links.c.epg_url).distinct())
            known = await session.execute(select(EpgSource.url))
            return sorted(set(linked.scalars().all()) | set(known.scalars().all()))

    async def add_epg_link(self, epg_url: str, playlist_url: str) -> None:
        async with self._scope() as session:
            await _link_epg_urls(session, playlist_url, [epg_url])

    async def remove_epg_link(self, epg_url: str, playlist_url: str) -> bool:
        async with self._scope() as session:
            result = await session.execute(
                delete(playlist_epg_links).where(
                    playlist_epg_links.c.playlist_url == playlist_url,
                    playlist_epg_links.c.epg_url == epg_url,
                )
            )
            return bool(result.rowcount)

    async def delete_epg_source(self, epg_url: str) -> int:
        """Drop an EPG source with its programmes and playlist links."""
        async with self._scope() as session:
            result = await session.execute(delete(Programme).where(Programme.epg_url == epg_url))
            deleted = result.rowcount or 0
            await session.execute(delete(playlist_epg_links).where(playlist_epg_links.c.epg_url == epg_url))
            await session.execute(delete(EpgSource).where(EpgSource.url == epg_url))
        logger.info("Deleted EPG source with %s programmes", deleted)
        return deleted

    async def latest_programme_end(self, epg_url: str) -> datetime | None:
        async with self._scope() as session:
            result = await session.execute(
                select(func.max(Programme.stop_time)).where(Programme.epg_url == epg_url)
            )
            latest = result.scalar_one_or_none()
            return parse_iso8601_to_utc(latest) if latest else None

    async def load_programmes(self, epg_url: str) -> list[ProgrammePayload]:
        async with self._scope() as session:
            result = await session.execute(
                select(Programme)
                .where(Programme.epg_url == epg_url)
                .order_by(Programme.channel_id, Programme.start_time)
            )
            return [_to_programme_payload(row) for row in result.scalars().all()]

    async def replace_programmes(
        self,
        epg_url: str,
        programmes: Sequence[ProgrammePayload],
        synced_at: datetime,
    ) -> int:
        """Swap the stored programme snapshot of a source in one transaction."""
        payload = [
            {
                "epg_url": epg_url,
                "channel_id": programme.channel_id,
                "start_time": to_storage_string(programme.start_time),
                "stop_time": to_storage_string(programme.stop_time),
                "title": programme.title,
                "description": programme.description,
                "icon": programme.icon,
            }
            for programme in programmes
        ]

        async with self._scope() as session:
            await session.execute(delete(Programme).where(Programme.epg_url == epg_url))
            for start_index in range(0, len(payload), CHUNK_SIZE):
                await session.execute(
                    sqlite_insert(Programme),
                    payload[start_index:start_index + CHUNK_SIZE],
                )
            await _upsert_epg_source(session, epg_url, last_sync_at=synced_at, last_error=None)

        logger.info("Stored %s programmes", len(payload))
        return len(payload)

    async def record_epg_failure(self, epg_url: str, error: str) -> None:
        async with self._scope() as session:
            await _upsert_epg_source(session, epg_url, last_error=error)

    async def query_programmes(
        self,
        epg_urls: Iterable[str],
        channel_id: str,
        start: datetime,
        end: datetime,
    ) -> list[ProgrammePayload]:
        """Programmes of one guide channel overlapping [start, end)."""
        urls = list(epg_urls)
        if not urls:
            return []
        async with self._scope() as session:
            result = await session.execute(
                select(Programme)
                .where(
                    Programme.epg_url.in_(urls),
                    Programme.channel_id == channel_id,
                    Programme.stop_time > to_storage_string(start),
                    Programme.start_time < to_storage_string(end),
                )
                .order_by(Programme.start_time)
            )
            return [_to_programme_payload(row) for row in result.scalars().all()]

    async def _epg_urls_for(self, session: AsyncSession, playlist_url: str) -> list[str]:
        result = await session.execute(
            select(playlist_epg_links.c.epg_url)
            .where(playlist_epg_links.c.playlist_url == playlist_url)
            .order_by(playlist_epg_links.c.epg_url)
        )
        return list(result.scalars().all())

    async def _all_epg_links(self, session: AsyncSession) -> dict[str, list[str]]:
        result = await session.execute(
            select(playlist_epg_links.c.playlist_url, playlist_epg_links.c.epg_url)
            .order_by(playlist_epg_links.c.playlist_url, playlist_epg_links.c.epg_url)
        )
        links: dict[str, list[str]] = {}
        for playlist_url, epg_url in result.all():
            links.setdefault(playlist_url, []).append(epg_url)
        return links


async def _upsert_channels(session: AsyncSession, channels: Sequence[ChannelPayload]) -> None:
    if not channels:
        return

    stmt = sqlite_insert(Channel)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Channel.playlist_url, Channel.channel_id],
        set_={
            "title": stmt.excluded.title,
            "url": stmt.excluded.url,
            "cover": stmt.excluded.cover,
            "category": stmt.excluded.category,
            "epg_id": stmt.excluded.epg_id,
            "license_type": stmt.excluded.license_type,
            "license_key": stmt.excluded.license_key,
            "last_seen_at": stmt.excluded.last_seen_at,
        },
    )

    payload = [
        {
            "playlist_url": channel.playlist_url,
            "channel_id": channel.channel_id,
            "title": channel.title,
            "url": channel.url,
            "cover": channel.cover,
            "category": channel.category,
            "epg_id": channel.epg_id,
            "license_type": channel.license_type,
            "license_key": channel.license_key,
            "last_seen_at": channel.last_seen_at,
            "favorite": channel.favorite,
            "muted": channel.muted,
        }
        for channel in channels
    ]
    for start_index in range(0, len(payload), CHUNK_SIZE):
        await session.execute(stmt, payload[start_index:start_index + CHUNK_SIZE])


async def _delete_channels(session: AsyncSession, playlist_url: str, channel_ids: Sequence[str]) -> None:
    for start_index in range(0, len(channel_ids), CHUNK_SIZE):
        chunk = channel_ids[start_index:start_index + CHUNK_SIZE]
        await session.execute(
            delete(Channel).where(Channel.playlist_url == playlist_url, Channel.channel_id.in_(chunk))
        )


async def _link_epg_urls(session: AsyncSession, playlist_url: str, epg_urls: Iterable[str]) -> None:
    stmt = sqlite_insert(playlist_epg_links).on_conflict_do_nothing()
    await session.execute(
        stmt,
        [{"playlist_url": playlist_url, "epg_url": epg_url} for epg_url in epg_urls],
    )


async def _upsert_epg_source(session: AsyncSession, epg_url: str, **values) -> None:
    stmt = sqlite_insert(EpgSource).values(url=epg_url, **values)
    stmt = stmt.on_conflict_do_update(index_elements=[EpgSource.url], set_=values)
    await session.execute(stmt)


def _to_playlist_record(row: Playlist, epg_urls: list[str]) -> PlaylistRecord:
    credentials = None
    if row.xtream_base_url is not None:
        credentials = XtreamCredentials(
            base_url=row.xtream_base_url,
            username=row.xtream_username or "",
            password=row.xtream_password or "",
        )
    return PlaylistRecord(
        url=row.url,
        title=row.title,
        kind=SourceKind(row.kind),
        credentials=credentials,
        user_agent=row.user_agent,
        epg_urls=list(epg_urls),
        last_sync_at=ensure_utc(row.last_sync_at),
        is_refreshing=row.is_refreshing,
        last_error=row.last_error,
    )


def _to_playlist_row(record: PlaylistRecord, created_at: datetime) -> Playlist:
    credentials = record.credentials
    return Playlist(
        url=record.url,
        title=record.title,
        kind=record.kind.value,
        xtream_base_url=credentials.base_url if credentials else None,
        xtream_username=credentials.username if credentials else None,
        xtream_password=credentials.password if credentials else None,
        user_agent=record.user_agent,
        is_refreshing=False,
        created_at=created_at,
    )


def _to_channel_payload(row: Channel) -> ChannelPayload:
    return ChannelPayload(
        channel_id=row.channel_id,
        playlist_url=row.playlist_url,
        title=row.title,
        url=row.url,
        cover=row.cover,
        category=row.category,
        epg_id=row.epg_id,
        license_type=row.license_type,
        license_key=row.license_key,
        last_seen_at=ensure_utc(row.last_seen_at),
        favorite=row.favorite,
        muted=row.muted,
    )


def _to_category_record(row: CategoryFlag) -> CategoryFlagRecord:
    return CategoryFlagRecord(
        playlist_url=row.playlist_url,
        category=row.category,
        pinned=row.pinned,
        hidden=row.hidden,
    )


def _to_programme_payload(row: Programme) -> ProgrammePayload:
    return ProgrammePayload(
        channel_id=row.channel_id,
        start_time=parse_iso8601_to_utc(row.start_time),
        stop_time=parse_iso8601_to_utc(row.stop_time),
        title=row.title,
        description=row.description,
        icon=row.icon,
    )
