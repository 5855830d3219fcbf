"""
SQLAlchemy ORM Models for the IPTV sync service

This module defines the database models for playlists, channels, category flags,
EPG sources and programmes.
"""
from datetime import datetime, timezone
from sqlalchemy import Boolean, Column, String, Table, Text, DateTime, Index, ForeignKey, Integer
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models"""
    pass


playlist_epg_links = Table(
    "playlist_epg_links",
    Base.metadata,
    Column("playlist_url", String, ForeignKey("playlists.url", ondelete="CASCADE"), primary_key=True),
    Column("epg_url", String, primary_key=True),
)


class Playlist(Base):
    """Subscribed playlist source"""
    __tablename__ = "playlists"

    url: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    xtream_base_url: Mapped[str | None] = mapped_column(String, nullable=True)
    xtream_username: Mapped[str | None] = mapped_column(String, nullable=True)
    xtream_password: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_refreshing: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    def __repr__(self) -> str:
        return f"<Playlist(url={self.url}, title={self.title}, kind={self.kind})>"


class Channel(Base):
    """Normalized channel of a playlist, with user flags"""
    __tablename__ = "channels"

    playlist_url: Mapped[str] = mapped_column(
        String,
        ForeignKey("playlists.url", ondelete="CASCADE"),
        primary_key=True,
    )
    channel_id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    url: Mapped[str] = mapped_column(String, nullable=False)
    cover: Mapped[str | None] = mapped_column(String, nullable=True)
    category: Mapped[str] = mapped_column(String, nullable=False, default="")
    epg_id: Mapped[str | None] = mapped_column(String, nullable=True)
    license_type: Mapped[str | None] = mapped_column(String, nullable=True)
    license_key: Mapped[str | None] = mapped_column(String, nullable=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    favorite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    muted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("idx_channels_playlist_category", "playlist_url", "category"),
    )

    def __repr__(self) -> str:
        return f"<Channel(channel_id={self.channel_id}, title={self.title}, playlist={self.playlist_url})>"


class PendingChannelFlag(Base):
    """User flags restored from a backup for channels not synced yet"""
    __tablename__ = "pending_channel_flags"

    playlist_url: Mapped[str] = mapped_column(
        String,
        ForeignKey("playlists.url", ondelete="CASCADE"),
        primary_key=True,
    )
    channel_id: Mapped[str] = mapped_column(String, primary_key=True)
    favorite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    muted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class CategoryFlag(Base):
    """User-controlled pinned/hidden state of a category"""
    __tablename__ = "category_flags"

    playlist_url: Mapped[str] = mapped_column(String, primary_key=True)
    category: Mapped[str] = mapped_column(String, primary_key=True)
    pinned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    hidden: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<CategoryFlag(playlist={self.playlist_url}, category={self.category}, "
            f"pinned={self.pinned}, hidden={self.hidden})>"
        )


class EpgSource(Base):
    """EPG source metadata"""
    __tablename__ = "epg_sources"

    url: Mapped[str] = mapped_column(String, primary_key=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class Programme(Base):
    """Programme model for storing EPG programme information"""
    __tablename__ = "programmes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    epg_url: Mapped[str] = mapped_column(String, nullable=False)
    channel_id: Mapped[str] = mapped_column(String, nullable=False)
    # ISO8601 UTC strings, lexicographically ordered
    start_time: Mapped[str] = mapped_column(String, nullable=False)
    stop_time: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    icon: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        Index("idx_programmes_source_channel_time", "epg_url", "channel_id", "start_time"),
    )

    def __repr__(self) -> str:
        return f"<Programme(id={self.id}, title={self.title}, channel={self.channel_id})>"
