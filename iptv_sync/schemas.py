from pydantic import BaseModel, Field, field_validator, model_validator
from zoneinfo import ZoneInfo

from iptv_sync.services.sync_types import SourceKind
from iptv_sync.utils.timezone import parse_iso8601_to_utc, DateFormatError


class M3USubscribeRequest(BaseModel):
    """Subscribe to an M3U playlist"""
    title: str = Field("", description="Display title, defaults to the URL")
    url: str = Field(..., min_length=1, description="Playlist URL (http(s):// or file://)")


class XtreamSubscribeRequest(BaseModel):
    """Subscribe to one listing of an Xtream panel"""
    title: str = Field("", description="Display title, defaults to the panel URL")
    base_url: str = Field(..., min_length=1, description="Panel base URL (e.g., 'http://host:8080')")
    username: str = Field(..., min_length=1)
    password: str = Field(...)
    kind: SourceKind = Field(SourceKind.XTREAM_LIVE, description="One of 'xtream-live', 'xtream-vod', 'xtream-series'")

    @field_validator('kind')
    @classmethod
    def validate_kind(cls, v: SourceKind) -> SourceKind:
        if not v.is_xtream:
            raise ValueError(f"Invalid Xtream kind: {v.value}")
        return v


class PlaylistRef(BaseModel):
    url: str = Field(..., min_length=1, description="Playlist URL")


class PlaylistEditRequest(BaseModel):
    """Edit playlist title and/or user agent"""
    url: str = Field(..., min_length=1, description="Playlist URL")
    title: str | None = Field(None, min_length=1)
    user_agent: str | None = Field(None, description="Empty string clears the user agent")

    @model_validator(mode='after')
    def validate_has_changes(self):
        if self.title is None and self.user_agent is None:
            raise ValueError("Nothing to edit: provide title and/or user_agent")
        return self


class CategoryToggleRequest(BaseModel):
    playlist_url: str = Field(..., min_length=1)
    category: str = Field(..., description="Category name as it appears in the playlist")


class ChannelFlagRequest(BaseModel):
    playlist_url: str = Field(..., min_length=1)
    channel_id: str = Field(..., min_length=1)
    value: bool = True


class EPGFetchRequest(BaseModel):
    epg_url: str = Field(..., min_length=1, description="XMLTV source URL")
    force: bool = Field(False, description="Refetch even when the stored guide is still valid")


class EPGLinkRequest(BaseModel):
    epg_url: str = Field(..., min_length=1)
    playlist_url: str = Field(..., min_length=1)


class ProgrammeRequest(BaseModel):
    """Guide request for one channel of a playlist"""
    playlist_url: str = Field(..., min_length=1)
    channel_id: str = Field(..., min_length=1)
    timezone: str = Field(default="UTC", description="Timezone for response timestamps (e.g., 'UTC', 'Europe/London', 'America/New_York')")
    from_date: str = Field(..., description="ISO8601 datetime for start of EPG range (e.g., '2025-10-09T00:00:00Z')")
    to_date: str = Field(..., description="ISO8601 datetime for end of EPG range (e.g., '2025-10-10T00:00:00Z')")

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate timezone string"""
        if v == "UTC":
            return v
        try:
            ZoneInfo(v)
            return v
        except (KeyError, ValueError):
            raise ValueError(f"Invalid timezone: {v}. Must be a valid IANA timezone (e.g., 'Europe/London', 'America/New_York') or 'UTC'")

    @field_validator('from_date', 'to_date')
    @classmethod
    def validate_date_format(cls, v: str) -> str:
        """Validate ISO8601 datetime format using centralized parser"""
        try:
            parse_iso8601_to_utc(v)
            return v
        except DateFormatError:
            raise ValueError(f"Invalid datetime format: {v}. Must be valid ISO8601 format (e.g., '2025-10-09T00:00:00Z' or '2025-10-09T00:00:00+00:00')")

    @model_validator(mode='after')
    def validate_date_range(self):
        """Validate that from_date is before to_date"""
        from_dt = parse_iso8601_to_utc(self.from_date)
        to_dt = parse_iso8601_to_utc(self.to_date)

        if from_dt >= to_dt:
            raise ValueError(f"from_date ({self.from_date}) must be before to_date ({self.to_date})")

        return self


class PlaylistResponse(BaseModel):
    """Subscribed playlist with sync state"""
    url: str
    title: str
    kind: SourceKind
    user_agent: str | None = None
    epg_urls: list[str] = Field(default_factory=list)
    channel_count: int = 0
    last_sync_at: str | None = Field(None, description="ISO8601 UTC time of the last successful sync")
    is_refreshing: bool = False
    last_error: str | None = None


class CategoryFlagResponse(BaseModel):
    playlist_url: str
    category: str
    pinned: bool
    hidden: bool


class EpisodeResponse(BaseModel):
    episode_id: str
    season: int
    episode_num: int
    title: str
    url: str


class ProgramResponse(BaseModel):
    """Single program data"""
    start_time: str
    stop_time: str
    title: str
    description: str | None
    icon: str | None = None


class GuideResponse(BaseModel):
    """Guide data response"""
    timestamp: str
    timezone: str = Field(..., description="Timezone used for all timestamps in response")
    playlist_url: str
    channel_id: str
    total_programs: int
    programs: list[ProgramResponse]


class ErrorDetail(BaseModel):
    """Standard error detail"""
    code: str = Field(..., description="Error code (e.g., 'FETCH_FAILED', 'PLAYLIST_NOT_FOUND')")
    message: str = Field(..., description="Human-readable error message")
    context: dict | None = Field(None, description="Additional context about the error")


class StandardErrorResponse(BaseModel):
    """Standardized error response for engine failures"""
    status: str = Field("error", description="Status indicator")
    timestamp: str = Field(..., description="ISO8601 timestamp of error")
    error: ErrorDetail = Field(..., description="Error details")
