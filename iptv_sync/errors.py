"""
Error taxonomy for playlist ingestion.

Every public engine operation raises one of these instead of returning an
empty result, so callers can tell "no data" apart from "failed".
"""


class IngestError(Exception):
    """Base class for all ingestion failures."""


class FetchError(IngestError):
    """Network or timeout failure while retrieving a source."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason


class ParseError(IngestError):
    """Content-level failure. Never retried automatically."""


class MalformedContentError(ParseError):
    """The document is structurally invalid (bad JSON root, broken XML)."""


class EncodingError(ParseError):
    """The source returned content that is not text."""


class InvalidRequestError(IngestError):
    """The caller asked for something the source cannot provide."""


class PlaylistNotFoundError(IngestError):
    def __init__(self, url: str):
        super().__init__(f"Playlist not found: {url}")
        self.url = url


class ChannelNotFoundError(IngestError):
    def __init__(self, playlist_url: str, channel_id: str):
        super().__init__(f"Channel {channel_id} not found in playlist")
        self.playlist_url = playlist_url
        self.channel_id = channel_id


class PlaylistConflictError(IngestError):
    def __init__(self, url: str):
        super().__init__(f"Playlist already subscribed: {url}")
        self.url = url


__all__ = [
    "IngestError",
    "FetchError",
    "ParseError",
    "MalformedContentError",
    "EncodingError",
    "InvalidRequestError",
    "PlaylistNotFoundError",
    "ChannelNotFoundError",
    "PlaylistConflictError",
]
