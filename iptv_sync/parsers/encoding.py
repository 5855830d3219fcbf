import logging

from iptv_sync.errors import EncodingError

logger = logging.getLogger(__name__)


def decode_content(content: bytes | str) -> str:
    """
    Decode network-supplied content as text.

    UTF-8 with an optional BOM is the only accepted encoding; playlists and
    XMLTV documents in the wild are practically always UTF-8.

    Raises:
        EncodingError: If the bytes are not text
    """
    if isinstance(content, str):
        text = content.removeprefix("\ufeff")
    else:
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            logger.warning("Content is not valid UTF-8 (byte offset %s)", exc.start)
            raise EncodingError(f"Content is not UTF-8 text: {exc.reason}") from exc

    if "\x00" in text:
        raise EncodingError("Content contains NUL bytes and is not text")
    return text
