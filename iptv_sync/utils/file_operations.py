"""
Fetch utilities

This module retrieves playlist, Xtream and XMLTV content over HTTP or from
local `file://` URLs.
"""
import asyncio
import logging
from pathlib import Path
from typing import Protocol
from urllib.parse import unquote, urlsplit

import aiofiles
import httpx

from iptv_sync.errors import FetchError
from iptv_sync.utils.url_helpers import sanitize_url_for_logging


logger = logging.getLogger(__name__)


class Fetcher(Protocol):
    async def fetch(self, url: str, user_agent: str | None = None) -> bytes:
        ...


class HttpFetcher:
    """
    Fetch raw bytes for a URL

    Retries on transient network errors (timeouts, connection errors, 5xx)
    up to `max_retries` attempts in total. Does NOT retry on 4xx HTTP errors.
    Every failure surfaces as FetchError.
    """

    def __init__(
        self,
        timeout: float = 60.0,
        max_retries: int = 1,
        backoff_factor: float = 2.0,
        default_user_agent: str | None = None,
    ) -> None:
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff_factor = backoff_factor
        self.default_user_agent = default_user_agent

    async def fetch(self, url: str, user_agent: str | None = None) -> bytes:
        if url.startswith("file://"):
            return await read_local_file(url)
        return await self._download(url, user_agent or self.default_user_agent)

    async def _download(self, url: str, user_agent: str | None) -> bytes:
        safe_url = sanitize_url_for_logging(url)
        logger.info(f"Downloading {safe_url}...")

        headers = {"User-Agent": user_agent} if user_agent else None
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                    response = await client.get(url, headers=headers)
                    response.raise_for_status()

                    size_mb = len(response.content) / (1024 * 1024)
                    logger.info(f"Downloaded {size_mb:.2f} MB from {safe_url}")
                    return response.content

            except (httpx.TimeoutException, httpx.TransportError) as e:
                # Transient network errors - retry
                last_error = e
                if attempt < self.max_retries - 1:
                    wait_time = self.backoff_factor ** attempt
                    logger.warning(
                        f"Download attempt {attempt + 1}/{self.max_retries} failed (transient error): {type(e).__name__}. "
                        f"Retrying in {wait_time:.1f}s..."
                    )
                    await asyncio.sleep(wait_time)
                else:
                    logger.error(f"Download of {safe_url} failed after {self.max_retries} attempt(s): {type(e).__name__}")

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if 400 <= status < 500:
                    logger.error(f"HTTP {status} (client error) for {safe_url}")
                    raise FetchError(safe_url, f"HTTP {status}") from e

                last_error = e
                if attempt < self.max_retries - 1:
                    wait_time = self.backoff_factor ** attempt
                    logger.warning(
                        f"Download attempt {attempt + 1}/{self.max_retries} failed "
                        f"(HTTP {status} server error). Retrying in {wait_time:.1f}s..."
                    )
                    await asyncio.sleep(wait_time)
                else:
                    logger.error(f"Download of {safe_url} failed after {self.max_retries} attempt(s) (HTTP {status})")

        reason = _describe(last_error) if last_error else "no attempt made"
        raise FetchError(safe_url, reason) from last_error


async def read_local_file(url: str) -> bytes:
    """Read a `file://` URL, mapping OS errors to FetchError."""
    path = Path(unquote(urlsplit(url).path))
    try:
        async with aiofiles.open(path, "rb") as f:
            return await f.read()
    except (OSError, PermissionError) as e:
        logger.error(f"Failed to read local source {path}: {e}")
        raise FetchError(url, str(e)) from e


def _describe(error: Exception) -> str:
    if isinstance(error, httpx.HTTPStatusError):
        return f"HTTP {error.response.status_code}"
    if isinstance(error, httpx.TimeoutException):
        return "timed out"
    return f"{type(error).__name__}: {error}" if str(error) else type(error).__name__
