"""
Handles the low-level streaming of package artifacts over HTTP, enforcing a
byte ceiling while the data arrives.
"""

import asyncio
import logging
import os
from collections.abc import Callable

import aiofiles
import aiohttp

from market_installer.exceptions import ArtifactTooLargeError, NetworkFailureError
from market_installer.utils.retry import CancelToken

log = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({408, 429})

ProgressCallback = Callable[[int, int | None], None]


def is_retryable_status(status: int) -> bool:
    return status >= 500 or status in RETRYABLE_STATUSES


class Downloader:
    """A streaming artifact downloader over a shared aiohttp connection pool."""

    CHUNK_SIZE = 65536  # 64 KB

    def __init__(
        self,
        max_connections: int = 8,
        timeout_seconds: float = 300.0,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.max_connections = max_connections
        self.timeout_seconds = timeout_seconds
        self.chunk_size = chunk_size
        self._session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()

    async def get_session(self) -> aiohttp.ClientSession:
        """
        Gets or creates the ClientSession used for all downloads.

        Only one connection pool exists per downloader; it is recreated if it
        was closed.
        """
        async with self._session_lock:
            if self._session and not self._session.closed:
                return self._session

            connector = aiohttp.TCPConnector(
                limit=self.max_connections * 2,
                limit_per_host=self.max_connections,
                ttl_dns_cache=600,
                enable_cleanup_closed=True,
            )
            timeout = aiohttp.ClientTimeout(
                total=self.timeout_seconds, sock_connect=15, sock_read=90
            )
            self._session = aiohttp.ClientSession(connector=connector, timeout=timeout)
            log.debug(f"Created download pool with limit_per_host={self.max_connections}")
        return self._session

    async def close(self) -> None:
        """Closes the connection pool."""
        async with self._session_lock:
            if self._session and not self._session.closed:
                await self._session.close()
                log.debug("Downloader connection pool closed.")
            self._session = None

    async def fetch(
        self,
        url: str,
        destination_path: str,
        max_bytes: int,
        progress: ProgressCallback | None = None,
        cancel_token: CancelToken | None = None,
    ) -> int:
        """
        Streams ``url`` into ``destination_path`` and returns the bytes written.

        The ceiling is enforced before each chunk is written, so the file on
        disk never grows past ``max_bytes``. Any failure removes the partial
        file.

        Raises:
            ArtifactTooLargeError: If the declared or actual size exceeds
                ``max_bytes``.
            NetworkFailureError: On connection errors, timeouts and HTTP
                errors; ``retryable`` tells the caller whether to try again.
            JobCancelledError: If ``cancel_token`` is cancelled mid-stream.
        """
        name = os.path.basename(destination_path)
        completed = False
        try:
            session = await self.get_session()
            async with session.get(url, allow_redirects=True) as response:
                if response.status >= 400:
                    raise NetworkFailureError(
                        f"Download failed with status {response.status}",
                        retryable=is_retryable_status(response.status),
                    )

                declared = response.content_length
                if declared is not None and declared > max_bytes:
                    raise ArtifactTooLargeError(
                        f"Artifact declares {declared} bytes, limit is {max_bytes}."
                    )

                bytes_downloaded = 0
                async with aiofiles.open(destination_path, "wb") as f:
                    async for chunk in response.content.iter_chunked(self.chunk_size):
                        if cancel_token:
                            cancel_token.raise_if_cancelled("download completed")
                        if bytes_downloaded + len(chunk) > max_bytes:
                            raise ArtifactTooLargeError(
                                f"Artifact exceeded {max_bytes} bytes while downloading."
                            )
                        await f.write(chunk)
                        bytes_downloaded += len(chunk)
                        if progress:
                            progress(bytes_downloaded, declared)

            completed = True
            log.debug(f"Downloaded '{name}' ({bytes_downloaded} bytes)")
            return bytes_downloaded
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkFailureError(
                f"Download of '{name}' failed: {e or type(e).__name__}"
            ) from e
        finally:
            if not completed:
                await asyncio.to_thread(_remove_partial, destination_path)


def _remove_partial(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
