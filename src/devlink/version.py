"""Protocol version lookup with a last-known-good fallback.

The protocol client needs the current web-client version to handshake.
Fetching it is best-effort: on timeout or any fetch error the fallback
constant is used so a linking session never fails for this reason.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)


class VersionFetcher:
    """Fetch the protocol version from a JSON document.

    The document looks like ``{"version": [2, 3000, 1015901307]}``.
    """

    def __init__(
        self,
        url: str,
        fallback: list[int] | tuple[int, ...],
        timeout: float = 5.0,
        http_session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize fetcher.

        Args:
            url: Version document URL.
            fallback: Version used when the fetch fails.
            timeout: Upper bound for the whole fetch (seconds).
            http_session: Optional aiohttp session (for testing).
        """
        self._url = url
        self._fallback = tuple(fallback)
        self._timeout = timeout
        self._session = http_session
        self._owns_session = http_session is None

    @property
    def fallback(self) -> tuple[int, ...]:
        """The last-known-good version."""
        return self._fallback

    async def fetch(self) -> tuple[int, ...]:
        """Get the protocol version, never raising.

        Returns:
            Fetched version, or the fallback on timeout or error.
        """
        try:
            return await asyncio.wait_for(self._fetch(), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Version fetch timed out after {self._timeout}s, "
                f"using fallback {self._fallback}"
            )
        except Exception as e:
            logger.warning(f"Version fetch failed ({e}), using fallback {self._fallback}")
        return self._fallback

    async def _fetch(self) -> tuple[int, ...]:
        if self._session is None:
            self._session = aiohttp.ClientSession()

        async with self._session.get(
            self._url,
            timeout=aiohttp.ClientTimeout(total=self._timeout),
        ) as resp:
            resp.raise_for_status()
            data = await resp.json(content_type=None)

        version = data.get("version") if isinstance(data, dict) else None
        if (
            not isinstance(version, list)
            or not version
            or not all(isinstance(part, int) for part in version)
        ):
            raise ValueError(f"Malformed version document: {data!r}")

        logger.debug(f"Fetched protocol version {version}")
        return tuple(version)

    async def close(self) -> None:
        """Close the HTTP session if owned."""
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None
