# scriptvet: Remote Script Trust Verification
# Copyright (C) 2026 scriptvet Project Contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Content fetcher: retrieve remote scripts concurrently with bounded fan-out.

Every fetch goes through one ``asyncio.Semaphore`` owned by the fetcher, so
a single fetcher shared across a recursive analysis caps in-flight requests
for the whole tree, independent of depth or branching.

Failures never raise: non-2xx responses, transport errors, timeouts and
oversized bodies all come back as ``FetchOutcome(error=...)``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

import httpx

from scriptvet import __version__
from scriptvet.crypto.hasher import hash_content
from scriptvet.exceptions import ScriptInputError
from scriptvet.models.assessment import FetchOutcome
from scriptvet.scanner.reference_validator import validate_reference

logger = logging.getLogger(__name__)

USER_AGENT = f"scriptvet/{__version__} (+remote-script-verifier)"
ACCEPT = "text/plain,*/*"

DEFAULT_FETCH_TIMEOUT = 15.0
DEFAULT_MAX_CONCURRENT_FETCHES = 8
DEFAULT_MAX_RESPONSE_BYTES = 5 * 1024 * 1024


class _ResponseTooLarge(Exception):
    pass


class ContentFetcher:
    """Async HTTP(S) fetcher producing one ``FetchOutcome`` per URL.

    Use as an async context manager::

        async with ContentFetcher(timeout=10) as fetcher:
            outcomes = await fetcher.fetch_all(urls)
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT_FETCHES,
        max_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._transport = transport
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> ContentFetcher:
        self._client = httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT, "Accept": ACCEPT},
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _read_body(self, url: str) -> tuple[int, str, bytes]:
        assert self._client is not None, "ContentFetcher used outside 'async with'"
        async with self._client.stream("GET", url) as response:
            if not response.is_success:
                return response.status_code, response.reason_phrase, b""
            chunks: list[bytes] = []
            size = 0
            async for chunk in response.aiter_bytes():
                size += len(chunk)
                if size > self.max_bytes:
                    raise _ResponseTooLarge()
                chunks.append(chunk)
            return response.status_code, response.reason_phrase, b"".join(chunks)

    async def fetch(self, url: str) -> FetchOutcome:
        """Fetch one URL. Never raises for network or HTTP failures."""
        async with self._semaphore:
            logger.debug("Fetching %s", url)
            try:
                status, reason, body = await asyncio.wait_for(
                    self._read_body(url), timeout=self.timeout
                )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                return self._failed(url, f"Request to {url} timed out after {self.timeout:g}s")
            except _ResponseTooLarge:
                return self._failed(url, f"Response from {url} exceeds {self.max_bytes} bytes")
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                detail = str(e) or type(e).__name__
                return self._failed(url, f"Request to {url} failed: {detail}")

        if not 200 <= status < 300:
            message = f"HTTP {status} {reason}".rstrip()
            return self._failed(url, f"{message} from {url}", status)

        return FetchOutcome(
            url=url,
            content=body.decode("utf-8", errors="replace"),
            digest=hash_content(body),
            status_code=status,
        )

    @staticmethod
    def _failed(url: str, error: str, status_code: Optional[int] = None) -> FetchOutcome:
        logger.warning("Fetch failed: %s", error)
        return FetchOutcome(url=url, error=error, status_code=status_code)

    async def fetch_all(self, urls: Iterable[str]) -> list[FetchOutcome]:
        """Fetch each distinct URL once, concurrently. Results are sorted by URL."""
        unique = sorted(set(urls))
        outcomes = await asyncio.gather(*(self.fetch(url) for url in unique))
        return list(outcomes)


async def fetch_script(
    url: str,
    *,
    timeout: float = DEFAULT_FETCH_TIMEOUT,
    max_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """Fetch a script to analyze from a user-supplied URL.

    Raises:
        ScriptInputError: if the URL is not fetchable, the fetch fails, or the
            script is empty.
    """
    reference = validate_reference(url.strip())
    if reference is None:
        raise ScriptInputError(f"Not a fetchable http(s) URL: {url}")

    async with ContentFetcher(timeout=timeout, max_bytes=max_bytes, transport=transport) as fetcher:
        outcome = await fetcher.fetch(reference.url)

    if outcome.error is not None:
        raise ScriptInputError(f"Could not fetch script: {outcome.error}")
    if not (outcome.content or "").strip():
        raise ScriptInputError(f"Script at {reference.url} is empty")
    return outcome.content or ""
