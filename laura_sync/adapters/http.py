"""HTTP adapter wrapping an aiohttp client session."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

import aiohttp

from ..core.errors import RequestTimeoutError, TransportError
from ..core.protocols import HttpResponse

LOGGER = logging.getLogger(__name__)


class HttpTransport:
    """Send a request, get a response.

    Every request is bounded by a timeout; failures surface as
    :class:`TransportError` so callers deal with a single error family
    regardless of what went wrong on the wire.
    """

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout

    @property
    def session(self) -> Optional[aiohttp.ClientSession]:
        return self._session

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=None)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        data: Optional[bytes] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        session = await self._ensure_session()
        limit = self._timeout if timeout is None else timeout

        try:
            async with asyncio.timeout(limit):
                async with session.request(
                    method,
                    url,
                    json=json,
                    data=data,
                    headers=dict(headers or {}),
                ) as response:
                    body = await response.read()
                    return HttpResponse(
                        status=response.status,
                        body=body,
                        headers=dict(response.headers),
                    )
        except asyncio.TimeoutError as exc:
            LOGGER.warning("%s %s timed out after %.1fs", method, _redact(url), limit)
            raise RequestTimeoutError(
                f"{method} {_redact(url)} timed out after {limit:.1f}s"
            ) from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"{method} {_redact(url)} failed: {exc}") from exc

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


def _redact(url: str) -> str:
    """Strip query strings, which may carry credentials, from logged URLs."""

    return url.split("?", 1)[0]
