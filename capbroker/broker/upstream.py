"""Outbound HTTP client for third-party APIs (aiohttp)."""

import asyncio
import logging
from typing import Optional

import aiohttp
from yarl import URL

from capbroker.shared.errors import UpstreamExecutionError, UpstreamTimeoutError
from capbroker.shared.interfaces import IUpstreamClient
from capbroker.shared.models import ProxyRequest, ProxyResponse

logger = logging.getLogger(__name__)

_FORWARDED_RESPONSE_HEADERS = ("content-type", "retry-after", "x-ratelimit-remaining")


class UpstreamClient(IUpstreamClient):
    """
    One pooled aiohttp session for every service.

    URLs are sent exactly as built (`encoded=True`): signed query strings
    must reach the remote API byte-for-byte.
    """

    def __init__(self):
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def send(
        self,
        service: str,
        url: str,
        request: ProxyRequest,
        timeout_seconds: float,
    ) -> ProxyResponse:
        data = request.body.encode("utf-8") if request.body is not None else None
        try:
            async with self._get_session().request(
                request.method,
                URL(url, encoded=True),
                headers=request.headers,
                data=data,
                timeout=aiohttp.ClientTimeout(total=timeout_seconds),
                allow_redirects=False,
            ) as resp:
                body = await resp.text(errors="replace")
                headers = {
                    k: v for k, v in resp.headers.items()
                    if k.lower() in _FORWARDED_RESPONSE_HEADERS
                }
                return ProxyResponse(status=resp.status, body=body, headers=headers)
        except asyncio.TimeoutError as e:
            logger.warning(f"Upstream timeout: service={service} {request.method} after {timeout_seconds:g}s")
            raise UpstreamTimeoutError(service, timeout_seconds) from e
        except aiohttp.ClientError as e:
            logger.warning(f"Upstream failure: service={service} {request.method} ({type(e).__name__})")
            raise UpstreamExecutionError(service, type(e).__name__) from e

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
