from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_fixed

from yield_engine.config import Settings, get_settings
from yield_engine.errors import TransientUpstreamError, UpstreamRejectedError

logger = logging.getLogger(__name__)


def is_transient(exc: BaseException) -> bool:
    """Timeouts, connection-level failures and 5xx are worth one more try. 4xx never."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))


class HttpClient:
    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        timeout = httpx.Timeout(self.settings.FETCH_TIMEOUT_SECONDS)
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self.settings.HTTP_MAX_ATTEMPTS)),
            wait=wait_fixed(self.settings.HTTP_RETRY_DELAY_SECONDS),
            retry=retry_if_exception(is_transient),
        )

    async def get(self, url: str, params: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        logger.debug(f"HTTP GET {url} params={params}")
        return await self._request("GET", url, params=params, headers=headers)

    async def post(self, url: str, json: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        logger.debug(f"HTTP POST {url} json_keys={list(json.keys()) if json else None}")
        return await self._request("POST", url, json=json, headers=headers)

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        resp = await self._client.request(method, url, **kwargs)
        resp.raise_for_status()
        return resp

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._retrying()(self._send, method, url, **kwargs)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status < 500:
                raise UpstreamRejectedError(f"{method} {url} rejected with {status}", status_code=status) from e
            raise TransientUpstreamError(f"{method} {url} failed with {status}") from e
        except httpx.HTTPError as e:
            raise TransientUpstreamError(f"{method} {url} failed: {type(e).__name__}: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()
