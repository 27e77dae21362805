"""Shared aiohttp client with provider error translation.

Transport failures (connection errors, timeouts) become NetworkError;
non-2xx answers and undecodable payloads become ProviderError.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

import aiohttp

from neuranote.errors import NetworkError, ProviderError

logger = logging.getLogger(__name__)


def _reason_for(status: int) -> str:
    if status in (401, 403):
        return "invalid_credentials"
    if status == 429:
        return "rate_limited"
    if status >= 500:
        return "unavailable"
    return "rejected"


class HttpClient:
    """Lazily-created ``aiohttp.ClientSession`` owned by one provider."""

    def __init__(self, provider: str, timeout: int = 60, session: aiohttp.ClientSession | None = None) -> None:
        self._provider = provider
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        data: Any = None,
        headers: dict[str, str] | None = None,
    ) -> bytes:
        session = self._get_session()
        try:
            async with session.request(
                method, url, params=params, json=json_body, data=data, headers=headers
            ) as resp:
                body = await resp.read()
                if resp.status >= 400:
                    snippet = body[:200].decode("utf-8", errors="replace")
                    raise ProviderError(
                        f"{self._provider}: HTTP {resp.status}: {snippet}",
                        status=resp.status,
                        reason=_reason_for(resp.status),
                    )
                return body
        except asyncio.TimeoutError:
            raise NetworkError(f"{self._provider}: request timed out")
        except aiohttp.ClientError as e:
            raise NetworkError(f"{self._provider}: {e}")

    async def request_json(self, method: str, url: str, **kwargs: Any) -> Any:
        body = await self.request(method, url, **kwargs)
        if not body:
            return None
        try:
            return json.loads(body)
        except ValueError:
            raise ProviderError(
                f"{self._provider}: response is not valid JSON", reason="malformed_response"
            )

    async def fetch(self, url: str) -> bytes:
        """Read content from a durable URL (``file://`` or HTTP)."""
        parsed = urlparse(url)
        if parsed.scheme == "file":
            path = Path(unquote(parsed.path))
            try:
                return await asyncio.to_thread(path.read_bytes)
            except OSError as e:
                raise ProviderError(f"{self._provider}: cannot read {path}: {e}", reason="not_found")
        return await self.request("GET", url)

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
