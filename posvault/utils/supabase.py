"""Shared aiohttp plumbing for the Supabase REST clients.

Storage (``/storage/v1``) and PostgREST (``/rest/v1``) share the same
authentication headers and error handling; subclasses only build URLs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import aiohttp

from posvault.errors import RemoteError

logger = logging.getLogger(__name__)


class SupabaseClient:
    """Base class for Supabase REST clients.

    Every request either returns the decoded body or raises
    :class:`RemoteError` carrying the HTTP status when there is one.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.name = name
        self._base = base_url.rstrip("/")
        self._key = api_key
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._call_count = 0
        self._error_count = 0

    @property
    def base_url(self) -> str:
        return self._base

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "apikey": self._key,
                    "Authorization": f"Bearer {self._key}",
                }
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, method: str, url: str, raw: bool = False, **kwargs: Any) -> Any:
        """Send one request.

        Returns bytes when *raw* is set or the response is not JSON, the
        decoded JSON body otherwise (``None`` for an empty body).
        """
        self._call_count += 1
        session = await self._get_session()
        try:
            async with session.request(method, url, timeout=self._timeout, **kwargs) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    self._error_count += 1
                    raise RemoteError(
                        f"{self.name} {method} {resp.url.path} returned {resp.status}: {body[:200]}",
                        status=resp.status,
                    )
                if raw:
                    return await resp.read()
                body = await resp.read()
                if not body:
                    return None
                if resp.content_type == "application/json":
                    return await resp.json()
                return body
        except aiohttp.ClientError as exc:
            self._error_count += 1
            raise RemoteError(f"{self.name} {method} failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            self._error_count += 1
            raise RemoteError(f"{self.name} {method} timed out") from exc

    def get_stats(self) -> dict:
        return {
            "client": self.name,
            "calls": self._call_count,
            "errors": self._error_count,
        }
