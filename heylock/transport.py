"""
HTTP transport to the Heylock API.

Thin wrapper around `httpx.AsyncClient`: builds URLs from settings, attaches
the agent key and logs one line per call. Status handling lives in
`heylock.responses`.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from .config import Settings, get_settings

logger = logging.getLogger("heylock")


class HeylockTransport:
    def __init__(
        self,
        agent_key: str,
        *,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.agent_key = agent_key
        self.settings = settings or get_settings()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self.settings.timeout)

    def url(self, path: str) -> str:
        return f"{self.settings.api_url}{path}"

    def _headers(self, auth: bool) -> Dict[str, str]:
        # The service expects the raw key, not a Bearer token.
        return {"Authorization": self.agent_key} if auth else {}

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        auth: bool = True,
    ) -> httpx.Response:
        start = time.monotonic()
        response = await self._client.request(method, self.url(path), json=json, headers=self._headers(auth))
        _log_call(method, path, response.status_code, (time.monotonic() - start) * 1000.0)
        return response

    async def verify_key(self) -> httpx.Response:
        """The key travels in the body here, so no Authorization header."""
        return await self.request("POST", self.settings.verify_path, json={"key": self.agent_key}, auth=False)

    @asynccontextmanager
    async def stream(self, path: str, json: Any) -> AsyncIterator[httpx.Response]:
        start = time.monotonic()
        async with self._client.stream("POST", self.url(path), json=json, headers=self._headers(True)) as response:
            _log_call("POST", path, response.status_code, (time.monotonic() - start) * 1000.0)
            yield response

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _log_call(method: str, path: str, status_code: int, latency_ms: float) -> None:
    logger.info(
        "request method=%s path=%s status=%s latency_ms=%.2f",
        method,
        path,
        status_code,
        latency_ms,
    )
