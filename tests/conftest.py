"""
Shared fixtures: a fake Heylock service and an agent factory wired to it.

The fake service is a FastAPI app served in-process through
httpx.ASGITransport, so the agent goes through its real HTTP code path.
Replies are queued per endpoint; when a queue is empty the endpoint
answers with its default reply.
"""

from __future__ import annotations

import json
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from heylock.agent import Heylock
from heylock.config import Settings
from heylock.storage.kv_store import UnavailableStorage


@dataclass
class Reply:
    status: int = 200
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    # When set, the body is streamed as these text chunks instead of JSON.
    chunks: Optional[List[str]] = None


@dataclass
class Call:
    endpoint: str
    method: str
    headers: Dict[str, str]
    payload: Any


DEFAULT_LIMITS = {
    "limits": {
        "messages": {"remaining": 10},
        "sorts": {"remaining": 5},
        "rewrites": {"remaining": 7},
    }
}


def _default_replies() -> Dict[str, Reply]:
    return {
        "verify": Reply(body={"valid": True}),
        "limits": Reply(body=DEFAULT_LIMITS),
        "message": Reply(body={"message": "Hello there"}),
        "should-engage": Reply(body={"shouldEngage": True, "reasoning": "Visitor is idle", "fallback": False}),
        "rewrite": Reply(body={"text": "Rewritten text"}),
        "sort": Reply(body={"indexes": [1, 0], "reasoning": "Second is better"}),
    }


class FakeService:
    def __init__(self) -> None:
        self.calls: List[Call] = []
        self.defaults = _default_replies()
        self._queued: Dict[str, Deque[Reply]] = defaultdict(deque)
        self.app = self._build_app()

    def queue(
        self,
        endpoint: str,
        status: int = 200,
        body: Any = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        chunks: Optional[List[str]] = None,
    ) -> None:
        self._queued[endpoint].append(Reply(status=status, body=body, headers=headers or {}, chunks=chunks))

    def calls_to(self, endpoint: str) -> List[Call]:
        return [call for call in self.calls if call.endpoint == endpoint]

    def _next_reply(self, endpoint: str) -> Reply:
        if self._queued[endpoint]:
            return self._queued[endpoint].popleft()
        return self.defaults[endpoint]

    async def _handle(self, endpoint: str, request: Request) -> Response:
        raw = await request.body()
        payload = json.loads(raw) if raw else None
        self.calls.append(Call(endpoint, request.method, dict(request.headers), payload))

        reply = self._next_reply(endpoint)
        if reply.chunks is not None:
            chunks = list(reply.chunks)

            async def body():
                for chunk in chunks:
                    yield chunk.encode("utf-8")

            return StreamingResponse(
                body(),
                status_code=reply.status,
                headers=reply.headers,
                media_type="application/x-ndjson",
            )
        if isinstance(reply.body, str):
            return Response(content=reply.body, status_code=reply.status, headers=reply.headers, media_type="text/plain")
        return JSONResponse(status_code=reply.status, content=reply.body, headers=reply.headers)

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="Fake Heylock API")

        @app.post("/api/internal/verifyKey")
        async def verify_key(request: Request) -> Response:
            return await self._handle("verify", request)

        @app.get("/api/v1/limits")
        async def limits(request: Request) -> Response:
            return await self._handle("limits", request)

        @app.post("/api/v1/message")
        async def message(request: Request) -> Response:
            return await self._handle("message", request)

        @app.post("/api/v1/should-engage")
        async def should_engage(request: Request) -> Response:
            return await self._handle("should-engage", request)

        @app.post("/api/v1/rewrite")
        async def rewrite(request: Request) -> Response:
            return await self._handle("rewrite", request)

        @app.post("/api/v1/sort")
        async def sort(request: Request) -> Response:
            return await self._handle("sort", request)

        return app


@pytest.fixture
def service() -> FakeService:
    return FakeService()


@pytest.fixture
def make_agent(service: FakeService):
    """
    Factory building agents that talk to the fake service.

    Storage defaults to the unavailable backend and warnings are suppressed
    unless a test asks otherwise.
    """

    def factory(agent_key: str = "KEY", **kwargs: Any) -> Heylock:
        kwargs.setdefault("suppress_warnings", True)
        kwargs.setdefault("storage", UnavailableStorage())
        kwargs.setdefault("settings", Settings())
        http_client = kwargs.pop("http_client", None) or httpx.AsyncClient(
            transport=httpx.ASGITransport(app=service.app)
        )
        return Heylock(agent_key, http_client=http_client, **kwargs)

    return factory
