"""
Streaming replies.

The service answers streaming requests with newline-delimited JSON records:
`{"message": "<fragment>", "done": false}` for each fragment and
`{"done": true}` at the end.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncGenerator, AsyncIterator, Dict

logger = logging.getLogger("heylock")


async def iter_records(lines: AsyncIterator[str]) -> AsyncIterator[Dict[str, Any]]:
    """Parse NDJSON lines, skipping blank and malformed records."""
    async for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("skipping malformed stream record: %.100s", line)
            continue
        if isinstance(record, dict):
            yield record


class MessageStream:
    """
    Async iterator over the fragments of one streamed reply.

    Nothing is sent until iteration starts. The stream can be consumed once;
    `text` holds everything received so far and is the full reply once
    iteration has finished.

        stream = agent.message_stream("Hi")
        async for fragment in stream:
            print(fragment, end="")
        reply = stream.text
    """

    def __init__(self, fragments: AsyncGenerator[str, None]) -> None:
        self._fragments = fragments
        self.text = ""
        self.finished = False

    def __aiter__(self) -> "MessageStream":
        return self

    async def __anext__(self) -> str:
        try:
            fragment = await self._fragments.__anext__()
        except StopAsyncIteration:
            self.finished = True
            raise
        self.text += fragment
        return fragment

    async def collect(self) -> str:
        """Consume the remaining fragments and return the full reply."""
        async for _ in self:
            pass
        return self.text

    async def aclose(self) -> None:
        """Stop early; the request is released but the transcript keeps what arrived."""
        await self._fragments.aclose()
