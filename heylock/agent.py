"""
The Heylock agent.

One `Heylock` instance represents one configured agent on the Heylock service.
It owns the transcript, the visitor context, the usage counters and the
engagement throttle, and turns them into requests:

    async with Heylock("agent-key") as agent:
        agent.add_context_entry("Visitor opened the pricing page")
        reply = await agent.message("Which plan fits a small team?")

Initialization verifies the key and then loads the usage counters. It runs
once; an agent whose initialization failed stays failed and a new instance
has to be created.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from enum import Enum
from typing import Any, AsyncGenerator, Callable, Dict, Optional, Sequence, Tuple

import httpx
from pydantic import ValidationError

from .callbacks import CallbackRegistry, Unsubscribe
from .config import DEFAULT_AGENT_IDENTITY, MAX_MESSAGE_LENGTH, RATE_LIMIT_HEADER, AgentOptions, Settings, get_settings
from .context_store import ContextStore
from .errors import (
    AuthenticationError,
    ConnectionFailedError,
    HeylockError,
    InvalidArgumentError,
    NotInitializedError,
    ProtocolError,
    ServiceError,
)
from .history_store import MessageHistoryStore
from .models import ContextEntry, Message, ShouldEngageResult, SortResult, UsageRemaining
from .responses import (
    LIMITS_SCHEMA,
    MESSAGE_SCHEMA,
    REWRITE_SCHEMA,
    SHOULD_ENGAGE_SCHEMA,
    SORT_SCHEMA,
    VERIFY_KEY_SCHEMA,
    StatusOverrides,
    parse_json,
    raise_for_status,
    validate_body,
)
from .storage.kv_store import BaseStorage, StorageAdapter, UnavailableStorage, build_storage
from .streaming import MessageStream, iter_records
from .throttle import EngagementThrottle
from .transport import HeylockTransport
from .usage import USAGE_KINDS, UsageKind, UsageTracker

logger = logging.getLogger("heylock")

INITIALIZATION = "Agent initialization"
UNEXPECTED_ERROR = "an unexpected error occurred. Please ensure you are using the correct version of the package."
CONNECTION_ERROR = "something went wrong. Please check your internet connection and try again."
STREAM_FAILURE_NOTICE = "An error occurred while processing your request. Please try again later."
SORT_FALLBACK_WARNING = "Input array is invalid or too short to sort. Returning original array."

GREETING_PROMPT = "Greet the visitor in one short, friendly sentence. Encourage interaction. Sound human."
GREETING_INTERESTS_HINT = " Mention their interests or passions subtly."
GREETING_HISTORY_HINT = (
    " Take into account our previous conversation history to make the greeting more personalized and contextual."
)


class AgentState(str, Enum):
    UNINITIALIZED = "uninitialized"
    VERIFYING = "verifying"
    READY = "ready"
    FAILED = "failed"


def _wrap(operation: str, exc: Exception) -> HeylockError:
    """Bring any exception into the error taxonomy with an operation prefix."""
    if isinstance(exc, HeylockError):
        return exc
    if isinstance(exc, httpx.HTTPError):
        return ConnectionFailedError(operation, f"{CONNECTION_ERROR} Error details: {exc}")
    return HeylockError(operation, f"{UNEXPECTED_ERROR} Error details: {exc}")


class Heylock:
    def __init__(
        self,
        agent_key: str,
        *,
        use_storage: Optional[bool] = None,
        use_message_history: bool = True,
        suppress_warnings: Optional[bool] = None,
        agent_identity: str = DEFAULT_AGENT_IDENTITY,
        storage: Optional[BaseStorage] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
        throttle: Optional[EngagementThrottle] = None,
    ) -> None:
        if not isinstance(agent_key, str) or not agent_key.strip():
            raise InvalidArgumentError(INITIALIZATION, "agent_key must be a non-empty string.")

        try:
            self.options = AgentOptions(
                use_storage=use_storage,
                use_message_history=use_message_history,
                suppress_warnings=suppress_warnings,
                agent_identity=agent_identity,
            )
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            raise InvalidArgumentError(INITIALIZATION, f"invalid options ({details}).") from exc

        self.settings = settings or get_settings()
        self.agent_key = agent_key
        self.suppress_warnings = (
            self.options.suppress_warnings
            if self.options.suppress_warnings is not None
            else self.settings.suppress_warnings
        )
        self.use_message_history = self.options.use_message_history
        self.agent_identity = self.options.agent_identity

        if storage is None:
            storage = build_storage() if self.options.use_storage is not False else UnavailableStorage()
        self.storage = storage
        self.use_storage = self.options.use_storage if self.options.use_storage is not None else self.storage.available

        self._state = AgentState.UNINITIALIZED
        self._initializing: Optional[asyncio.Task] = None
        self.initialization_error: Optional[HeylockError] = None

        self._on_initialized = CallbackRegistry("on_initialized", self._warn)
        self._history = MessageHistoryStore(self._warn)
        self._context = ContextStore(self._warn, clock=clock)
        self._usage = UsageTracker()
        self.throttle = throttle or EngagementThrottle()
        self._transport = HeylockTransport(agent_key, settings=self.settings, http_client=http_client)

        if self.use_storage:
            self._context.persist_to(StorageAdapter(self.storage, self.agent_identity, self._warn))

    def _warn(self, message: str, *args: Any) -> None:
        if not self.suppress_warnings:
            logger.warning(message, *args)

    # State ----------------------------------------------------------------------

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self._state is AgentState.READY

    @property
    def usage_remaining(self) -> UsageRemaining:
        return self._usage.remaining

    @property
    def message_history(self) -> Tuple[Message, ...]:
        return self._history.messages

    @property
    def context(self) -> Tuple[ContextEntry, ...]:
        return self._context.entries

    # Callbacks ------------------------------------------------------------------

    def on_initialized(self, callback: Callable[[bool], Any]) -> Unsubscribe:
        """`callback(success)` runs once, when initialization settles."""
        return self._on_initialized.subscribe(callback)

    def on_message_history_change(self, callback: Callable[[Tuple[Message, ...]], Any]) -> Unsubscribe:
        return self._history.subscribe(callback)

    def on_context_change(self, callback: Callable[[Tuple[ContextEntry, ...]], Any]) -> Unsubscribe:
        return self._context.subscribe(callback)

    # Initialization -------------------------------------------------------------

    async def initialize(self) -> bool:
        """
        Verify the agent key and load usage counters.

        Safe to call more than once or concurrently: the sequence runs a single
        time and every caller gets its outcome. Failures are reported through
        the return value, `initialization_error` and the on_initialized
        callbacks rather than raised.
        """
        if self._state in (AgentState.READY, AgentState.FAILED):
            return self._state is AgentState.READY
        if self._initializing is None:
            self._initializing = asyncio.ensure_future(self._initialize())
        return await self._initializing

    async def _initialize(self) -> bool:
        self._state = AgentState.VERIFYING
        try:
            await self._verify_key()
        except Exception as exc:
            self.initialization_error = _wrap(INITIALIZATION, exc)
            self._state = AgentState.FAILED
            logger.error("%s", self.initialization_error)
            self._on_initialized.emit(False)
            return False

        self._state = AgentState.READY
        try:
            await self.fetch_usage_remaining()
        except HeylockError as exc:
            self._warn("Usage counters are unknown until the next metered call: %s", exc)

        self._on_initialized.emit(True)
        return True

    async def _verify_key(self) -> None:
        response = await self._transport.verify_key()

        if 500 <= response.status_code < 600:
            raise ServiceError(
                INITIALIZATION,
                "we are experiencing temporary server issues. Please try again later.",
                status_code=response.status_code,
            )
        if response.status_code != 200:
            raise ConnectionFailedError(INITIALIZATION, CONNECTION_ERROR, status_code=response.status_code)

        data = parse_json(INITIALIZATION, response)
        validate_body(INITIALIZATION, data, VERIFY_KEY_SCHEMA)
        if not data["valid"]:
            raise AuthenticationError(
                INITIALIZATION,
                "the provided agent key is invalid. Please verify your key and try again.",
                status_code=response.status_code,
            )

    def _require_ready(self, operation: str) -> None:
        if self._state is not AgentState.READY:
            raise NotInitializedError(
                operation, "agent is not initialized. Please wait for initialization to complete."
            )

    async def aclose(self) -> None:
        await self._transport.aclose()

    async def __aenter__(self) -> "Heylock":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # Message history ------------------------------------------------------------

    def add_message(self, content: str, role: str = "user") -> int:
        return self._history.add(content, role)

    def modify_message(self, index: int, content: str, role: Optional[str] = None) -> None:
        self._history.modify(index, content, role)

    def remove_message(self, index: int) -> None:
        self._history.remove(index)

    def set_message_history(self, messages: Sequence[Any]) -> None:
        self._history.replace(messages)

    def clear_message_history(self) -> None:
        self._history.clear()

    # Context --------------------------------------------------------------------

    def add_context_entry(self, content: str, timestamp: Optional[float] = None) -> int:
        return self._context.add(content, timestamp)

    def modify_context_entry(self, index: int, content: str, timestamp: Optional[float] = None) -> None:
        self._context.modify(index, content, timestamp)

    def remove_context_entry(self, index: int) -> None:
        self._context.remove(index)

    def set_context(self, entries: Sequence[Any]) -> None:
        self._context.replace(entries)

    def clear_context(self) -> None:
        self._context.clear()

    def get_context_string(self) -> str:
        return self._context.render()

    def clear_usage_remaining(self) -> None:
        self._usage.clear()

    # Requests -------------------------------------------------------------------

    @staticmethod
    def _check_text(operation: str, value: Any, name: str, *, allow_empty: bool = False) -> None:
        if not isinstance(value, str) or (not allow_empty and not value.strip()):
            qualifier = "a string" if allow_empty else "a non-empty string"
            raise InvalidArgumentError(operation, f"{name} must be {qualifier}.")
        if len(value) > MAX_MESSAGE_LENGTH:
            raise InvalidArgumentError(
                operation, f"{name} exceeds maximum allowed length of {MAX_MESSAGE_LENGTH} characters."
            )

    def _with_context(self, body: Dict[str, Any], use_context: bool) -> Dict[str, Any]:
        if use_context:
            body["context"] = self._context.render()
        return body

    def _message_payload(
        self,
        content: str,
        *,
        use_context: bool,
        stream: bool,
        exclude_index: Optional[int] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"content": content, "stream": stream}
        if self.use_message_history:
            body["history"] = self._history.as_payload(exclude_index)
        return self._with_context(body, use_context)

    async def _call(
        self,
        operation: str,
        path: str,
        body: Any = None,
        *,
        method: str = "POST",
        quota_kind: Optional[UsageKind] = None,
        schema: Optional[Dict[str, Any]] = None,
        overrides: Optional[StatusOverrides] = None,
    ) -> Any:
        """Send one request and return its validated JSON body."""
        try:
            response = await self._transport.request(method, path, json=body)
            if quota_kind is not None:
                self._usage.record(quota_kind, response.headers.get(RATE_LIMIT_HEADER))
            raise_for_status(
                operation,
                response.status_code,
                usage=self._usage,
                quota_kind=quota_kind,
                overrides=overrides,
            )
            data = parse_json(operation, response)
            if schema is not None:
                validate_body(operation, data, schema)
            return data
        except Exception as exc:
            raise _wrap(operation, exc) from exc

    async def fetch_usage_remaining(self) -> UsageRemaining:
        operation = "fetch_usage_remaining"
        self._require_ready(operation)

        data = await self._call(
            operation,
            self.settings.limits_path,
            method="GET",
            schema=LIMITS_SCHEMA,
            overrides={503: (ServiceError, "the server is busy.")},
        )
        limits = data["limits"]
        return self._usage.replace({kind: limits[kind]["remaining"] for kind in USAGE_KINDS})

    async def message(self, content: str, use_context: bool = True, save_to_history: bool = True) -> str:
        """Send `content` and return the reply."""
        operation = "message"
        self._require_ready(operation)
        self._check_text(operation, content, "content")

        if save_to_history:
            self._history.add(content, "user")

        body = self._message_payload(content, use_context=use_context, stream=False)
        data = await self._call(
            operation, self.settings.message_path, body, quota_kind="messages", schema=MESSAGE_SCHEMA
        )

        reply = data["message"]
        if save_to_history:
            self._history.add(reply, "assistant")
        return reply

    def message_stream(self, content: str, use_context: bool = True, save_to_history: bool = True) -> MessageStream:
        """
        Send `content` and stream the reply.

        Arguments are checked immediately; the request goes out when iteration
        starts. With `save_to_history` the user message and an assistant
        placeholder are added first, and the placeholder follows the reply as
        it arrives. If the request fails the placeholder gets a failure notice.
        """
        operation = "message_stream"
        self._require_ready(operation)
        self._check_text(operation, content, "content")
        return MessageStream(self._stream_fragments(content, use_context, save_to_history))

    async def _stream_fragments(
        self, content: str, use_context: bool, save_to_history: bool
    ) -> AsyncGenerator[str, None]:
        operation = "message_stream"
        # Located by identity on every update; the history may change mid-stream.
        placeholder: Optional[Message] = None
        exclude_index: Optional[int] = None
        if save_to_history:
            self._history.add(content, "user")
            exclude_index = self._history.add("", "assistant")
            placeholder = self._history.messages[exclude_index]

        body = self._message_payload(content, use_context=use_context, stream=True, exclude_index=exclude_index)
        full_text = ""
        try:
            async with self._transport.stream(self.settings.message_path, body) as response:
                self._usage.record("messages", response.headers.get(RATE_LIMIT_HEADER))
                raise_for_status(operation, response.status_code, usage=self._usage, quota_kind="messages")

                async for record in iter_records(response.aiter_lines()):
                    fragment = record.get("message")
                    if fragment and isinstance(fragment, str) and not record.get("done"):
                        full_text += fragment
                        if full_text.strip():
                            placeholder = self._update_placeholder(placeholder, full_text[:MAX_MESSAGE_LENGTH])
                        yield fragment
                    elif record.get("done"):
                        return
        except Exception as exc:
            self._update_placeholder(placeholder, STREAM_FAILURE_NOTICE)
            error = _wrap(operation, exc)
            if error.operation != operation:
                error = error.reraise_as(operation)
            raise error from exc

    def _update_placeholder(self, placeholder: Optional[Message], text: str) -> Optional[Message]:
        """Overwrite the streaming placeholder if it is still in the history."""
        if placeholder is None:
            return None
        index = self._history.locate(placeholder)
        if index is None:
            return None
        return self._history.modify(index, text, "assistant")

    async def greet(
        self,
        instructions: Optional[str] = None,
        use_context: bool = True,
        save_to_history: bool = True,
    ) -> str:
        """Ask the agent for an opening line, optionally steered by `instructions`."""
        operation = "greet"
        if instructions is not None:
            self._check_text(operation, instructions, "instructions")

        if instructions:
            prompt = (
                "Write a greeting message encouraging the visitor to interact with you. "
                f"Use instructions: {instructions}"
            )
        else:
            prompt = GREETING_PROMPT
            if use_context:
                prompt += GREETING_INTERESTS_HINT

        if self.use_message_history and len(self._history) > 0:
            prompt += GREETING_HISTORY_HINT

        try:
            reply = await self.message(prompt, use_context=True, save_to_history=False)
        except HeylockError as exc:
            raise exc.reraise_as(operation) from exc

        if save_to_history:
            self._history.add(reply, "assistant")
        return reply

    async def should_engage(self, instructions: Optional[str] = None) -> ShouldEngageResult:
        """
        Ask whether now is a good moment to start a conversation.

        Calls within the cooldown window return a fallback result without
        contacting the service. Not metered.
        """
        operation = "should_engage"
        self._require_ready(operation)

        if not self.throttle.try_acquire():
            warning = f"Throttling in effect ({self.throttle.cooldown_ms} ms). Please wait before calling again"
            self._warn("should_engage ignored: %s.", warning)
            return ShouldEngageResult(should_engage=False, reasoning="", warning=warning, fallback=True)

        if instructions is not None:
            self._check_text(operation, instructions, "instructions")

        body: Dict[str, Any] = {"context": self._context.render()}
        if instructions is not None:
            body["instructions"] = instructions

        data = await self._call(operation, self.settings.should_engage_path, body, schema=SHOULD_ENGAGE_SCHEMA)
        return ShouldEngageResult.model_validate(data)

    async def rewrite(self, content: str, instructions: Optional[str] = None, use_context: bool = True) -> str:
        """Rewrite `content` for the visitor and return the new text."""
        operation = "rewrite"
        self._require_ready(operation)
        self._check_text(operation, content, "content")
        if instructions is not None:
            self._check_text(operation, instructions, "instructions", allow_empty=True)

        body: Dict[str, Any] = {"text": content}
        if instructions is not None:
            body["instructions"] = instructions

        data = await self._call(
            operation,
            self.settings.rewrite_path,
            self._with_context(body, use_context),
            quota_kind="rewrites",
            schema=REWRITE_SCHEMA,
        )
        return data["text"]

    async def sort(self, array: Any, instructions: Optional[str] = None, use_context: bool = True) -> SortResult:
        """
        Order `array` by relevance to the visitor.

        Fewer than two elements (or something that is not a list) cannot be
        sorted; the input comes back unchanged with `fallback=True`.
        """
        operation = "sort"
        if isinstance(array, (str, bytes)) or not isinstance(array, Sequence) or len(array) < 2:
            items = list(array) if isinstance(array, Sequence) and not isinstance(array, (str, bytes)) else []
            return SortResult(
                array=tuple(items),
                indexes=tuple(range(len(items))),
                warning=SORT_FALLBACK_WARNING,
                fallback=True,
            )

        self._require_ready(operation)
        if instructions is not None:
            self._check_text(operation, instructions, "instructions", allow_empty=True)

        items = list(array)
        try:
            json.dumps(items)
        except (TypeError, ValueError) as exc:
            raise InvalidArgumentError(operation, "array must be JSON serializable.") from exc

        body: Dict[str, Any] = {"array": items}
        if instructions is not None:
            body["instructions"] = instructions

        data = await self._call(
            operation,
            self.settings.sort_path,
            self._with_context(body, use_context),
            quota_kind="sorts",
            schema=SORT_SCHEMA,
        )

        indexes = [int(index) for index in data["indexes"]]
        if len(indexes) != len(items):
            raise ProtocolError(
                operation,
                "response indexes length does not match input array length. Possible server bug or data corruption.",
                status_code=200,
            )
        if any(index >= len(items) for index in indexes):
            raise ProtocolError(operation, "response indexes are out of range for the input array.", status_code=200)

        return SortResult(
            array=tuple(items[index] for index in indexes),
            indexes=tuple(indexes),
            reasoning=data["reasoning"],
            fallback=bool(data.get("fallback", False)),
        )
