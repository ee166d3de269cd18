"""
Context store: ordered, timestamped facts about the visitor.

Entries are rendered into a single string (`render`) that is sent along with
requests so the service can personalize its answers. Every mutation notifies
subscribers with the new snapshot; persistence is one such subscriber.
"""

from __future__ import annotations

import json
import math
import time
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple

from .callbacks import CallbackRegistry, Unsubscribe, Warn
from .config import MAX_CONTEXT_ENTRY_LENGTH
from .errors import IndexOutOfRangeError, InvalidArgumentError
from .models import ContextEntry
from .storage.kv_store import StorageAdapter

STORAGE_NAME = "context"


def format_time_ago(timestamp: float, now: float) -> str:
    """Human readable age of `timestamp` relative to `now` (both in seconds)."""
    elapsed = now - timestamp
    if elapsed < 0:
        return "in the future"

    seconds = int(elapsed)
    if seconds < 1:
        return "now"
    if seconds < 60:
        return _ago(seconds, "second")

    minutes = seconds // 60
    if minutes < 60:
        return _ago(minutes, "minute")

    hours = minutes // 60
    if hours < 24:
        return _ago(hours, "hour")

    return _ago(hours // 24, "day")


def _ago(amount: int, unit: str) -> str:
    return f"{amount} {unit}{'' if amount == 1 else 's'} ago"


def _is_valid_timestamp(timestamp: Any) -> bool:
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        return False
    return math.isfinite(timestamp) and timestamp >= 0


def _is_valid_content(content: Any) -> bool:
    return isinstance(content, str) and bool(content.strip()) and len(content) <= MAX_CONTEXT_ENTRY_LENGTH


def _entry_fields(raw: Any) -> Tuple[Any, Any]:
    if isinstance(raw, ContextEntry):
        return raw.content, raw.timestamp
    if isinstance(raw, Mapping):
        return raw.get("content"), raw.get("timestamp")
    return None, None


class ContextStore:
    def __init__(self, warn: Warn, clock: Callable[[], float] = time.time):
        self._entries: List[ContextEntry] = []
        self._warn = warn
        self._clock = clock
        self.changes = CallbackRegistry("on_context_change", warn)

    @property
    def entries(self) -> Tuple[ContextEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def subscribe(self, callback: Callable[[Tuple[ContextEntry, ...]], Any]) -> Unsubscribe:
        return self.changes.subscribe(callback)

    # Validation -----------------------------------------------------------------

    def _check_content(self, operation: str, content: Any) -> None:
        if not isinstance(content, str) or not content.strip():
            raise InvalidArgumentError(operation, "content must be a non-empty string.")
        if len(content) > MAX_CONTEXT_ENTRY_LENGTH:
            raise InvalidArgumentError(
                operation,
                f"content exceeds maximum allowed length of {MAX_CONTEXT_ENTRY_LENGTH} characters.",
            )

    def _check_timestamp(self, operation: str, timestamp: Any) -> None:
        if timestamp is None:
            return
        if not _is_valid_timestamp(timestamp):
            raise InvalidArgumentError(operation, "timestamp must be a finite, non-negative number if provided.")
        if timestamp > self._clock():
            self._warn("%s warning: timestamp is in the future. This may lead to unexpected behavior.", operation)

    def _check_index(self, operation: str, index: Any) -> None:
        if isinstance(index, bool) or not isinstance(index, int):
            raise InvalidArgumentError(operation, "index must be an integer.")
        if index < 0 or index >= len(self._entries):
            raise IndexOutOfRangeError(
                operation, f"index {index} is out of bounds for context of length {len(self._entries)}."
            )

    # Mutations ------------------------------------------------------------------

    def add(self, content: str, timestamp: Optional[float] = None) -> int:
        operation = "add_context_entry"
        self._check_content(operation, content)
        self._check_timestamp(operation, timestamp)

        self._entries.append(
            ContextEntry(content=content.strip(), timestamp=self._clock() if timestamp is None else timestamp)
        )
        self._notify()
        return len(self._entries) - 1

    def modify(self, index: int, content: str, timestamp: Optional[float] = None) -> None:
        operation = "modify_context_entry"
        self._check_index(operation, index)
        self._check_content(operation, content)
        self._check_timestamp(operation, timestamp)

        previous = self._entries[index]
        self._entries[index] = ContextEntry(
            content=content.strip(),
            timestamp=previous.timestamp if timestamp is None else timestamp,
        )
        self._notify()

    def remove(self, index: int) -> None:
        self._check_index("remove_context_entry", index)
        del self._entries[index]
        self._notify()

    def replace(self, entries: Sequence[Any]) -> None:
        """Replace every entry; nothing changes unless all entries are valid."""
        operation = "set_context"
        if isinstance(entries, (str, bytes)) or not isinstance(entries, Sequence):
            raise InvalidArgumentError(operation, "entries must be a list.")

        now = self._clock()
        replacement: List[ContextEntry] = []
        for index, raw in enumerate(entries):
            content, timestamp = _entry_fields(raw)
            if not _is_valid_content(content) or (timestamp is not None and not _is_valid_timestamp(timestamp)):
                raise InvalidArgumentError(
                    operation,
                    f"entry at index {index} is invalid. Each entry must have a non-empty string 'content' "
                    f"(max length {MAX_CONTEXT_ENTRY_LENGTH}) and an optional finite, non-negative 'timestamp'.",
                )
            if timestamp is not None and timestamp > now:
                self._warn("%s warning: timestamp is in the future. This may lead to unexpected behavior.", operation)
            replacement.append(ContextEntry(content=content.strip(), timestamp=now if timestamp is None else timestamp))

        self._entries = replacement
        self._notify()

    def clear(self) -> None:
        self._entries = []
        self._notify()

    def render(self) -> str:
        now = self._clock()
        return "".join(f"{entry.content} {format_time_ago(entry.timestamp, now)}. " for entry in self._entries)

    def _notify(self) -> None:
        self.changes.emit(self.entries)

    # Persistence ----------------------------------------------------------------

    def persist_to(self, adapter: StorageAdapter) -> Unsubscribe:
        """Restore previously saved entries, then save on every change."""
        self.restore(adapter.get_item(STORAGE_NAME))
        return self.subscribe(
            lambda entries: adapter.set_item(STORAGE_NAME, [entry.model_dump() for entry in entries])
        )

    def restore(self, serialized: Optional[str]) -> bool:
        """
        Load entries from a serialized JSON array.

        Invalid data is discarded as a whole with a warning; subscribers are not
        notified since nothing changed from their point of view.
        """
        if not serialized:
            return False

        try:
            parsed = json.loads(serialized)
        except (json.JSONDecodeError, TypeError):
            self._warn("Failed to parse stored context. Context will not be restored.")
            return False

        if not isinstance(parsed, list) or not all(
            isinstance(raw, dict)
            and _is_valid_content(raw.get("content"))
            and (raw.get("timestamp") is None or _is_valid_timestamp(raw.get("timestamp")))
            for raw in parsed
        ):
            self._warn("Stored context is invalid. Context will not be restored.")
            return False

        now = self._clock()
        self._entries = [
            ContextEntry(
                content=raw["content"].strip(),
                timestamp=now if raw.get("timestamp") is None else raw["timestamp"],
            )
            for raw in parsed
        ]
        return True
