"""
Message history store: the session transcript sent along with messages.

Kept in memory only; a transcript belongs to one session.
"""

from __future__ import annotations

from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple

from .callbacks import CallbackRegistry, Unsubscribe, Warn
from .config import MAX_MESSAGE_LENGTH
from .errors import IndexOutOfRangeError, InvalidArgumentError
from .models import ROLES, Message


class MessageHistoryStore:
    def __init__(self, warn: Warn):
        self._messages: List[Message] = []
        self.changes = CallbackRegistry("on_message_history_change", warn)

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def subscribe(self, callback: Callable[[Tuple[Message, ...]], Any]) -> Unsubscribe:
        return self.changes.subscribe(callback)

    def _check_index(self, operation: str, index: Any) -> None:
        if isinstance(index, bool) or not isinstance(index, int):
            raise InvalidArgumentError(operation, "index must be an integer.")
        if index < 0 or index >= len(self._messages):
            raise IndexOutOfRangeError(
                operation, f"index {index} is out of bounds for message history of length {len(self._messages)}."
            )

    @staticmethod
    def _check_length(operation: str, content: str) -> None:
        if len(content) > MAX_MESSAGE_LENGTH:
            raise InvalidArgumentError(
                operation, f"content exceeds maximum allowed length of {MAX_MESSAGE_LENGTH} characters."
            )

    def add(self, content: str, role: str = "user") -> int:
        """Append a message. Empty content is allowed (streaming placeholders)."""
        operation = "add_message"
        if not isinstance(content, str):
            raise InvalidArgumentError(operation, "content must be a string.")
        self._check_length(operation, content)
        if role not in ROLES:
            raise InvalidArgumentError(operation, "role must be either 'user' or 'assistant'.")

        self._messages.append(Message(content=content.strip(), role=role))
        self.changes.emit(self.messages)
        return len(self._messages) - 1

    def modify(self, index: int, content: str, role: Optional[str] = None) -> Message:
        operation = "modify_message"
        self._check_index(operation, index)
        if not isinstance(content, str) or not content.strip():
            raise InvalidArgumentError(operation, "content must be a non-empty string.")
        self._check_length(operation, content)
        if role is not None and role not in ROLES:
            raise InvalidArgumentError(operation, "role must be either 'user' or 'assistant'.")

        previous = self._messages[index]
        updated = Message(content=content.strip(), role=role or previous.role)
        self._messages[index] = updated
        self.changes.emit(self.messages)
        return updated

    def remove(self, index: int) -> None:
        self._check_index("remove_message", index)
        del self._messages[index]
        self.changes.emit(self.messages)

    def replace(self, messages: Sequence[Any]) -> None:
        """Replace the transcript; nothing changes unless all messages are valid."""
        operation = "set_message_history"
        if isinstance(messages, (str, bytes)) or not isinstance(messages, Sequence):
            raise InvalidArgumentError(operation, "message history must be a list.")

        replacement: List[Message] = []
        for index, raw in enumerate(messages):
            if isinstance(raw, Message):
                content, role = raw.content, raw.role
            elif isinstance(raw, Mapping):
                content, role = raw.get("content"), raw.get("role")
            else:
                content, role = None, None

            if not isinstance(content, str) or len(content) > MAX_MESSAGE_LENGTH or role not in ROLES:
                raise InvalidArgumentError(
                    operation,
                    f"message at index {index} is invalid. Each message must have a string 'content' "
                    f"(max length {MAX_MESSAGE_LENGTH}) and 'role' of either 'user' or 'assistant'.",
                )
            replacement.append(Message(content=content.strip(), role=role))

        self._messages = replacement
        self.changes.emit(self.messages)

    def clear(self) -> None:
        self._messages = []
        self.changes.emit(self.messages)

    def locate(self, message: Message) -> Optional[int]:
        """Current index of this exact message object, or None once it is gone."""
        for index, current in enumerate(self._messages):
            if current is message:
                return index
        return None

    def as_payload(self, exclude_index: Optional[int] = None) -> List[dict]:
        """Transcript in wire format, optionally without one entry."""
        return [message.model_dump() for index, message in enumerate(self._messages) if index != exclude_index]
