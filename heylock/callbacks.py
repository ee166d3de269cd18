from __future__ import annotations

import itertools
from typing import Any, Callable, Dict

from .errors import InvalidArgumentError

Warn = Callable[..., None]
Unsubscribe = Callable[[], None]


class CallbackRegistry:
    """
    Ordered set of subscriber callbacks keyed by a registration token.

    `emit` iterates over a snapshot, so callbacks may subscribe or unsubscribe
    while being notified. A failing callback is reported through `warn` and
    never stops the remaining ones.
    """

    def __init__(self, name: str, warn: Warn):
        self.name = name
        self._warn = warn
        self._callbacks: Dict[int, Callable[..., Any]] = {}
        self._tokens = itertools.count()

    def subscribe(self, callback: Callable[..., Any]) -> Unsubscribe:
        if not callable(callback):
            raise InvalidArgumentError(self.name, "callback must be callable.")

        token = next(self._tokens)
        self._callbacks[token] = callback

        def unsubscribe() -> None:
            self._callbacks.pop(token, None)

        return unsubscribe

    def emit(self, *args: Any) -> None:
        for callback in list(self._callbacks.values()):
            try:
                callback(*args)
            except Exception as exc:
                self._warn("%s callback error: %s", self.name, exc)

    def __len__(self) -> int:
        return len(self._callbacks)
