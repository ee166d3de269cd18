from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .config import SHOULD_ENGAGE_THROTTLING_SECONDS


@dataclass
class EngagementThrottle:
    """
    Cooldown gate keyed on attempt time.

    A granted attempt starts a new window whether or not the request that
    follows succeeds; a refused attempt leaves the window untouched.
    """

    cooldown_seconds: float = SHOULD_ENGAGE_THROTTLING_SECONDS
    clock: Callable[[], float] = field(default=time.monotonic)
    last_called: Optional[float] = None

    def try_acquire(self) -> bool:
        now = self.clock()
        if self.last_called is not None and (now - self.last_called) < self.cooldown_seconds:
            return False
        self.last_called = now
        return True

    @property
    def cooldown_ms(self) -> int:
        return int(self.cooldown_seconds * 1000)
