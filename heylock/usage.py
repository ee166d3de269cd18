from __future__ import annotations

import math
from typing import Any, Dict, Literal, Mapping, Optional

from .models import UsageRemaining

UsageKind = Literal["messages", "sorts", "rewrites"]
USAGE_KINDS = ("messages", "sorts", "rewrites")


def parse_remaining(raw: Any) -> Optional[int]:
    """Numeric value of a remaining-quota signal, or None when absent or not a whole number."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or not value.is_integer():
        return None
    return int(value)


class UsageTracker:
    """
    Remaining quota per metered operation.

    Counters are overwritten whenever the service reports a value and are
    decremented locally otherwise. Unknown counters stay unknown.
    """

    def __init__(self) -> None:
        self._remaining: Dict[str, Optional[int]] = {kind: None for kind in USAGE_KINDS}

    @property
    def remaining(self) -> UsageRemaining:
        return UsageRemaining(**self._remaining)

    def get(self, kind: UsageKind) -> Optional[int]:
        return self._remaining[kind]

    def replace(self, values: Mapping[str, Any]) -> UsageRemaining:
        self._remaining = {kind: parse_remaining(values.get(kind)) for kind in USAGE_KINDS}
        return self.remaining

    def record(self, kind: UsageKind, signal: Any) -> Optional[int]:
        """Apply the remaining-quota signal of one metered call."""
        value = parse_remaining(signal)
        if value is not None:
            self._remaining[kind] = value
        elif self._remaining[kind] is not None:
            self._remaining[kind] -= 1
        return self._remaining[kind]

    def is_exhausted(self, kind: UsageKind) -> bool:
        remaining = self._remaining[kind]
        return remaining is not None and remaining <= 0

    def clear(self) -> None:
        self._remaining = {kind: None for kind in USAGE_KINDS}
