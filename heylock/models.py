"""
Data models for the Heylock client.

Defines Message, ContextEntry, UsageRemaining, ShouldEngageResult and SortResult.
All models are frozen: snapshots handed to callers cannot be mutated.
"""

from __future__ import annotations

from typing import Any, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant"]
ROLES = ("user", "assistant")


class Message(BaseModel):
    """A single transcript entry."""

    model_config = ConfigDict(frozen=True)

    content: str
    role: Role = "user"


class ContextEntry(BaseModel):
    """A timestamped fact about the visitor (timestamp in POSIX seconds)."""

    model_config = ConfigDict(frozen=True)

    content: str
    timestamp: float


class UsageRemaining(BaseModel):
    """Remaining quota per metered operation; None until first known."""

    model_config = ConfigDict(frozen=True)

    messages: Optional[int] = None
    sorts: Optional[int] = None
    rewrites: Optional[int] = None


class ShouldEngageResult(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    should_engage: bool = Field(alias="shouldEngage")
    reasoning: str = ""
    fallback: bool = False
    warning: Optional[str] = None


class SortResult(BaseModel):
    """
    Result of `Heylock.sort`.

    `indexes[i]` is the position in the input of the element placed at
    output position `i`.
    """

    model_config = ConfigDict(frozen=True)

    array: Tuple[Any, ...] = ()
    indexes: Tuple[int, ...] = ()
    reasoning: Optional[str] = None
    warning: Optional[str] = None
    fallback: bool = False
