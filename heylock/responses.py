"""
Interpretation of service responses.

`raise_for_status` maps HTTP status codes onto the error taxonomy, and
`validate_body` checks 200 bodies against the JSON Schemas below. A body that
does not validate means client and service disagree on the protocol version.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type

import httpx
from jsonschema import Draft7Validator

from .errors import (
    AuthenticationError,
    ConnectionFailedError,
    HeylockError,
    InvalidArgumentError,
    ProtocolError,
    QuotaExceededError,
    RateLimitedError,
    ServiceError,
    UpstreamServiceError,
)
from .usage import UsageKind, UsageTracker

logger = logging.getLogger("heylock")

UNEXPECTED_RESPONSE = (
    "received an unexpected response from the server. "
    "Please ensure you are using the correct version of the package."
)

_QUOTA_LABELS = {"messages": "message", "sorts": "sort", "rewrites": "rewrite"}

StatusOverrides = Mapping[int, Tuple[Type[HeylockError], str]]


VERIFY_KEY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["valid"],
    "properties": {"valid": {"type": "boolean"}},
}

_REMAINING = {
    "type": "object",
    "required": ["remaining"],
    "properties": {"remaining": {"type": ["number", "null"]}},
}

LIMITS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["limits"],
    "properties": {
        "limits": {
            "type": "object",
            "required": ["messages", "sorts", "rewrites"],
            "properties": {"messages": _REMAINING, "sorts": _REMAINING, "rewrites": _REMAINING},
        }
    },
}

MESSAGE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["message"],
    "properties": {"message": {"type": "string"}},
}

SHOULD_ENGAGE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["shouldEngage", "reasoning", "fallback"],
    "properties": {
        "shouldEngage": {"type": "boolean"},
        "reasoning": {"type": "string"},
        "fallback": {"type": "boolean"},
    },
}

REWRITE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["text"],
    "properties": {"text": {"type": "string"}},
}

SORT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["indexes", "reasoning"],
    "properties": {
        "indexes": {"type": "array", "items": {"type": "integer", "minimum": 0}},
        "reasoning": {"type": "string"},
        "fallback": {"type": "boolean"},
    },
}


def schema_errors(instance: Any, schema: Dict[str, Any]) -> List[Dict[str, Any]]:
    validator = Draft7Validator(schema)
    errors: List[Dict[str, Any]] = []
    for err in validator.iter_errors(instance):
        errors.append(
            {
                "path": list(err.path),
                "message": err.message,
            }
        )
    return errors


def validate_body(operation: str, data: Any, schema: Dict[str, Any]) -> None:
    errors = schema_errors(data, schema)
    if errors:
        logger.debug("%s response failed validation: %s", operation, errors)
        raise ProtocolError(operation, UNEXPECTED_RESPONSE, status_code=200)


def parse_json(operation: str, response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise ProtocolError(operation, UNEXPECTED_RESPONSE, status_code=response.status_code) from exc


def raise_for_status(
    operation: str,
    status_code: int,
    *,
    usage: Optional[UsageTracker] = None,
    quota_kind: Optional[UsageKind] = None,
    overrides: Optional[StatusOverrides] = None,
) -> None:
    """
    Raise the error matching a non-200 status.

    For 429 the tracked usage counter decides between an exhausted plan and
    transient rate limiting. The counter may be stale, so this is a best guess.
    """
    if status_code == 200:
        return

    if overrides and status_code in overrides:
        error_cls, message = overrides[status_code]
        raise error_cls(operation, message, status_code=status_code)

    if status_code == 400:
        raise InvalidArgumentError(
            operation,
            "invalid arguments. Please check your request arguments and try again.",
            status_code=status_code,
        )
    if status_code == 401:
        raise AuthenticationError(
            operation,
            "authorization failed. Please check your agent key and try again.",
            status_code=status_code,
        )
    if status_code == 429:
        if usage is not None and quota_kind is not None and usage.is_exhausted(quota_kind):
            raise QuotaExceededError(
                operation,
                f"you have reached your {_QUOTA_LABELS[quota_kind]} plan limit. "
                "Please upgrade your plan or wait for the limit to reset.",
                status_code=status_code,
            )
        raise RateLimitedError(operation, "too many requests. Try again later.", status_code=status_code)
    if status_code == 500:
        raise ServiceError(
            operation,
            "we are experiencing temporary server issues. Please try again later.",
            status_code=status_code,
        )
    if status_code == 502:
        raise UpstreamServiceError(
            operation,
            "we are experiencing unexpected external service errors. Please try again later.",
            status_code=status_code,
        )
    raise ConnectionFailedError(operation, f"unexpected error (HTTP {status_code}).", status_code=status_code)
