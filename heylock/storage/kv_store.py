"""
Key-value storage used to persist agent state between processes.

Backends: MemoryStorage (process-local), SqliteStorage (file on disk) and
UnavailableStorage (no persistence possible). StorageAdapter namespaces keys
per agent and turns every backend problem into a warning.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import closing
from typing import Any, Callable, Dict, Optional

from ..config import STORAGE_PRODUCT, get_settings
from ..errors import InvalidArgumentError
from .db import connect, init_db

logger = logging.getLogger("heylock")


class BaseStorage:
    """Abstract storage interface."""

    available = True

    def get_item(self, key: str) -> Optional[str]:  # pragma: no cover - interface only
        raise NotImplementedError

    def set_item(self, key: str, value: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


class MemoryStorage(BaseStorage):
    """Dict-backed storage; lives as long as the object does."""

    def __init__(self, items: Optional[Dict[str, str]] = None) -> None:
        self.items: Dict[str, str] = dict(items or {})

    def get_item(self, key: str) -> Optional[str]:
        return self.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.items[key] = value


class SqliteStorage(BaseStorage):
    """
    SQLite-backed storage.

    One connection per call, closed when the call returns.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        with closing(connect(self.db_path)) as conn:
            init_db(conn)

    def get_item(self, key: str) -> Optional[str]:
        with closing(connect(self.db_path)) as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row["value"] if row is not None else None

    def set_item(self, key: str, value: str) -> None:
        updated_at = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        with closing(connect(self.db_path)) as conn:
            conn.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, updated_at),
            )
            conn.commit()


class UnavailableStorage(BaseStorage):
    """Stands in when the host offers no persistent storage."""

    available = False

    def get_item(self, key: str) -> Optional[str]:
        return None

    def set_item(self, key: str, value: str) -> None:
        return None


def build_storage() -> BaseStorage:
    """Factory choosing the default backend from settings."""
    settings = get_settings()
    if settings.storage_path:
        return SqliteStorage(settings.storage_path)
    return UnavailableStorage()


class StorageAdapter:
    """Reads and writes JSON values under `<product>:<namespace>:<name>`."""

    def __init__(self, storage: BaseStorage, namespace: str, warn: Callable[..., None]) -> None:
        self.storage = storage
        self.namespace = namespace
        self._warn = warn

    def key(self, name: str) -> str:
        if not isinstance(name, str) or not name.strip():
            raise InvalidArgumentError("storage", "key must be a non-empty string.")
        return f"{STORAGE_PRODUCT}:{self.namespace}:{name}"

    def get_item(self, name: str) -> Optional[str]:
        """Return the raw serialized value, or None when absent or unavailable."""
        key = self.key(name)
        if not self.storage.available:
            self._warn("Data can only be retrieved when a storage backend is available.")
            return None
        try:
            return self.storage.get_item(key)
        except Exception as exc:
            self._warn("Data was not retrieved due to an unexpected error: %s", exc)
            return None

    def set_item(self, name: str, value: Any) -> None:
        key = self.key(name)
        if not self.storage.available:
            self._warn("Data can only be saved when a storage backend is available.")
            return
        try:
            self.storage.set_item(key, json.dumps(value))
        except Exception as exc:
            self._warn("Data was not saved due to an unexpected error: %s", exc)
            return
        logger.debug("storage saved key=%s", key)
