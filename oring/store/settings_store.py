"""
Settings Store
==============
Key-value persistence for client configuration and OAuth tokens.

The core only needs a handful of string/int keys, so the store is a flat
mapping. ``update()`` is the one write path that matters: token triples are
written through it so a reader never sees a new access token next to an old
expiry.

Two implementations:
- MemorySettingsStore: tests and embedding callers that persist elsewhere
- JsonFileSettingsStore: a JSON file, replaced atomically on every write
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping, Optional

from oring.config import get_settings
from oring.models.credentials import (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    TOKEN_EXPIRY_KEY,
    Credentials,
)

logger = logging.getLogger(__name__)

CLIENT_ID_KEY = "client-id"
CLIENT_SECRET_KEY = "client-secret"
UPDATE_INTERVAL_KEY = "update-interval"

DEFAULT_UPDATE_INTERVAL = 1800
MIN_UPDATE_INTERVAL = 60
MAX_UPDATE_INTERVAL = 86400


class SettingsStore:
    """Flat key-value store with typed accessors.

    Subclasses provide ``_snapshot()`` (current mapping) and ``_write()``
    (persist a merged mapping). ``update()`` serialises writers.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def _snapshot(self) -> dict[str, Any]:
        raise NotImplementedError

    def _write(self, values: Mapping[str, Any]) -> None:
        raise NotImplementedError

    def get_string(self, key: str, default: str = "") -> str:
        value = self._snapshot().get(key)
        return value if isinstance(value, str) else default

    def get_int(self, key: str, default: int = 0) -> int:
        value = self._snapshot().get(key)
        # bool is an int subclass; a stored True is not a timestamp
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        return default

    def set_string(self, key: str, value: str) -> None:
        self.update({key: value})

    def set_int(self, key: str, value: int) -> None:
        self.update({key: int(value)})

    def update(self, values: Mapping[str, Any]) -> None:
        """Write all ``values`` in one step; readers see all or none."""
        with self._lock:
            self._write(values)

    # ---- Convenience -----------------------------------------------------

    def has_access_token(self) -> bool:
        return self.get_string(ACCESS_TOKEN_KEY) != ""

    def load_credentials(self) -> Optional[Credentials]:
        """Return the stored token triple, or None if nothing was ever stored."""
        snapshot = self._snapshot()
        access = snapshot.get(ACCESS_TOKEN_KEY) or ""
        refresh = snapshot.get(REFRESH_TOKEN_KEY) or ""
        expiry = snapshot.get(TOKEN_EXPIRY_KEY)
        if not access and not refresh:
            return None
        return Credentials(
            access_token=access,
            refresh_token=refresh,
            expires_at=expiry if isinstance(expiry, int) else 0,
        )

    def save_credentials(self, credentials: Credentials) -> None:
        self.update(credentials.to_store_values())

    def update_interval(self) -> int:
        """Polling interval for the scheduler, clamped to one minute .. one day."""
        interval = self.get_int(UPDATE_INTERVAL_KEY, DEFAULT_UPDATE_INTERVAL)
        return max(MIN_UPDATE_INTERVAL, min(MAX_UPDATE_INTERVAL, interval))


class MemorySettingsStore(SettingsStore):
    """Dict-backed store. Nothing survives the process."""

    def __init__(self, initial: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__()
        self._values: dict[str, Any] = dict(initial or {})

    def _snapshot(self) -> dict[str, Any]:
        return self._values

    def _write(self, values: Mapping[str, Any]) -> None:
        # swap, never mutate in place
        merged = {**self._values, **values}
        self._values = merged


class JsonFileSettingsStore(SettingsStore):
    """Store persisted as a single JSON object on disk.

    Writes go to a temp file in the same directory and are moved into place
    with ``os.replace``, which is atomic on POSIX and Windows.
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = Path(path)
        self._values: dict[str, Any] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError):
            logger.warning("Settings file %s unreadable, starting empty", self._path)
            return {}
        if not isinstance(data, dict):
            logger.warning("Settings file %s is not a JSON object, starting empty", self._path)
            return {}
        return data

    def _snapshot(self) -> dict[str, Any]:
        return self._values

    def _write(self, values: Mapping[str, Any]) -> None:
        merged = {**self._values, **values}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".settings-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(merged, fh, indent=2, sort_keys=True)
            os.replace(tmp_name, self._path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        self._values = merged
        logger.debug("Settings written: %s", ", ".join(sorted(values)))


@lru_cache
def get_settings_store() -> JsonFileSettingsStore:
    return JsonFileSettingsStore(get_settings().settings_path)
