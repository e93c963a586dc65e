"""Local key-value persistence for one app installation.

Values are strings keyed by versioned names, mirroring the mobile app's
``AsyncStorage`` layout, and the whole map is kept in one JSON file that is
rewritten atomically on every change.  ``path=None`` keeps everything in
memory (useful for tests and throwaway sessions).
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

logger = logging.getLogger("diacare.client.storage")

STORAGE_KEYS: dict[str, str] = {
    "entries": "diacare:glucose_entries:v1",
    "reminders": "diacare:reminders:v1",
    "checkins": "diacare:checkins:v1",
    "client_id": "diacare:client_id:v1",
    "sync_stamps": "diacare:sync_updated_at_ms:v2",  # per-domain stamps
}


class LocalStorage:
    """String key-value store persisted to a single JSON file."""

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path) if path else None
        self._lock = threading.Lock()
        self._items: dict[str, str] = self._load()

    @classmethod
    def in_directory(cls, directory: str | Path) -> "LocalStorage":
        return cls(Path(directory) / "storage.json")

    # ------------------------------------------------------------------
    # Raw string access
    # ------------------------------------------------------------------

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value
            self._flush()

    def remove_item(self, key: str) -> None:
        with self._lock:
            if self._items.pop(key, None) is not None:
                self._flush()

    # ------------------------------------------------------------------
    # JSON helpers
    # ------------------------------------------------------------------

    def get_json(self, key: str, fallback: Any) -> Any:
        """Parse the value under ``key``; return ``fallback`` if absent or corrupt."""
        raw = self.get_item(key)
        if not raw:
            return fallback
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("Failed to parse stored JSON for %s (%d chars): %s", key, len(raw), exc)
            return fallback

    def set_json(self, key: str, value: Any) -> None:
        self.set_item(key, json.dumps(value, separators=(",", ":")))

    # ------------------------------------------------------------------
    # File I/O
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, str]:
        if self._path is None or not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Could not read %s, starting empty: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            logger.error("Ignoring %s: expected a JSON object", self._path)
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _flush(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".storage-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._items, fh)
            os.replace(tmp, self._path)
        except BaseException:
            os.unlink(tmp)
            raise
