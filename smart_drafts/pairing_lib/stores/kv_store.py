"""Key-value stores used to cache tie-break verdicts between runs."""
from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class KeyValueStore(Protocol):
    """Minimal interface the pairing core needs from a cache backend."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ...

    def expire(self, key: str, ttl: int) -> bool:
        ...


def _expiry(now: float, ttl: Optional[int]) -> Optional[float]:
    if ttl is None:
        return None
    if ttl < 0:
        raise ValueError("ttl must be non-negative")
    return now + ttl


class InMemoryKVStore:
    """Process-local store; entries vanish with the process.

    Thread-safe. The clock is injectable so expiry can be tested without sleeping.
    """

    def __init__(self, clock: Clock = time.time) -> None:
        self.clock = clock
        self.lock = threading.Lock()
        self._entries: Dict[str, Dict[str, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        with self.lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at = entry.get("expires_at")
            if expires_at is not None and expires_at <= self.clock():
                self._entries.pop(key, None)
                return None
            return entry["value"]

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        with self.lock:
            self._entries[key] = {"value": value, "expires_at": _expiry(self.clock(), ttl)}

    def expire(self, key: str, ttl: int) -> bool:
        with self.lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            entry["expires_at"] = _expiry(self.clock(), ttl)
            return True

    def __len__(self) -> int:
        return len(self._entries)


class JSONKVStore:
    """Key-value store persisted to a single JSON file.

    Layout on disk::

        {"version": 1, "updated_at": 1700000000,
         "entries": {"tiebreak:ab12...": {"value": {...}, "expires_at": 1700604800.0}}}

    Every write goes to ``<path>.tmp`` first and is then moved over the
    original, so a crash mid-write leaves the previous file intact. Expired
    entries are dropped on load and on read.
    """

    VERSION = 1

    def __init__(self, path: Path, clock: Clock = time.time) -> None:
        self.path = Path(path)
        self.clock = clock
        self.lock = threading.Lock()
        self._data: Dict[str, Any] = {
            "version": self.VERSION,
            "updated_at": int(self.clock()),
            "entries": {},
        }
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache file %s: %s", self.path, exc)
            return
        if not isinstance(payload, dict):
            logger.warning("Ignoring cache file %s: expected a JSON object", self.path)
            return
        entries = payload.get("entries")
        if isinstance(entries, dict):
            now = self.clock()
            self._data["entries"] = {
                key: entry
                for key, entry in entries.items()
                if isinstance(entry, dict) and "value" in entry and not self._expired(entry, now)
            }
        updated = payload.get("updated_at")
        if isinstance(updated, (int, float)):
            self._data["updated_at"] = int(updated)

    @staticmethod
    def _expired(entry: Dict[str, Any], now: float) -> bool:
        expires_at = entry.get("expires_at")
        return isinstance(expires_at, (int, float)) and expires_at <= now

    def _write_locked(self) -> None:
        """Must be called with lock held."""
        self._data["version"] = self.VERSION
        self._data["updated_at"] = int(self.clock())
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        temp_path.write_text(json.dumps(self._data, ensure_ascii=False, indent=2), encoding="utf-8")
        temp_path.replace(self.path)

    def get(self, key: str) -> Optional[Any]:
        with self.lock:
            entry = self._data["entries"].get(key)
            if entry is None:
                return None
            if self._expired(entry, self.clock()):
                self._data["entries"].pop(key, None)
                self._write_locked()
                return None
            return entry["value"]

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        with self.lock:
            self._data["entries"][key] = {"value": value, "expires_at": _expiry(self.clock(), ttl)}
            self._write_locked()

    def expire(self, key: str, ttl: int) -> bool:
        with self.lock:
            entry = self._data["entries"].get(key)
            if entry is None:
                return False
            entry["expires_at"] = _expiry(self.clock(), ttl)
            self._write_locked()
            return True

    def __len__(self) -> int:
        return len(self._data["entries"])
