"""Time-bounded local cache for the last good metric snapshot."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from json import JSONDecodeError
from pathlib import Path
from typing import Protocol

from models import CACHED, MetricSnapshot

CACHE_KEY = os.getenv("METRICS_CACHE_KEY", "researchgate_data_cache")
CACHE_PATH = os.getenv("METRICS_CACHE_PATH", ".metrics_cache.json")
CACHE_TTL = timedelta(hours=float(os.getenv("METRICS_CACHE_TTL_HOURS", "24")))

LOGGER = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Synchronous string key-value storage, the shape of browser localStorage."""

    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class InMemoryStore:
    """Process-local store; nothing survives the interpreter."""

    def __init__(self, items: dict[str, str] | None = None) -> None:
        self.items: dict[str, str] = dict(items or {})

    def get_item(self, key: str) -> str | None:
        return self.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.items[key] = value

    def remove_item(self, key: str) -> None:
        self.items.pop(key, None)


class JsonFileStore:
    """Store backed by one JSON object file mapping keys to string values.

    Every write rewrites a temporary sibling file and swaps it in with
    os.replace, so readers see either the old file or the new one.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def get_item(self, key: str) -> str | None:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        items = self._load_for_update()
        items[key] = value
        self._dump(items)

    def remove_item(self, key: str) -> None:
        items = self._load_for_update()
        if key in items:
            del items[key]
            self._dump(items)

    def _load(self) -> dict[str, object]:
        if not self.path.exists():
            return {}
        with self.path.open(encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError(f"Store file {self.path} does not hold a JSON object")
        return data

    def _load_for_update(self) -> dict[str, object]:
        """Current items, or an empty mapping when the file is unreadable.

        An undecodable file must not block writes; the next _dump replaces it.
        """
        try:
            return self._load()
        except ValueError as exc:
            LOGGER.warning("Replacing unreadable store file %s: %s", self.path, exc)
            return {}

    def _dump(self, items: dict[str, object]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(items, fh)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class MetricCache:
    """Single-key snapshot cache with a time-to-live.

    All store faults are logged and swallowed: a broken cache behaves like an
    empty one and never blocks the caller.
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str = CACHE_KEY,
        ttl: timedelta = CACHE_TTL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.key = key
        self.ttl = ttl
        self._clock = clock or (lambda: datetime.now(UTC))

    def read(self) -> MetricSnapshot | None:
        """Return the cached snapshot tagged cached, or None when absent, corrupt, or stale."""
        try:
            raw = self.store.get_item(self.key)
        except Exception as exc:  # a broken store reads as empty
            LOGGER.warning("Failed to read cache key=%s: %s", self.key, exc)
            return None

        if raw is None:
            return None

        try:
            snapshot = MetricSnapshot.from_dict(json.loads(raw), provenance=CACHED)
        except (JSONDecodeError, TypeError, ValueError) as exc:
            # Left in place; the next successful write overwrites it.
            LOGGER.warning("Ignoring corrupt cache entry key=%s: %s", self.key, exc)
            return None

        age = self._clock() - snapshot.last_updated
        if age >= self.ttl:
            LOGGER.info("Cache entry key=%s is stale (age=%s, ttl=%s)", self.key, age, self.ttl)
            return None
        return snapshot

    def write(self, snapshot: MetricSnapshot) -> None:
        """Replace the cached value with snapshot; failures are logged, not raised."""
        payload = snapshot.to_dict()
        try:
            self.store.set_item(self.key, json.dumps(payload))
        except Exception as exc:
            LOGGER.warning("Failed to write cache key=%s: %s", self.key, exc)
            return
        LOGGER.info("Cached snapshot key=%s lastUpdated=%s", self.key, payload["lastUpdated"])

    def invalidate(self) -> None:
        try:
            self.store.remove_item(self.key)
        except Exception as exc:
            LOGGER.warning("Failed to invalidate cache key=%s: %s", self.key, exc)
