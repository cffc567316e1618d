"""Etag and offline-capsule storage.

Both stores keep their state in memory behind a lock. The JSON-file
variants load on construction and rewrite the whole file after every
mutation (temp file + os.replace, so a crash never leaves half a file).
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock
from typing import Any

from pydantic import ValidationError

from api_courier.errors import CourierError
from api_courier.models import OfflineCapsule

LOGGER = logging.getLogger(__name__)


class StoreError(CourierError):
    """Raised when a store file cannot be read or written."""


def _read_json(path: Path) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise StoreError(f"Invalid JSON in store file {path}: {e}") from e
    except OSError as e:
        raise StoreError(f"Cannot read store file {path}: {e}") from e


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_name, path)
    except OSError as e:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise StoreError(f"Cannot write store file {path}: {e}") from e


# =============================================================================
# Etag Store
# =============================================================================


class EtagStore:
    """Composite key (base URL + descriptor key) -> validation token."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._tokens: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._tokens.get(key)

    def add(self, token: str, key: str) -> None:
        with self._lock:
            self._tokens[key] = token
            self._persist()

    def remove(self, key: str) -> None:
        with self._lock:
            if self._tokens.pop(key, None) is not None:
                self._persist()

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()
            self._persist()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

    def _persist(self) -> None:
        """Called with the lock held after each mutation."""


class JsonFileEtagStore(EtagStore):
    """EtagStore backed by a JSON object on disk."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = path
        if path.exists():
            raw = _read_json(path)
            if not isinstance(raw, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in raw.items()
            ):
                raise StoreError(f"Etag store {path} must be a JSON object of strings")
            self._tokens.update(raw)

    @property
    def path(self) -> Path:
        return self._path

    def _persist(self) -> None:
        _write_json_atomic(self._path, self._tokens)


# =============================================================================
# Offline Store
# =============================================================================


class OfflineStore:
    """FIFO collection of requests that failed while offline.

    No deduplication: the same logical request failing twice is stored twice.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._capsules: list[OfflineCapsule] = []

    def save(self, capsule: OfflineCapsule) -> None:
        with self._lock:
            self._capsules.append(capsule)
            self._persist()
        LOGGER.debug(
            "offline-capsule-saved",
            extra={"capsule_id": capsule.capsule_id, "key": capsule.descriptor.key},
        )

    def pending_capsules(self) -> list[OfflineCapsule]:
        """Snapshot of stored capsules in insertion order."""
        with self._lock:
            return list(self._capsules)

    def remove(self, capsule_id: str) -> bool:
        """Drop a capsule by id. Returns False if it was not stored."""
        with self._lock:
            for index, capsule in enumerate(self._capsules):
                if capsule.capsule_id == capsule_id:
                    del self._capsules[index]
                    self._persist()
                    return True
        return False

    def clear(self) -> None:
        with self._lock:
            self._capsules.clear()
            self._persist()

    def __len__(self) -> int:
        with self._lock:
            return len(self._capsules)

    def _persist(self) -> None:
        """Called with the lock held after each mutation."""


class JsonFileOfflineStore(OfflineStore):
    """OfflineStore backed by a JSON list on disk (list order is FIFO order)."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = path
        if path.exists():
            raw = _read_json(path)
            if not isinstance(raw, list):
                raise StoreError(f"Offline store {path} must be a JSON list")
            try:
                self._capsules.extend(OfflineCapsule.model_validate(item) for item in raw)
            except ValidationError as e:
                raise StoreError(f"Invalid capsule in offline store {path}: {e}") from e

    @property
    def path(self) -> Path:
        return self._path

    def _persist(self) -> None:
        _write_json_atomic(
            self._path, [capsule.model_dump(mode="json") for capsule in self._capsules]
        )
