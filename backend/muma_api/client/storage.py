"""Durable per-device storage for client-side rate limit data.

Rate limit state is kept as JSON arrays of epoch-millisecond timestamps, one
array per caller-supplied key. Storage problems (unwritable profile
directory, full disk, read-only home) never reach the caller: reads degrade
to "no data" and writes are reported as not persisted.
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import tempfile
from typing import Any, Optional, Protocol

from ..rate_limit import Clock, SlidingWindow, fail_open, is_timestamp, now_ms

logger = logging.getLogger("muma.client.storage")


class StorageUnavailableError(RuntimeError):
    """Raised by storage backends that cannot be read or written."""


class DurableStorage(Protocol):
    def get_item(self, key: str) -> Optional[str]:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...


class MemoryStorage:
    """Storage that lives as long as the process, for kiosks and tests."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def clear(self) -> None:
        self._items.clear()


class JsonFileStorage:
    """Key-value storage persisted to a single JSON document.

    The document is rewritten atomically on every ``set_item`` so a crash
    mid-write leaves the previous state intact.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise StorageUnavailableError(f"Cannot read {self._path}: {exc}") from exc

        try:
            # UnicodeDecodeError is a ValueError too.
            document = json.loads(raw.decode("utf-8"))
        except ValueError:
            logger.warning(
                "Client storage document is corrupt, starting empty",
                extra={"event": "client_storage_corrupt", "key": str(self._path)},
            )
            return {}
        return document if isinstance(document, dict) else {}

    def get_item(self, key: str) -> Optional[str]:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        document = self._load()
        document[key] = value
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".rate_limits-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(document, handle)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StorageUnavailableError(f"Cannot write {self._path}: {exc}") from exc


def get_rate_limit_data(storage: Optional[DurableStorage], key: str) -> list[int]:
    if storage is None:
        return []

    try:
        raw = storage.get_item(key)
    except StorageUnavailableError as exc:
        logger.warning(
            "Failed to read rate limit data",
            extra={"event": "client_storage_read_failed", "key": key, "reason": str(exc)},
        )
        return []

    if not raw:
        return []

    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("Discarding malformed rate limit data", extra={"event": "client_storage_malformed", "key": key})
        return []

    if not isinstance(parsed, list):
        return []
    return [int(item) for item in parsed if is_timestamp(item)]


def set_rate_limit_data(storage: Optional[DurableStorage], key: str, timestamps: list[int]) -> bool:
    if storage is None:
        return False

    try:
        storage.set_item(key, json.dumps(timestamps))
    except StorageUnavailableError as exc:
        logger.warning(
            "Failed to write rate limit data",
            extra={"event": "client_storage_write_failed", "key": key, "reason": str(exc)},
        )
        return False
    return True


class StorageTimestampStore:
    """Adapts :class:`DurableStorage` to the sliding window store interface."""

    def __init__(self, storage: Optional[DurableStorage]) -> None:
        self._storage = storage

    def read(self, key: str) -> list[int]:
        return get_rate_limit_data(self._storage, key)

    def write(self, key: str, timestamps: list[int], window_ms: int) -> bool:
        return set_rate_limit_data(self._storage, key, timestamps)


@fail_open(False)
def check_rate_limit(
    storage: Optional[DurableStorage],
    key: str,
    max_actions: int,
    window_ms: int,
    *,
    clock: Clock = now_ms,
) -> bool:
    return SlidingWindow(StorageTimestampStore(storage), clock=clock).is_limited(key, max_actions, window_ms)


@fail_open(True)
def record_action(
    storage: Optional[DurableStorage],
    key: str,
    window_ms: int,
    *,
    clock: Clock = now_ms,
) -> bool:
    persisted = SlidingWindow(StorageTimestampStore(storage), clock=clock).record(key, window_ms)
    if not persisted:
        logger.warning(
            "Action allowed without persisting rate limit data",
            extra={"event": "client_storage_degraded", "key": key},
        )
    return True


@fail_open(0)
def get_time_until_reset(
    storage: Optional[DurableStorage],
    key: str,
    window_ms: int,
    *,
    clock: Clock = now_ms,
) -> int:
    return SlidingWindow(StorageTimestampStore(storage), clock=clock).time_until_reset(key, window_ms)
