from __future__ import annotations

from dataclasses import dataclass, field
import logging

from ..rate_limit import Clock, now_ms

logger = logging.getLogger("muma.window_store")


@dataclass
class WindowRecord:
    window_ms: int
    timestamps: list[int] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.timestamps)

    @property
    def first_attempt(self) -> int:
        return min(self.timestamps)

    @property
    def reset_at(self) -> int:
        """When the oldest retained action leaves the window."""
        return self.first_attempt + self.window_ms

    @property
    def expires_at(self) -> int:
        """When every retained action has left the window."""
        return max(self.timestamps) + self.window_ms

    def is_expired(self, now: int) -> bool:
        return not self.timestamps or now >= self.expires_at


class InMemoryWindowStore:
    """Process-local store keyed by ``action:client_ip``."""

    def __init__(self, clock: Clock = now_ms) -> None:
        self._records: dict[str, WindowRecord] = {}
        self._clock = clock

    def read(self, key: str) -> list[int]:
        record = self._records.get(key)
        if record is None or record.is_expired(self._clock()):
            return []
        return list(record.timestamps)

    def write(self, key: str, timestamps: list[int], window_ms: int) -> bool:
        if not timestamps:
            self._records.pop(key, None)
            return True
        self._records[key] = WindowRecord(window_ms=window_ms, timestamps=list(timestamps))
        return True

    def get(self, key: str) -> WindowRecord | None:
        return self._records.get(key)

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, record in self._records.items() if record.is_expired(now)]
        for key in expired:
            del self._records[key]
        if expired:
            logger.debug("Swept expired rate limit records", extra={"event": "rate_limit_sweep", "status": len(expired)})
        return len(expired)

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
