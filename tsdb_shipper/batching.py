"""
Batch buffer for serialized datapoints.

Producers append pre-rendered datapoint bytes. When the buffer reaches the
size threshold, or is older than the time threshold, it is swapped for a
fresh one under a lock held only for the swap, and the full batch is returned
to the caller for shipping.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Batch:
    """An immutable, ready-to-ship group of datapoints."""

    payload: bytes
    count: int
    created_at: float = field(default_factory=time.monotonic)

    @classmethod
    def from_points(cls, points: List[bytes]) -> "Batch":
        """Build a batch from individually rendered datapoint objects."""
        return cls(payload=b"[" + b",".join(points) + b"]", count=len(points))

    def __len__(self) -> int:
        return self.count


class _Accumulator:
    __slots__ = ("data", "count", "created_at")

    def __init__(self, created_at: float):
        self.data = bytearray()
        self.count = 0
        self.created_at = created_at


class BatchBuffer:
    """Size/time bounded accumulator of datapoint bytes."""

    def __init__(
        self,
        size_threshold: int = 100,
        time_threshold_ms: int = 5000,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize batch buffer.

        Args:
            size_threshold: Datapoint count that makes a batch ready
            time_threshold_ms: Age (ms) that makes a non-empty batch ready
            clock: Monotonic time source (seconds)
        """
        if size_threshold < 1:
            raise ValueError(f"Invalid batch size [{size_threshold}]")
        if time_threshold_ms < 1:
            raise ValueError(f"Invalid batch time threshold [{time_threshold_ms}]")
        self.size_threshold = size_threshold
        self.time_threshold_ms = time_threshold_ms
        self._clock = clock
        self._lock = threading.Lock()
        self._current = _Accumulator(clock())
        self._flushed_batches = 0

    def append(self, datapoint: bytes) -> Optional[Batch]:
        """
        Append one rendered datapoint.

        Args:
            datapoint: JSON object bytes for one datapoint

        Returns:
            The full batch if this append reached the size threshold, else None
        """
        with self._lock:
            acc = self._current
            if acc.count:
                acc.data += b","
            acc.data += datapoint
            acc.count += 1
            if acc.count < self.size_threshold:
                return None
            self._current = _Accumulator(self._clock())
        return self._seal(acc)

    def flush_if_aged(self, now: Optional[float] = None) -> Optional[Batch]:
        """Swap out the buffer if it is non-empty and older than the time threshold."""
        now = self._clock() if now is None else now
        with self._lock:
            acc = self._current
            if acc.count == 0:
                acc.created_at = now
                return None
            if (now - acc.created_at) * 1000 < self.time_threshold_ms:
                return None
            self._current = _Accumulator(now)
        return self._seal(acc)

    def flush(self) -> Optional[Batch]:
        """Swap out the buffer regardless of thresholds."""
        with self._lock:
            acc = self._current
            if acc.count == 0:
                return None
            self._current = _Accumulator(self._clock())
        return self._seal(acc)

    def _seal(self, acc: _Accumulator) -> Batch:
        self._flushed_batches += 1
        return Batch(payload=b"[" + bytes(acc.data) + b"]", count=acc.count, created_at=acc.created_at)

    @property
    def pending(self) -> int:
        return self._current.count

    @property
    def flushed_batches(self) -> int:
        return self._flushed_batches
