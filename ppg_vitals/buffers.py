"""
Fixed-capacity signal buffer.

A ring of preallocated NumPy columns (``red``, ``ir``, ``filtered``,
``clean``) sharing one timestamp column.  Appending past capacity evicts
the oldest sample.  Reads return copies in chronological order so callers
can never alias the ring.
"""

from __future__ import annotations

import logging
from typing import Dict, Tuple

import numpy as np

logger = logging.getLogger(__name__)

COLUMNS = ("red", "ir", "filtered", "clean")


class SignalBuffer:
    """
    Sliding window of per-sample readings.

    Parameters
    ----------
    capacity:
        Maximum number of samples retained.
    """

    def __init__(self, capacity: int = 512) -> None:
        if capacity < 2:
            raise ValueError("capacity must be at least 2")
        self.capacity = capacity
        self._timestamps = np.zeros(capacity, dtype=np.float64)
        self._columns: Dict[str, np.ndarray] = {
            name: np.zeros(capacity, dtype=np.float64) for name in COLUMNS
        }
        self._head = 0      # next write position
        self._size = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def append(self, timestamp: float, **values: float) -> None:
        """
        Append one sample.

        Raises
        ------
        ValueError
            If *timestamp* precedes the newest stored timestamp, or an
            unknown column is given.
        """
        if self._size and timestamp < self.last_timestamp:
            raise ValueError(
                f"timestamp {timestamp:.4f} precedes last sample {self.last_timestamp:.4f}"
            )
        unknown = set(values) - set(COLUMNS)
        if unknown:
            raise ValueError(f"unknown column(s): {', '.join(sorted(unknown))}")

        self._timestamps[self._head] = timestamp
        for name, column in self._columns.items():
            column[self._head] = values.get(name, 0.0)
        self._head = (self._head + 1) % self.capacity
        self._size = min(self._size + 1, self.capacity)

    def window(self, name: str, seconds: float | None = None) -> Tuple[np.ndarray, np.ndarray]:
        """
        Return ``(timestamps, values)`` for column *name*, oldest first.

        With *seconds* given only samples no older than ``seconds`` before
        the newest sample are returned.
        """
        ts = self._ordered(self._timestamps)
        values = self._ordered(self._columns[name])
        if seconds is not None and ts.size:
            start = int(np.searchsorted(ts, ts[-1] - seconds, side="left"))
            ts, values = ts[start:], values[start:]
        return ts, values

    def span(self) -> float:
        """Seconds between the oldest and newest sample."""
        if self._size < 2:
            return 0.0
        oldest = self._timestamps[(self._head - self._size) % self.capacity]
        return float(self.last_timestamp - oldest)

    def clear(self) -> None:
        self._timestamps.fill(0.0)
        for column in self._columns.values():
            column.fill(0.0)
        self._head = 0
        self._size = 0

    @property
    def last_timestamp(self) -> float:
        if not self._size:
            return float("-inf")
        return float(self._timestamps[(self._head - 1) % self.capacity])

    @property
    def fill_ratio(self) -> float:
        """How full the buffer is (0 – 1)."""
        return self._size / self.capacity

    def __len__(self) -> int:
        return self._size

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _ordered(self, column: np.ndarray) -> np.ndarray:
        if self._size < self.capacity:
            return column[: self._size].copy()
        return np.concatenate((column[self._head:], column[: self._head]))
