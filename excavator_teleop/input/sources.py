"""Controller sources feeding the input normaliser."""

from __future__ import annotations

import threading
from typing import Dict, Optional, Sequence, Tuple


class ManualControllerSource:
    """In-memory axis store written by a device driver or the UI layer.

    Writers push whole axis vectors per controller index; the normaliser
    reads the most recent vector. A controller that was never connected, or
    was disconnected, reads as absent.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._axes: Dict[int, Tuple[float, ...]] = {}

    def set_axes(self, index: int, axes: Sequence[float]) -> None:
        with self._lock:
            self._axes[index] = tuple(float(value) for value in axes)

    def disconnect(self, index: int) -> None:
        with self._lock:
            self._axes.pop(index, None)

    def read_axes(self, index: int) -> Optional[Sequence[float]]:
        with self._lock:
            return self._axes.get(index)

    @property
    def connected(self) -> tuple[int, ...]:
        with self._lock:
            return tuple(sorted(self._axes))
