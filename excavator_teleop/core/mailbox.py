"""Single-slot mailbox holding the most recent value."""

from __future__ import annotations

import threading
import time
from typing import Generic, Optional, Tuple, TypeVar

T = TypeVar("T")


class LatestValue(Generic[T]):
    """Replace-on-write cell with one writer and one reader.

    Writes never queue: a new value overwrites the previous one, so a reader
    always observes the newest intent and never a backlog.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value: Optional[T] = None
        self._updated_at: Optional[float] = None
        self._writes = 0

    def put(self, value: T) -> None:
        with self._lock:
            self._value = value
            self._updated_at = time.monotonic()
            self._writes += 1

    def get(self) -> Optional[T]:
        with self._lock:
            return self._value

    def get_with_age(self) -> Tuple[Optional[T], Optional[float]]:
        with self._lock:
            if self._updated_at is None:
                return self._value, None
            return self._value, time.monotonic() - self._updated_at

    def clear(self) -> None:
        with self._lock:
            self._value = None
            self._updated_at = None

    @property
    def writes(self) -> int:
        return self._writes

    @property
    def is_empty(self) -> bool:
        with self._lock:
            return self._value is None
