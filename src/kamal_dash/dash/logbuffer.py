from __future__ import annotations

import threading
import time
from typing import Callable, Iterable

from ..config import LOG_CAP_MAX


def _stamp(ts: float) -> str:
    return time.strftime("%H:%M:%S", time.localtime(ts))


class LogBuffer:
    """Bounded, timestamped display lines shared by the UI and every worker.

    ``scroll`` is the index of the first visible line. While ``follow`` is set
    each append moves it to the newest line; the session clears ``follow``
    when the operator scrolls back.
    """

    def __init__(self, cap: int = LOG_CAP_MAX, clock: Callable[[], float] = time.time) -> None:
        if cap < 1:
            raise ValueError("cap must be positive")
        self.cap = cap
        self._clock = clock
        self._lock = threading.Lock()
        self._lines: list[str] = []
        self._scroll = 0
        self.follow = True

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)

    def append(self, lines: Iterable[str]) -> None:
        prefix = _stamp(self._clock())
        self._extend([f"{prefix} {ln}" for ln in lines])

    def _extend(self, stamped: list[str]) -> None:
        if not stamped:
            return
        with self._lock:
            self._lines.extend(stamped)
            overflow = len(self._lines) - self.cap
            if overflow > 0:
                del self._lines[:overflow]
                self._scroll = max(0, self._scroll - overflow)
            if self.follow:
                self._scroll = len(self._lines)

    def snapshot(self) -> list[str]:
        with self._lock:
            return list(self._lines)

    @property
    def scroll(self) -> int:
        with self._lock:
            return self._scroll

    def set_scroll(self, n: int) -> None:
        with self._lock:
            self._scroll = max(0, min(int(n), len(self._lines)))

    def clear(self) -> None:
        with self._lock:
            self._lines = []
            self._scroll = 0
        self.follow = True

    def window(self, height: int) -> list[str]:
        """Lines visible in a pane of ``height`` rows, clamping the scroll offset."""
        height = max(1, height)
        with self._lock:
            max_scroll = max(0, len(self._lines) - height)
            self._scroll = max(0, min(self._scroll, max_scroll))
            return self._lines[self._scroll:self._scroll + height]
