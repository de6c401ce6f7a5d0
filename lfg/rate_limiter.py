"""
Per-actor sliding-window admission control.

A single quota is shared by every command kind. The check-and-record in
`admit` has no await in it, so it is atomic on the event loop.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque, Dict, Optional


class RateLimiter:
    def __init__(
        self,
        quota: int = 5,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if quota < 1:
            raise ValueError("quota must be >= 1")
        self.quota = int(quota)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}

    def _prune_window(self, window: Deque[float], now: float) -> None:
        while window and now - window[0] >= self.window_seconds:
            window.popleft()

    def admit(self, actor_id: str) -> bool:
        now = self._clock()
        key = str(actor_id)
        window = self._windows.get(key)
        if window is None:
            window = deque()
        self._prune_window(window, now)

        if len(window) >= self.quota:
            self._windows[key] = window
            return False

        window.append(now)
        self._windows[key] = window
        return True

    def prune(self, now: Optional[float] = None) -> int:
        """Drop timestamps outside the window and forget actors left with none."""
        now = self._clock() if now is None else now
        dropped = 0
        for key in list(self._windows.keys()):
            window = self._windows[key]
            self._prune_window(window, now)
            if not window:
                del self._windows[key]
                dropped += 1
        return dropped

    def __len__(self) -> int:
        return len(self._windows)
