"""
Idle-expiry scheduling.

Per session state machine:

    DISARMED --empty--> ARMED --occupied--> DISARMED
    ARMED --empty--> ARMED (timer replaced)
    ARMED --deadline, still empty--> FIRED (terminal, session deleted)

Timers run on an injected Scheduler so tests can move time by hand.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Protocol, Set

import config
from logger import setup_logger

logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)

TimerCallback = Callable[[], Awaitable[None]]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def now(self) -> float:
        ...

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        ...

    async def drain(self) -> None:
        """Wait for callbacks that are already running."""
        ...


class AsyncioScheduler:
    """Wall clock + event-loop timers. Callbacks run as tasks; their errors are logged."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._tasks: Set[asyncio.Task] = set()

    def now(self) -> float:
        return time.time()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay: float, callback: TimerCallback) -> asyncio.TimerHandle:
        loop = self._get_loop()
        return loop.call_later(max(0.0, delay), self._spawn, callback)

    def _spawn(self, callback: TimerCallback) -> None:
        task = self._get_loop().create_task(callback())
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Timer callback failed: {exc}", exc_info=exc)

    async def drain(self) -> None:
        """Wait for callbacks already running (shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class IdleState(str, Enum):
    DISARMED = "disarmed"
    ARMED = "armed"
    FIRED = "fired"


@dataclass
class _Timer:
    token: int
    deadline: float
    handle: TimerHandle


class IdleExpiryScheduler:
    """
    Arms a grace countdown when a session's voice room empties.

    probe_empty(session_id) re-checks the room at the deadline; on_fire(session_id)
    performs the deletion. Both are awaited outside any registry lock.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        grace_seconds: float,
        probe_empty: Callable[[str], Awaitable[bool]],
        on_fire: Callable[[str], Awaitable[None]],
    ) -> None:
        self.scheduler = scheduler
        self.grace_seconds = float(grace_seconds)
        self._probe_empty = probe_empty
        self._on_fire = on_fire
        self._timers: Dict[str, _Timer] = {}
        self._states: Dict[str, IdleState] = {}
        self._next_token = 0

    def state(self, session_id: str) -> IdleState:
        return self._states.get(session_id, IdleState.DISARMED)

    def deadline(self, session_id: str) -> Optional[float]:
        t = self._timers.get(session_id)
        return t.deadline if t else None

    def on_empty(self, session_id: str) -> None:
        self.arm(session_id)

    def on_occupied(self, session_id: str) -> None:
        self.disarm(session_id)

    def arm(self, session_id: str) -> None:
        """(Re)start the countdown. Any previous timer for this session is cancelled first."""
        if self.state(session_id) == IdleState.FIRED:
            return
        self._cancel_timer(session_id)
        self._next_token += 1
        token = self._next_token
        handle = self.scheduler.call_later(self.grace_seconds, lambda: self._fire(session_id, token))
        self._timers[session_id] = _Timer(
            token=token,
            deadline=self.scheduler.now() + self.grace_seconds,
            handle=handle,
        )
        self._states[session_id] = IdleState.ARMED
        logger.debug(f"[Idle] armed {session_id} ({self.grace_seconds:.0f}s)")

    def disarm(self, session_id: str) -> None:
        if self.state(session_id) != IdleState.ARMED:
            return
        self._cancel_timer(session_id)
        self._states[session_id] = IdleState.DISARMED
        logger.debug(f"[Idle] disarmed {session_id}")

    def forget(self, session_id: str) -> None:
        """Session is gone: drop timer and state."""
        self._cancel_timer(session_id)
        self._states.pop(session_id, None)

    def cancel_all(self) -> None:
        for sid in list(self._timers.keys()):
            self._cancel_timer(sid)

    def _cancel_timer(self, session_id: str) -> None:
        t = self._timers.pop(session_id, None)
        if t is not None:
            t.handle.cancel()

    def _is_current(self, session_id: str, token: int) -> bool:
        t = self._timers.get(session_id)
        return (
            t is not None
            and t.token == token
            and self.state(session_id) == IdleState.ARMED
        )

    async def _fire(self, session_id: str, token: int) -> None:
        if not self._is_current(session_id, token):
            return

        still_empty = await self._probe_empty(session_id)

        # an occupancy event may have landed while probing
        if not self._is_current(session_id, token):
            return
        self._timers.pop(session_id, None)

        if not still_empty:
            self._states[session_id] = IdleState.DISARMED
            logger.debug(f"[Idle] {session_id} occupied at deadline, disarmed")
            return

        self._states[session_id] = IdleState.FIRED
        logger.info(f"[Idle] voice room empty for {session_id}, deleting session")
        await self._on_fire(session_id)
