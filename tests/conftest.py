from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

import pytest

from lfg.errors import ResourceCreationError
from lfg.models import ResourceHandles, SessionParams
from lfg.protocol import SessionSnapshot
from lfg.registry import SessionRegistry
from lfg.repository import SessionRepository
from lfg.service import LfgService, ServiceSettings


# -----------------------------
# Manual time
# -----------------------------

class ManualTimer:
    def __init__(self, when: float, seq: int, callback: Callable[[], Awaitable[None]]) -> None:
        self.when = when
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose clock only moves on `advance`. Due callbacks are awaited in order."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = start
        self._seq = 0
        self._timers: List[ManualTimer] = []
        self.drained = 0

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], Awaitable[None]]) -> ManualTimer:
        self._seq += 1
        timer = ManualTimer(self._now + max(0.0, delay), self._seq, callback)
        self._timers.append(timer)
        return timer

    def pending(self) -> List[ManualTimer]:
        return [t for t in self._timers if not t.cancelled]

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while True:
            due = sorted(
                (t for t in self._timers if not t.cancelled and t.when <= target),
                key=lambda t: (t.when, t.seq),
            )
            if not due:
                break
            timer = due[0]
            self._timers.remove(timer)
            self._now = max(self._now, timer.when)
            await timer.callback()
        self._now = target
        self._timers = [t for t in self._timers if not t.cancelled]

    async def drain(self) -> None:
        # callbacks run inline in `advance`, nothing is ever left in flight
        self.drained += 1


# -----------------------------
# Fake platform
# -----------------------------

class FakeGateway:
    """In-memory ResourceGateway. Voice rooms are keyed by their handle id."""

    def __init__(self) -> None:
        self.created: List[str] = []
        self.torn_down: List[ResourceHandles] = []
        self.displays: List[SessionSnapshot] = []
        self.announcements: List[Tuple[str, SessionSnapshot]] = []
        self.disconnected: List[str] = []
        self.banned: List[Tuple[str, str]] = []
        self.resized: List[Tuple[str, int]] = []
        self.presence: List[Tuple[int, int]] = []

        self.occupants: Dict[str, List[str]] = {}
        self.missing_rooms: Set[str] = set()
        self.failing_announce_rooms: Set[str] = set()
        self.create_error: Optional[str] = None  # None | "partial" | "total"
        self.fail_disconnect = False
        self.seed_occupants: List[str] = []
        self.yield_on_display = False

    @staticmethod
    def voice_id(session_id: str) -> str:
        return f"voice-{session_id}"

    async def create_session_resources(self, params: SessionParams, session_id: str) -> ResourceHandles:
        if self.create_error == "total":
            raise ResourceCreationError("Missing permission to create a category.")
        if self.create_error == "partial":
            self.occupants.setdefault(self.voice_id(session_id), [])
            raise ResourceCreationError(
                "Info room could not be created.",
                handles=ResourceHandles(
                    category_id=f"cat-{session_id}",
                    voice_room_id=self.voice_id(session_id),
                    text_room_id=f"text-{session_id}",
                ),
            )
        self.created.append(session_id)
        self.occupants.setdefault(self.voice_id(session_id), list(self.seed_occupants))
        return ResourceHandles(
            category_id=f"cat-{session_id}",
            voice_room_id=self.voice_id(session_id),
            text_room_id=f"text-{session_id}",
            info_room_id=f"info-{session_id}",
            info_message_id=f"msg-info-{session_id}",
            command_message_id=f"msg-cmd-{session_id}",
        )

    async def teardown_resources(self, handles: ResourceHandles) -> None:
        self.torn_down.append(handles)

    async def update_display(self, snapshot: SessionSnapshot) -> None:
        if self.yield_on_display:
            await asyncio.sleep(0)
        self.displays.append(snapshot)

    async def send_announcement(self, target_room_id: str, snapshot: SessionSnapshot) -> None:
        if target_room_id in self.failing_announce_rooms:
            raise RuntimeError(f"webhook creation refused in {target_room_id}")
        self.announcements.append((target_room_id, snapshot))

    async def voice_occupants(self, handles: ResourceHandles) -> Optional[List[str]]:
        room = handles.voice_room_id
        if not room or room in self.missing_rooms:
            return None
        return list(self.occupants.get(room, []))

    async def disconnect_member(self, handles: ResourceHandles, member_id: str) -> None:
        if self.fail_disconnect:
            raise RuntimeError("member already left")
        self.disconnected.append(member_id)
        room = self.occupants.get(handles.voice_room_id or "", [])
        if member_id in room:
            room.remove(member_id)

    async def ban_member(self, community_id: str, member_id: str, reason: str) -> None:
        self.banned.append((community_id, member_id))

    async def resize_voice_room(self, handles: ResourceHandles, capacity: int) -> None:
        self.resized.append((handles.voice_room_id or "", capacity))

    async def update_presence(self, active_sessions: int, active_players: int) -> None:
        self.presence.append((active_sessions, active_players))


# -----------------------------
# Fixtures
# -----------------------------

@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'lfg.db'}"


@pytest.fixture
def repository(db_url):
    repo = SessionRepository(db_url)
    yield repo
    repo.close()


@pytest.fixture
def make_params():
    def _make(**overrides) -> SessionParams:
        fields = {
            "organizer_id": "100",
            "organizer_name": "Orga",
            "community_id": "g1",
            "command_room_id": "cmd-1",
            "game": "Valorant",
            "platform": "PC",
            "activity": "Ranked",
            "gametag": "orga#0001",
            "capacity": 3,
        }
        fields.update(overrides)
        return SessionParams(**fields)
    return _make


@pytest.fixture
def registry(gateway, scheduler):
    return SessionRegistry(gateway, scheduler, rng=random.Random(7))


@pytest.fixture
def settings():
    return ServiceSettings(rate_quota=100)


@pytest.fixture
def make_service(gateway, scheduler, settings):
    def _make(repository=None, **overrides) -> LfgService:
        s = ServiceSettings(**{**settings.__dict__, **overrides})
        return LfgService(gateway, repository=repository, scheduler=scheduler, settings=s)
    return _make
