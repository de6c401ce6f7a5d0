"""
Session registry: the single authority over sessions, rosters and stats.

Locking discipline (per session id):
    acquire -> check invariants / decide -> release
    -> external side effects (gateway) -> re-acquire briefly to commit
The lock is never held across a gateway call or a repository save.
Invariant checks always happen before mutation; nothing is compensated after.
"""

from __future__ import annotations

import asyncio
import random
import re
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Dict, List, Optional, Set

import config
from logger import setup_logger

from .communities import CommunityDirectory
from .errors import (
    AlreadyJoined,
    GameNotAllowed,
    MemberNotPresent,
    NoFreeSessionId,
    NotOrganizer,
    PartialFailure,
    ResourceCreationError,
    SessionFull,
    SessionNotFound,
    ValidationError,
)
from .fanout import AnnouncementFanout, FanoutReport
from .gateway import ResourceGateway
from .locks import KeyedLocks
from .models import AggregateStats, Session, SessionParams
from .protocol import RemovalMode, SessionSnapshot, StatsSnapshot
from .repository import PersistedState, SessionRepository
from .scheduler import IdleExpiryScheduler, Scheduler
from .ttl_store import TTLStore

logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)

SESSION_ID_MIN = 1000
SESSION_ID_MAX = 9999


@dataclass
class CreateOutcome:
    snapshot: SessionSnapshot
    # failures relevant to the organizer's own community only
    failures: List[PartialFailure] = field(default_factory=list)
    fanout: Optional[FanoutReport] = None


@dataclass
class RemovalAck:
    session_id: str
    member_id: str
    mode: RemovalMode
    removed_from_roster: bool
    snapshot: Optional[SessionSnapshot] = None
    failures: List[PartialFailure] = field(default_factory=list)


class SessionRegistry:
    def __init__(
        self,
        gateway: ResourceGateway,
        scheduler: Scheduler,
        repository: Optional[SessionRepository] = None,
        directory: Optional[CommunityDirectory] = None,
        fanout: Optional[AnnouncementFanout] = None,
        *,
        cache_ttl: float = 60 * 60,
        max_age: float = 24 * 60 * 60,
        idle_grace: float = 5 * 60,
        min_capacity: int = 1,
        max_capacity: int = 10,
        stream_url_pattern: str = r"^https?://(www\.)?twitch\.tv/[A-Za-z0-9_]{1,25}/?$",
        default_description: str = "No description",
        announce_on_roster_change: bool = True,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.gateway = gateway
        self.scheduler = scheduler
        self.repository = repository
        self.directory = directory
        self.fanout = fanout

        self.max_age = float(max_age)
        self.min_capacity = int(min_capacity)
        self.max_capacity = int(max_capacity)
        self.default_description = default_description
        self.announce_on_roster_change = bool(announce_on_roster_change)
        self._stream_url_re = re.compile(stream_url_pattern)
        self._rng = rng or random.Random()

        self._sessions: TTLStore[str, Session] = TTLStore(cache_ttl, scheduler.now)
        self._rosters: TTLStore[str, List[str]] = TTLStore(cache_ttl, scheduler.now)
        self._stats = AggregateStats()
        self._locks = KeyedLocks()
        self._reserved_ids: Set[str] = set()
        self._save_lock = asyncio.Lock()

        self.idle = IdleExpiryScheduler(
            scheduler=scheduler,
            grace_seconds=idle_grace,
            probe_empty=self._probe_empty,
            on_fire=self._expire_idle,
        )

    # ---------------------------
    # Hydration / persistence
    # ---------------------------
    def load(self, state: PersistedState) -> None:
        """Adopt a loaded state as the new source of truth (startup only)."""
        self._sessions.clear()
        self._rosters.clear()
        for sid, session in state.sessions.items():
            roster = list(dict.fromkeys(state.rosters.get(sid) or [session.organizer_id]))
            self._sessions.put(sid, session)
            self._rosters.put(sid, roster)
        self._stats = AggregateStats(state.stats.total_sessions, state.stats.total_players)
        if self.directory is not None:
            self.directory.load(state.targets, state.filters)

    def export_state(self) -> PersistedState:
        sessions = {sid: s.copy() for sid, s in self._sessions.items()}
        rosters = {sid: list(r) for sid, r in self._rosters.items() if sid in sessions}
        targets: Dict[str, str] = {}
        filters: Dict[str, List[str]] = {}
        if self.directory is not None:
            targets, filters = self.directory.export()
        return PersistedState(
            sessions=sessions,
            rosters=rosters,
            stats=AggregateStats(self._stats.total_sessions, self._stats.total_players),
            targets=targets,
            filters=filters,
        )

    async def persist(self) -> bool:
        """Flush the full state. A failure is logged and memory stays authoritative."""
        if self.repository is None:
            return True
        async with self._save_lock:
            state = self.export_state()
            try:
                await asyncio.to_thread(self.repository.save_all, state)
            except Exception as e:
                logger.warning(f"[Durability] save failed, in-memory state kept: {e}")
                return False
        logger.debug(f"Saved {len(state.sessions)} session(s)")
        return True

    async def rehydrate(self) -> Dict[str, int]:
        """
        After `load`: drop sessions whose voice room is gone and arm idle timers
        for every session whose voice room is empty right now.
        """
        counts = {"armed": 0, "dropped": 0, "occupied": 0}
        for sid in self._sessions.keys():
            session = self._sessions.value(sid)
            if session is None:
                continue
            try:
                occupants = await self.gateway.voice_occupants(session.handles)
            except Exception as e:
                logger.warning(f"Cannot read voice room of {sid} at startup, arming idle timer: {e}")
                self.idle.arm(sid)
                counts["armed"] += 1
                continue
            if occupants is None:
                logger.info(f"Voice room of session {sid} no longer exists, deleting")
                await self.delete(sid, reason="voice room missing")
                counts["dropped"] += 1
            elif not occupants:
                self.idle.arm(sid)
                counts["armed"] += 1
            else:
                counts["occupied"] += 1
        logger.info(
            f"Rehydrated {len(self._sessions)} session(s): {counts['armed']} idle timer(s) armed, "
            f"{counts['dropped']} dropped"
        )
        return counts

    # ---------------------------
    # Views
    # ---------------------------
    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def roster(self, session_id: str) -> List[str]:
        return list(self._rosters.value(session_id) or [])

    def snapshot(self, session_id: str) -> SessionSnapshot:
        session = self._sessions.value(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return SessionSnapshot.of(session, self.roster(session_id))

    def list_sessions(self) -> List[SessionSnapshot]:
        sessions = sorted((s for _, s in self._sessions.items()), key=lambda s: s.created_at)
        return [SessionSnapshot.of(s, self.roster(s.id)) for s in sessions]

    def stats(self) -> StatsSnapshot:
        return StatsSnapshot(
            total_sessions=self._stats.total_sessions,
            total_players=self._stats.total_players,
            active_sessions=len(self._sessions),
            active_players=sum(len(r) for _, r in self._rosters.items()),
        )

    def find_by_voice_room(self, room_id: str) -> Optional[str]:
        if not room_id:
            return None
        for sid, s in self._sessions.items():
            if s.handles.voice_room_id == str(room_id):
                return sid
        return None

    async def voice_occupants(self, session_id: str, community_id: Optional[str] = None) -> List[str]:
        session = self._require(session_id, community_id)
        occupants = await self._occupants(session)
        return occupants or []

    def cache_sizes(self) -> Dict[str, int]:
        return {"sessions": len(self._sessions), "rosters": len(self._rosters), "locks": len(self._locks)}

    # ---------------------------
    # Create
    # ---------------------------
    def validate_capacity(self, capacity: Optional[int]) -> int:
        if capacity is None or not (self.min_capacity <= int(capacity) <= self.max_capacity):
            raise ValidationError(
                f"Player count must be between {self.min_capacity} and {self.max_capacity}."
            )
        return int(capacity)

    def normalize_stream_url(self, raw: Optional[str]) -> Optional[str]:
        if raw is None or not raw.strip():
            return None
        url = raw.strip()
        if not self._stream_url_re.match(url):
            raise ValidationError("Invalid stream link. Expected format: https://twitch.tv/channelname")
        return url.rstrip("/")

    async def create(self, params: SessionParams) -> CreateOutcome:
        capacity = self.validate_capacity(params.capacity)
        stream_url = self.normalize_stream_url(params.stream_url)
        description = (params.description or "").strip() or self.default_description

        if self.directory is not None and not await self.directory.is_game_allowed(params.community_id, params.game):
            raise GameNotAllowed(params.game, await self.directory.get_filter(params.community_id))

        params = replace(params, capacity=capacity, description=description, stream_url=stream_url)

        session_id = self._reserve_id()
        failures: List[PartialFailure] = []
        try:
            try:
                handles = await self.gateway.create_session_resources(params, session_id)
            except ResourceCreationError as e:
                handles = e.handles
                if handles is None or not handles.voice_room_id:
                    orphans = handles.room_ids() if handles is not None else []
                    logger.error(
                        f"Session {session_id} resource creation failed before the voice room existed: {e.message}"
                        f" (left behind: {orphans or 'nothing'})"
                    )
                    raise
                # no rollback: record what exists, report the rest
                logger.warning(f"Session {session_id} created with missing resources: {e.message}")
                failures.append(PartialFailure("create_resources", e.message, params.community_id))
            except Exception as e:
                logger.error(f"Session {session_id} resource creation failed: {e}", exc_info=True)
                raise ResourceCreationError(f"Could not create the session rooms: {e}") from e

            async with self._locks.hold(session_id):
                session = Session.from_params(session_id, params, handles, created_at=self.scheduler.now())
                self._sessions.put(session_id, session)
                self._rosters.put(session_id, [params.organizer_id])
                self._stats.total_sessions += 1
                self._stats.total_players += capacity
                snapshot = SessionSnapshot.of(session, [params.organizer_id])
        finally:
            self._reserved_ids.discard(session_id)

        logger.info(f"Session {session_id} created by {params.organizer_name or params.organizer_id} ({params.game}, {capacity} players)")
        await self.persist()
        await self.refresh_presence()

        occupants = await self._occupants(session)
        if not occupants:
            self.idle.arm(session_id)

        report = None
        if self.fanout is not None:
            report = await self.fanout.announce(snapshot)
        return CreateOutcome(snapshot=snapshot, failures=failures, fanout=report)

    def _reserve_id(self) -> str:
        taken = set(self._sessions.keys()) | self._reserved_ids
        if len(taken) >= SESSION_ID_MAX - SESSION_ID_MIN + 1:
            raise NoFreeSessionId()
        for _ in range(50):
            candidate = str(self._rng.randint(SESSION_ID_MIN, SESSION_ID_MAX))
            if candidate not in taken:
                self._reserved_ids.add(candidate)
                return candidate
        # crowded id space: take the first free one
        for n in range(SESSION_ID_MIN, SESSION_ID_MAX + 1):
            candidate = str(n)
            if candidate not in taken:
                self._reserved_ids.add(candidate)
                return candidate
        raise NoFreeSessionId()

    # ---------------------------
    # Modify
    # ---------------------------
    async def modify(
        self,
        session_id: str,
        capacity: Optional[int] = None,
        description: Optional[str] = None,
        community_id: Optional[str] = None,
    ) -> SessionSnapshot:
        """
        Capacity and/or description. The caller has already checked the manage capability.

        Lowering capacity below the current roster size is allowed; nobody is evicted.
        """
        new_description = description.strip() if description else None
        if capacity is None and not new_description:
            raise ValidationError("Provide at least one field to modify.")
        if capacity is not None:
            capacity = self.validate_capacity(capacity)

        async with self._locks.hold(session_id):
            session = self._require(session_id, community_id)
            old_capacity = session.capacity
            if capacity is not None:
                self._stats.total_players += capacity - old_capacity
                session.capacity = capacity
            if new_description:
                session.description = new_description
            self._commit(session_id)
            snapshot = SessionSnapshot.of(session, self.roster(session_id), modified=True)
            handles = session.handles

        logger.info(f"Session {session_id} modified (capacity {old_capacity} -> {snapshot.capacity})")
        await self.persist()

        if capacity is not None and capacity != old_capacity:
            await self._attempt("resize_voice_room", self.gateway.resize_voice_room(handles, capacity), snapshot.community_id)
        await self._attempt("update_display", self.gateway.update_display(snapshot), snapshot.community_id)
        return snapshot

    # ---------------------------
    # Join
    # ---------------------------
    async def join(self, session_id: str, actor_id: str, community_id: Optional[str] = None) -> SessionSnapshot:
        actor_id = str(actor_id)
        async with self._locks.hold(session_id):
            session = self._require(session_id, community_id)
            roster = self._rosters.value(session_id)
            if roster is None:
                roster = []
            if actor_id in roster:
                raise AlreadyJoined(session_id)
            if len(roster) >= session.capacity:
                raise SessionFull(session_id)
            roster.append(actor_id)
            self._rosters.put(session_id, roster)
            self._sessions.touch(session_id)
            snapshot = SessionSnapshot.of(session, roster)

        logger.info(f"{actor_id} joined session {session_id} ({snapshot.joined_count}/{snapshot.capacity})")
        await self.persist()
        await self._after_roster_change(snapshot)
        return snapshot

    # ---------------------------
    # Kick / ban
    # ---------------------------
    async def remove(
        self,
        session_id: str,
        actor_id: str,
        target_id: str,
        mode: RemovalMode = RemovalMode.KICK,
        community_id: Optional[str] = None,
    ) -> RemovalAck:
        actor_id, target_id = str(actor_id), str(target_id)
        mode = RemovalMode(mode)

        async with self._locks.hold(session_id):
            session = self._require(session_id, community_id)
            if actor_id != session.organizer_id:
                raise NotOrganizer(session_id)
            handles = session.handles
            owner_community = session.community_id

        occupants = await self._occupants(session)
        if not occupants or target_id not in occupants:
            raise MemberNotPresent(session_id, target_id)

        # the member may have left already; the roster is still cleaned up
        failures: List[PartialFailure] = []
        failure = await self._attempt("disconnect_member", self.gateway.disconnect_member(handles, target_id), owner_community)
        if failure:
            failures.append(failure)
        if mode == RemovalMode.BAN:
            failure = await self._attempt(
                "ban_member",
                self.gateway.ban_member(owner_community, target_id, f"Banned from LFG session {session_id}"),
                owner_community,
            )
            if failure:
                failures.append(failure)

        removed = False
        snapshot = None
        async with self._locks.hold(session_id):
            session = self._sessions.value(session_id)
            if session is not None:
                roster = self._rosters.value(session_id) or []
                if target_id in roster:
                    roster = [m for m in roster if m != target_id]
                    self._rosters.put(session_id, roster)
                    self._sessions.touch(session_id)
                    removed = True
                snapshot = SessionSnapshot.of(session, roster)

        logger.info(f"{target_id} {mode.value}ed from session {session_id} (roster updated: {removed})")
        if removed:
            await self.persist()
            await self._after_roster_change(snapshot)
        return RemovalAck(
            session_id=session_id,
            member_id=target_id,
            mode=mode,
            removed_from_roster=removed,
            snapshot=snapshot,
            failures=failures,
        )

    # ---------------------------
    # Delete / expiry
    # ---------------------------
    async def delete(
        self,
        session_id: str,
        reason: str = "",
        condition: Optional[Callable[[Session], bool]] = None,
    ) -> bool:
        """
        Idempotent. Returns False when nothing was deleted.

        `condition` is re-checked under the session lock, so a session refreshed
        in the meantime survives a stale expiry decision.
        """
        async with self._locks.hold(session_id):
            session = self._sessions.value(session_id)
            if session is None:
                self._rosters.pop(session_id)
                self.idle.forget(session_id)
                return False
            if condition is not None and not condition(session):
                return False
            self._sessions.pop(session_id)
            self._rosters.pop(session_id)
            self.idle.forget(session_id)

        logger.info(f"Session {session_id} deleted{f' ({reason})' if reason else ''}")
        await self._attempt("teardown_resources", self.gateway.teardown_resources(session.handles), session.community_id)
        await self.persist()
        await self.refresh_presence()
        return True

    async def expire_stale(self, now: Optional[float] = None) -> List[str]:
        """
        Delete sessions older than max_age, then sweep lapsed cache entries.

        Whatever the sweep removes is cascaded: its roster, its idle timer and
        its platform rooms go with it.
        """
        now = self.scheduler.now() if now is None else now

        def _too_old(session: Session) -> bool:
            return now - session.created_at > self.max_age

        deleted: List[str] = []
        for sid in [sid for sid, s in self._sessions.items() if _too_old(s)]:
            if await self.delete(sid, reason="max age reached", condition=_too_old):
                deleted.append(sid)

        swept = self._sessions.sweep(now)
        for sid in swept:
            self._rosters.pop(sid)
            self.idle.forget(sid)
        for sid, session in swept.items():
            logger.info(f"Session {sid} deleted (cache entry lapsed)")
            await self._attempt("teardown_resources", self.gateway.teardown_resources(session.handles), session.community_id)
            deleted.append(sid)
        if swept:
            await self.persist()
            await self.refresh_presence()
        return deleted

    # ---------------------------
    # Occupancy
    # ---------------------------
    async def handle_occupancy(self, session_id: str, empty: bool) -> None:
        async with self._locks.hold(session_id):
            if session_id not in self._sessions:
                return
            self._commit(session_id)
            if empty:
                self.idle.on_empty(session_id)
            else:
                self.idle.on_occupied(session_id)

    # ---------------------------
    # Internals
    # ---------------------------
    def _require(self, session_id: str, community_id: Optional[str]) -> Session:
        session = self._sessions.value(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if community_id is not None and session.community_id != str(community_id):
            raise SessionNotFound(session_id)
        return session

    def _commit(self, session_id: str) -> None:
        # session and roster expire together
        self._sessions.touch(session_id)
        if not self._rosters.touch(session_id):
            self._rosters.put(session_id, [])

    async def _occupants(self, session: Session) -> Optional[List[str]]:
        try:
            occupants = await self.gateway.voice_occupants(session.handles)
        except Exception as e:
            logger.warning(f"Cannot read voice room of session {session.id}: {e}")
            return None
        return None if occupants is None else [str(m) for m in occupants]

    async def _probe_empty(self, session_id: str) -> bool:
        session = self._sessions.value(session_id)
        if session is None:
            return True
        try:
            occupants = await self.gateway.voice_occupants(session.handles)
        except Exception as e:
            # unknown is not empty: keep the session
            logger.warning(f"Idle check for {session_id} failed, keeping session: {e}")
            return False
        return not occupants

    async def _expire_idle(self, session_id: str) -> None:
        await self.delete(session_id, reason="voice room idle")

    async def _after_roster_change(self, snapshot: SessionSnapshot) -> None:
        await self._attempt("update_display", self.gateway.update_display(snapshot), snapshot.community_id)
        await self.refresh_presence()
        if self.fanout is not None and self.announce_on_roster_change:
            await self.fanout.announce(snapshot)

    async def refresh_presence(self) -> None:
        stats = self.stats()
        await self._attempt(
            "update_presence", self.gateway.update_presence(stats.active_sessions, stats.active_players)
        )

    async def _attempt(self, step: str, call: Awaitable[None], community_id: Optional[str] = None) -> Optional[PartialFailure]:
        try:
            await call
        except Exception as e:
            logger.warning(f"[{step}] failed: {e}")
            return PartialFailure(step=step, detail=str(e), community_id=community_id)
        return None
