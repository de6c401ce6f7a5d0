"""
LFG command service (dispatch boundary).

Owns the rate limiter and the registry wiring, routes typed requests,
rehydrates at startup and runs the periodic maintenance loop.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Type

import config
from logger import setup_logger

from .communities import CommunityDirectory
from .errors import PermissionDenied, RateLimited, ValidationError
from .fanout import AnnouncementFanout
from .gateway import ResourceGateway
from .models import SessionParams
from .protocol import (
    AnnouncementTarget,
    CommandRequest,
    CreateSessionRequest,
    FilterAction,
    GameFilterRequest,
    GameFilterView,
    HistoryPage,
    HistoryRequest,
    JoinSessionRequest,
    ListMembersRequest,
    MemberListing,
    ModifySessionRequest,
    RemoveMemberRequest,
    SetAnnouncementTargetRequest,
    StatsRequest,
)
from .rate_limiter import RateLimiter
from .registry import SessionRegistry
from .repository import SessionRepository
from .scheduler import AsyncioScheduler, Scheduler

logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)


@dataclass
class ServiceSettings:
    min_capacity: int = 1
    max_capacity: int = 10
    max_age_seconds: float = 24 * 60 * 60
    idle_grace_seconds: float = 5 * 60
    default_description: str = "No description"
    stream_url_pattern: str = r"^https?://(www\.)?twitch\.tv/[A-Za-z0-9_]{1,25}/?$"
    session_cache_ttl: float = 60 * 60
    target_ttl: float = 30 * 60
    filter_ttl: float = 60 * 60
    sweep_interval: float = 60.0
    rate_quota: int = 5
    rate_window: float = 60.0
    announce_on_roster_change: bool = True
    items_per_page: int = 10
    cache_metrics: bool = False

    @classmethod
    def from_config(cls) -> "ServiceSettings":
        return cls(
            min_capacity=int(getattr(config, "MIN_PLAYERS", 1)),
            max_capacity=int(getattr(config, "MAX_PLAYERS", 10)),
            max_age_seconds=float(getattr(config, "SESSION_MAX_AGE_SECONDS", 24 * 60 * 60)),
            idle_grace_seconds=float(getattr(config, "IDLE_GRACE_SECONDS", 5 * 60)),
            default_description=str(getattr(config, "DEFAULT_DESCRIPTION", "No description")),
            stream_url_pattern=str(getattr(config, "STREAM_URL_PATTERN", cls.stream_url_pattern)),
            session_cache_ttl=float(getattr(config, "SESSION_CACHE_TTL_SECONDS", 60 * 60)),
            target_ttl=float(getattr(config, "ANNOUNCEMENT_TARGET_TTL_SECONDS", 30 * 60)),
            filter_ttl=float(getattr(config, "GAME_FILTER_TTL_SECONDS", 60 * 60)),
            sweep_interval=float(getattr(config, "SWEEP_INTERVAL_SECONDS", 60.0)),
            rate_quota=int(getattr(config, "RATE_LIMIT_QUOTA", 5)),
            rate_window=float(getattr(config, "RATE_LIMIT_WINDOW_SECONDS", 60.0)),
            announce_on_roster_change=bool(getattr(config, "ANNOUNCE_ON_ROSTER_CHANGE", True)),
            items_per_page=int(getattr(config, "ITEMS_PER_PAGE", 10)),
            cache_metrics=bool(getattr(config, "CACHE_METRICS_ENABLED", False)),
        )


class LfgService:
    """
    Application layer for the bot.

    Every request goes through `dispatch`: rate limit first (one quota per
    actor shared by every command kind), then the handler for its type.
    """

    def __init__(
        self,
        gateway: ResourceGateway,
        repository: Optional[SessionRepository] = None,
        scheduler: Optional[Scheduler] = None,
        settings: Optional[ServiceSettings] = None,
    ) -> None:
        self.settings = settings or ServiceSettings.from_config()
        self.scheduler = scheduler or AsyncioScheduler()
        self.repository = repository
        self.gateway = gateway
        s = self.settings

        self.rate_limiter = RateLimiter(s.rate_quota, s.rate_window, clock=self.scheduler.now)
        self.directory = CommunityDirectory(repository, s.target_ttl, s.filter_ttl, clock=self.scheduler.now)
        self.fanout = AnnouncementFanout(self.directory, gateway)
        self.registry = SessionRegistry(
            gateway,
            self.scheduler,
            repository=repository,
            directory=self.directory,
            fanout=self.fanout,
            cache_ttl=s.session_cache_ttl,
            max_age=s.max_age_seconds,
            idle_grace=s.idle_grace_seconds,
            min_capacity=s.min_capacity,
            max_capacity=s.max_capacity,
            stream_url_pattern=s.stream_url_pattern,
            default_description=s.default_description,
            announce_on_roster_change=s.announce_on_roster_change,
        )

        self._handlers: Dict[Type[CommandRequest], Callable[[Any], Awaitable[Any]]] = {
            CreateSessionRequest: self._create,
            ModifySessionRequest: self._modify,
            JoinSessionRequest: self._join,
            RemoveMemberRequest: self._remove,
            ListMembersRequest: self._list_members,
            HistoryRequest: self._history,
            StatsRequest: self._stats,
            SetAnnouncementTargetRequest: self._set_target,
            GameFilterRequest: self._game_filter,
        }

        self._maintenance_task: Optional[asyncio.Task] = None
        self._started = False
        self._shutdown = False

    # ---------------------------
    # Lifecycle
    # ---------------------------
    async def start(self) -> None:
        """Load persisted state, reconcile it with the platform, start maintenance."""
        if self._started:
            return
        self._started = True
        self._shutdown = False

        if self.repository is not None:
            # RepositoryUnavailable propagates: the bot cannot run without its store
            state = await asyncio.to_thread(self.repository.load_all)
            self.registry.load(state)
        await self.registry.rehydrate()
        await self.registry.persist()
        await self.registry.refresh_presence()

        self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        logger.info("[LFG] service started")

    async def stop(self) -> None:
        self._shutdown = True
        task, self._maintenance_task = self._maintenance_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.registry.idle.cancel_all()
        # let idle deletions already under way finish before the final flush
        await self.scheduler.drain()
        await self.registry.persist()
        self._started = False
        logger.info("[LFG] service stopped, state saved")

    async def _maintenance_loop(self) -> None:
        interval = self.settings.sweep_interval
        logger.info(f"[LFG] maintenance loop started (interval={interval:.0f}s)")
        while not self._shutdown:
            await asyncio.sleep(interval)
            if self._shutdown:
                break
            try:
                await self.run_maintenance()
            except Exception as e:
                logger.error(f"[LFG] maintenance pass failed: {e}", exc_info=True)

    async def run_maintenance(self, now: Optional[float] = None) -> Dict[str, int]:
        """One maintenance pass. Safe to call by hand."""
        now = self.scheduler.now() if now is None else now
        pruned = self.rate_limiter.prune(now)
        expired = await self.registry.expire_stale(now)

        evicted = 0
        if self.repository is not None and await self.registry.persist():
            # flushed, so lapsed settings can be dropped and re-read on demand
            evicted = self.directory.evict_expired(now)

        sizes = self.registry.cache_sizes()
        targets, filters = self.directory.sizes()
        log = logger.info if self.settings.cache_metrics else logger.debug
        log(
            f"[LFG] caches: sessions={sizes['sessions']} rosters={sizes['rosters']} "
            f"targets={targets} filters={filters} rate_windows={len(self.rate_limiter)}"
        )
        return {"pruned_windows": pruned, "expired_sessions": len(expired), "evicted_entries": evicted}

    # ---------------------------
    # Inputs
    # ---------------------------
    async def dispatch(self, request: CommandRequest) -> Any:
        if not self.rate_limiter.admit(request.actor_id):
            logger.info(f"[LFG] rate limited {request.actor_id} ({type(request).__name__})")
            raise RateLimited(request.actor_id)
        handler = self._handlers.get(type(request))
        if handler is None:
            raise ValidationError(f"Unsupported command: {type(request).__name__}")
        return await handler(request)

    async def handle_occupancy(self, session_id: str, empty: bool) -> None:
        await self.registry.handle_occupancy(session_id, empty)

    async def handle_voice_room_activity(self, voice_room_id: str, empty: bool) -> Optional[str]:
        """Occupancy signal keyed by voice room. Returns the session id it mapped to."""
        session_id = self.registry.find_by_voice_room(str(voice_room_id))
        if session_id is None:
            return None
        await self.registry.handle_occupancy(session_id, empty)
        return session_id

    # ---------------------------
    # Handlers
    # ---------------------------
    @staticmethod
    def _require_manage(request: CommandRequest, what: str) -> None:
        if not request.can_manage:
            raise PermissionDenied(f"You need the manage permission to {what}.")

    async def _create(self, req: CreateSessionRequest):
        self._require_manage(req, "create a session")
        params = SessionParams(
            organizer_id=str(req.actor_id),
            organizer_name=req.actor_name,
            community_id=str(req.community_id),
            command_room_id=str(req.command_room_id),
            game=req.game,
            platform=req.platform,
            activity=req.activity,
            gametag=req.gametag,
            capacity=req.capacity,
            description=req.description or "",
            stream_url=req.stream_url,
            community_name=req.community_name,
        )
        return await self.registry.create(params)

    async def _modify(self, req: ModifySessionRequest):
        self._require_manage(req, "modify a session")
        return await self.registry.modify(
            req.session_id,
            capacity=req.capacity,
            description=req.description,
            community_id=req.community_id,
        )

    async def _join(self, req: JoinSessionRequest):
        return await self.registry.join(req.session_id, req.actor_id, community_id=req.community_id)

    async def _remove(self, req: RemoveMemberRequest):
        return await self.registry.remove(
            req.session_id,
            req.actor_id,
            req.target_id,
            mode=req.mode,
            community_id=req.community_id,
        )

    async def _list_members(self, req: ListMembersRequest) -> MemberListing:
        occupants = await self.registry.voice_occupants(req.session_id, community_id=req.community_id)
        snapshot = self.registry.snapshot(req.session_id)
        per_page = self.settings.items_per_page
        total_pages = max(1, math.ceil(len(occupants) / per_page))
        if req.page > total_pages:
            raise ValidationError(f"Invalid page. There are {total_pages} page(s).")
        start = (req.page - 1) * per_page
        return MemberListing(
            session_id=req.session_id,
            page=req.page,
            total_pages=total_pages,
            in_voice=occupants[start:start + per_page],
            in_voice_count=len(occupants),
            roster_count=snapshot.joined_count,
            capacity=snapshot.capacity,
        )

    async def _history(self, req: HistoryRequest) -> HistoryPage:
        sessions = self.registry.list_sessions()
        per_page = self.settings.items_per_page
        total_pages = max(1, math.ceil(len(sessions) / per_page))
        page = min(max(1, req.page), total_pages)
        start = (page - 1) * per_page
        return HistoryPage(
            page=page,
            total_pages=total_pages,
            total=len(sessions),
            sessions=sessions[start:start + per_page],
        )

    async def _stats(self, req: StatsRequest):
        return self.registry.stats()

    async def _set_target(self, req: SetAnnouncementTargetRequest) -> AnnouncementTarget:
        self._require_manage(req, "set the announcement room")
        self.directory.set_target(req.community_id, req.room_id)
        await self.registry.persist()
        return AnnouncementTarget(community_id=req.community_id, room_id=req.room_id)

    async def _game_filter(self, req: GameFilterRequest) -> GameFilterView:
        self._require_manage(req, "configure the game filter")
        cid = req.community_id
        game = (req.game or "").strip()

        if req.action == FilterAction.ADD:
            games = await self.directory.add_game(cid, game)
            status = f"{game} added to the filter."
        elif req.action == FilterAction.REMOVE:
            games = await self.directory.remove_game(cid, game)
            status = f"{game} removed from the filter."
        elif req.action == FilterAction.RESET:
            games = self.directory.reset_filter(cid)
            status = "Filter reset. All games are accepted."
        else:
            games = await self.directory.get_filter(cid)
            return GameFilterView(community_id=cid, games=games)

        await self.registry.persist()
        return GameFilterView(community_id=cid, games=games, status=status)
