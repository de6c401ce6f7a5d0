"""
Community-scoped settings: announcement target room and accepted games.

Both maps live in TTL stores. Lapsed entries are evicted after a flush and a
missing entry is re-read from the repository, so eviction never loses a setting.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, List, Optional, Tuple

import config
from logger import setup_logger

from .errors import AlreadyInFilter, NotInFilter, ValidationError
from .repository import SessionRepository
from .ttl_store import TTLStore

logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)


class CommunityDirectory:
    def __init__(
        self,
        repository: Optional[SessionRepository],
        target_ttl: float = 30 * 60,
        filter_ttl: float = 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repository = repository
        self._targets: TTLStore[str, str] = TTLStore(target_ttl, clock)
        self._filters: TTLStore[str, List[str]] = TTLStore(filter_ttl, clock)

    # ---------------------------
    # Hydration / persistence view
    # ---------------------------
    def load(self, targets: Dict[str, str], filters: Dict[str, List[str]]) -> None:
        for cid, room_id in targets.items():
            self._targets.put(cid, room_id)
        for cid, games in filters.items():
            self._filters.put(cid, list(games))

    def export(self) -> Tuple[Dict[str, str], Dict[str, List[str]]]:
        targets = {cid: room for cid, room in self._targets.items()}
        filters = {cid: list(games) for cid, games in self._filters.items()}
        return targets, filters

    # ---------------------------
    # Announcement targets
    # ---------------------------
    def set_target(self, community_id: str, room_id: str) -> None:
        if not room_id:
            raise ValidationError("An announcement room is required.")
        self._targets.put(str(community_id), str(room_id))
        logger.info(f"Announcement target for {community_id} set to {room_id}")

    async def get_target(self, community_id: str) -> Optional[str]:
        room_id = self._targets.value(community_id)
        if room_id is not None or self.repository is None:
            return room_id
        room_id = await asyncio.to_thread(self.repository.load_target, community_id)
        if room_id is not None:
            self._targets.put(community_id, room_id)
        return room_id

    def targets(self) -> Dict[str, str]:
        """Targets currently held in memory."""
        return {cid: room for cid, room in self._targets.items()}

    async def all_targets(self) -> Dict[str, str]:
        """Every registered target: stored rows overlaid with what memory holds."""
        targets: Dict[str, str] = {}
        if self.repository is not None:
            targets.update(await asyncio.to_thread(self.repository.load_targets))
        targets.update(self.targets())
        return targets

    # ---------------------------
    # Game filters
    # ---------------------------
    async def get_filter(self, community_id: str) -> List[str]:
        # memory wins over the store, lapsed or not: it may hold an unsaved change
        games = self._filters.value(community_id)
        if games is not None:
            return list(games)
        games = []
        if self.repository is not None:
            games = await asyncio.to_thread(self.repository.load_filter, community_id)
        self._filters.put(community_id, list(games))
        return list(games)

    async def is_game_allowed(self, community_id: str, game: str) -> bool:
        games = await self.get_filter(community_id)
        return not games or game in games

    async def add_game(self, community_id: str, game: str) -> List[str]:
        if not game:
            raise ValidationError("Specify a game to add.")
        games = await self.get_filter(community_id)
        if game in games:
            raise AlreadyInFilter(game)
        games.append(game)
        self._filters.put(community_id, games)
        return list(games)

    async def remove_game(self, community_id: str, game: str) -> List[str]:
        if not game:
            raise ValidationError("Specify a game to remove.")
        games = await self.get_filter(community_id)
        if game not in games:
            raise NotInFilter(game)
        games = [g for g in games if g != game]
        self._filters.put(community_id, games)
        return list(games)

    def reset_filter(self, community_id: str) -> List[str]:
        self._filters.put(community_id, [])
        return []

    # ---------------------------
    # Maintenance
    # ---------------------------
    def evict_expired(self, now: Optional[float] = None) -> int:
        """
        Drop lapsed targets and filters from memory. Returns how many were dropped.

        Only call this right after a successful flush: later reads go back to
        the repository, so anything unsaved would be lost.
        """
        if self.repository is None:
            return 0
        targets = self._targets.sweep(now)
        filters = self._filters.sweep(now)
        if targets or filters:
            logger.debug(f"Evicted {len(targets)} target(s) and {len(filters)} filter(s) from memory")
        return len(targets) + len(filters)

    def sizes(self) -> Tuple[int, int]:
        return len(self._targets), len(self._filters)
