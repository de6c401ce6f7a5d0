"""
Cross-community announcement fan-out.

Each eligible community is delivered to independently. One failing target is
logged and reported; it never stops the others and never touches the session.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import List, Tuple

import config
from logger import setup_logger

from .communities import CommunityDirectory
from .errors import PartialFailure
from .gateway import ResourceGateway
from .protocol import SessionSnapshot

logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)


@dataclass
class FanoutReport:
    session_id: str
    delivered: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failures: List[PartialFailure] = field(default_factory=list)

    @property
    def failed(self) -> List[str]:
        return [f.community_id for f in self.failures if f.community_id]


class AnnouncementFanout:
    def __init__(self, directory: CommunityDirectory, gateway: ResourceGateway) -> None:
        self.directory = directory
        self.gateway = gateway

    async def eligible_targets(self, snapshot: SessionSnapshot, report: FanoutReport) -> List[Tuple[str, str]]:
        """(community, room) pairs to deliver to. Filtered and unreadable communities go into `report`."""
        eligible: List[Tuple[str, str]] = []
        try:
            targets = await self.directory.all_targets()
        except Exception as e:
            logger.warning(f"Announcement targets for {snapshot.id} could not be read: {e}")
            report.failures.append(PartialFailure(step="announce", detail=str(e)))
            return eligible

        for community_id, room_id in targets.items():
            if community_id == snapshot.community_id:
                continue
            try:
                allowed = await self.directory.is_game_allowed(community_id, snapshot.game)
            except Exception as e:
                logger.warning(f"Game filter of {community_id} could not be read, skipping announcement: {e}")
                report.failures.append(
                    PartialFailure(step="game_filter", detail=str(e), community_id=community_id)
                )
                continue
            if not allowed:
                logger.debug(f"Announcement for {snapshot.id} filtered for {community_id} (game {snapshot.game!r})")
                report.skipped.append(community_id)
                continue
            eligible.append((community_id, room_id))
        return eligible

    async def announce(self, snapshot: SessionSnapshot) -> FanoutReport:
        report = FanoutReport(session_id=snapshot.id)
        eligible = await self.eligible_targets(snapshot, report)
        if not eligible:
            return report

        async def _deliver(community_id: str, room_id: str) -> None:
            try:
                await self.gateway.send_announcement(room_id, snapshot)
            except Exception as e:
                logger.warning(f"Announcement of {snapshot.id} to {community_id} failed: {e}")
                report.failures.append(
                    PartialFailure(step="announce", detail=str(e), community_id=community_id)
                )
                return
            report.delivered.append(community_id)

        await asyncio.gather(*(_deliver(cid, room) for cid, room in eligible))

        logger.info(
            f"Session {snapshot.id} announced to {len(report.delivered)} community(ies)"
            f" ({len(report.skipped)} filtered, {len(report.failures)} failed)"
        )
        return report
