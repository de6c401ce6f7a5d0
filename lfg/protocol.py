"""
LFG command/view protocol (Pydantic models).

Requests come from the command-dispatch boundary already parsed and tagged
with the actor, the community and the actor's manage capability.
Views are plain data for the presentation layer; the core renders nothing.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .models import Session


# ---------------------------
# Requests
# ---------------------------
class CommandRequest(BaseModel):
    actor_id: str
    community_id: str
    can_manage: bool = False


class CreateSessionRequest(CommandRequest):
    actor_name: str = ""
    community_name: str = ""
    command_room_id: str
    game: str
    platform: str
    activity: str
    gametag: str
    capacity: int
    description: Optional[str] = None
    stream_url: Optional[str] = None


class ModifySessionRequest(CommandRequest):
    session_id: str
    capacity: Optional[int] = None
    description: Optional[str] = None


class JoinSessionRequest(CommandRequest):
    session_id: str


class RemovalMode(str, Enum):
    KICK = "kick"
    BAN = "ban"


class RemoveMemberRequest(CommandRequest):
    session_id: str
    target_id: str
    mode: RemovalMode = RemovalMode.KICK


class ListMembersRequest(CommandRequest):
    session_id: str
    page: int = Field(1, ge=1)


class HistoryRequest(CommandRequest):
    page: int = 1


class StatsRequest(CommandRequest):
    pass


class SetAnnouncementTargetRequest(CommandRequest):
    room_id: str


class FilterAction(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    RESET = "reset"
    VIEW = "view"


class GameFilterRequest(CommandRequest):
    action: FilterAction = FilterAction.VIEW
    game: Optional[str] = None


# ---------------------------
# Views
# ---------------------------
class SessionSnapshot(BaseModel):
    id: str
    organizer_id: str
    organizer_name: str
    community_id: str
    community_name: str = ""
    command_room_id: str
    game: str
    platform: str
    activity: str
    gametag: str
    description: str
    stream_url: Optional[str] = None
    capacity: int
    created_at: float
    roster: List[str] = Field(default_factory=list, description="Member ids in join order")
    voice_room_id: Optional[str] = None
    text_room_id: Optional[str] = None
    info_room_id: Optional[str] = None
    info_message_id: Optional[str] = None
    command_message_id: Optional[str] = None
    modified: bool = False

    @property
    def joined_count(self) -> int:
        return len(self.roster)

    @property
    def is_full(self) -> bool:
        return len(self.roster) >= self.capacity

    @classmethod
    def of(cls, session: Session, roster: List[str], modified: bool = False) -> "SessionSnapshot":
        h = session.handles
        return cls(
            id=session.id,
            organizer_id=session.organizer_id,
            organizer_name=session.organizer_name,
            community_id=session.community_id,
            community_name=session.community_name,
            command_room_id=session.command_room_id,
            game=session.game,
            platform=session.platform,
            activity=session.activity,
            gametag=session.gametag,
            description=session.description,
            stream_url=session.stream_url,
            capacity=session.capacity,
            created_at=session.created_at,
            roster=list(roster),
            voice_room_id=h.voice_room_id,
            text_room_id=h.text_room_id,
            info_room_id=h.info_room_id,
            info_message_id=h.info_message_id,
            command_message_id=h.command_message_id,
            modified=modified,
        )


class StatsSnapshot(BaseModel):
    total_sessions: int
    total_players: int
    active_sessions: int
    active_players: int


class MemberListing(BaseModel):
    session_id: str
    page: int
    total_pages: int
    in_voice: List[str] = Field(default_factory=list, description="Voice occupants on this page")
    in_voice_count: int = 0
    roster_count: int = 0
    capacity: int


class HistoryPage(BaseModel):
    page: int
    total_pages: int
    total: int
    sessions: List[SessionSnapshot] = Field(default_factory=list)


class AnnouncementTarget(BaseModel):
    community_id: str
    room_id: str


class GameFilterView(BaseModel):
    community_id: str
    games: List[str] = Field(default_factory=list)
    status: str = ""

    @property
    def accepts_all(self) -> bool:
        return not self.games
