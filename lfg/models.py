"""
In-memory session state for the LFG core.

Session scope: one organizer, one community, one voice room.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import List, Optional


@dataclass(frozen=True)
class ResourceHandles:
    """Platform ids of everything a session owns. Missing pieces stay None."""

    category_id: Optional[str] = None
    voice_room_id: Optional[str] = None
    text_room_id: Optional[str] = None
    info_room_id: Optional[str] = None
    info_message_id: Optional[str] = None
    command_message_id: Optional[str] = None

    def room_ids(self) -> List[str]:
        # teardown order: rooms first, category last
        ids = [self.voice_room_id, self.text_room_id, self.info_room_id, self.category_id]
        return [i for i in ids if i]


@dataclass(frozen=True)
class SessionParams:
    """Validated input of a create command."""

    organizer_id: str
    organizer_name: str
    community_id: str
    command_room_id: str
    game: str
    platform: str
    activity: str
    gametag: str
    capacity: int
    description: str = ""
    stream_url: Optional[str] = None
    community_name: str = ""


@dataclass
class Session:
    id: str
    organizer_id: str
    organizer_name: str
    community_id: str
    command_room_id: str
    game: str
    platform: str
    activity: str
    gametag: str
    description: str
    capacity: int
    created_at: float
    stream_url: Optional[str] = None
    community_name: str = ""
    handles: ResourceHandles = field(default_factory=ResourceHandles)

    @classmethod
    def from_params(cls, session_id: str, params: SessionParams, handles: ResourceHandles, created_at: float) -> "Session":
        return cls(
            id=session_id,
            organizer_id=params.organizer_id,
            organizer_name=params.organizer_name,
            community_id=params.community_id,
            command_room_id=params.command_room_id,
            game=params.game,
            platform=params.platform,
            activity=params.activity,
            gametag=params.gametag,
            description=params.description,
            capacity=params.capacity,
            created_at=created_at,
            stream_url=params.stream_url,
            community_name=params.community_name,
            handles=handles,
        )

    def copy(self) -> "Session":
        return replace(self)


@dataclass
class AggregateStats:
    total_sessions: int = 0
    total_players: int = 0
