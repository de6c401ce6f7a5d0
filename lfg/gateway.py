"""
Resource gateway contract (collaborator boundary).

The core never talks to the chat platform directly. Everything that touches
rooms, messages, members or webhooks goes through this protocol. Every call
is fallible; implementations own their timeout/retry discipline.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

from .models import ResourceHandles, SessionParams
from .protocol import SessionSnapshot


class ResourceGateway(Protocol):
    async def create_session_resources(self, params: SessionParams, session_id: str) -> ResourceHandles:
        """
        Create category, voice room, text room, info room and the two display messages.

        Raises ResourceCreationError carrying the handles created so far when a
        later step fails.
        """
        ...

    async def teardown_resources(self, handles: ResourceHandles) -> None:
        ...

    async def update_display(self, snapshot: SessionSnapshot) -> None:
        ...

    async def send_announcement(self, target_room_id: str, snapshot: SessionSnapshot) -> None:
        ...

    async def voice_occupants(self, handles: ResourceHandles) -> Optional[List[str]]:
        """Member ids currently in the voice room, or None when the room no longer exists."""
        ...

    async def disconnect_member(self, handles: ResourceHandles, member_id: str) -> None:
        ...

    async def ban_member(self, community_id: str, member_id: str, reason: str) -> None:
        ...

    async def resize_voice_room(self, handles: ResourceHandles, capacity: int) -> None:
        ...

    async def update_presence(self, active_sessions: int, active_players: int) -> None:
        """Show live session and player counts in the bot's status."""
        ...
