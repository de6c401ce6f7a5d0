"""
Error taxonomy for the LFG core.

Rejections are raised before any state change. Failures of external side
effects after a commit point are logged (see PartialFailure) and never undone.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


class LfgError(Exception):
    """Base class. `message` is safe to show to the user who issued the command."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ---------------------------
# Validation
# ---------------------------
class ValidationError(LfgError):
    pass


class GameNotAllowed(ValidationError):
    def __init__(self, game: str, allowed: List[str]) -> None:
        super().__init__(f"This community does not accept sessions for {game}.")
        self.game = game
        self.allowed = list(allowed)


# ---------------------------
# Lookup
# ---------------------------
class SessionNotFound(LfgError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found.")
        self.session_id = session_id


# ---------------------------
# Conflicts
# ---------------------------
class Conflict(LfgError):
    pass


class AlreadyJoined(Conflict):
    def __init__(self, session_id: str) -> None:
        super().__init__("You already joined this session.")
        self.session_id = session_id


class SessionFull(Conflict):
    def __init__(self, session_id: str) -> None:
        super().__init__("This session is full.")
        self.session_id = session_id


class NotOrganizer(Conflict):
    def __init__(self, session_id: str) -> None:
        super().__init__("Only the organizer can remove members.")
        self.session_id = session_id


class MemberNotPresent(Conflict):
    def __init__(self, session_id: str, member_id: str) -> None:
        super().__init__(f"Member {member_id} is not in the session voice room.")
        self.session_id = session_id
        self.member_id = member_id


class AlreadyInFilter(Conflict):
    def __init__(self, game: str) -> None:
        super().__init__(f"{game} is already in the filter.")
        self.game = game


class NotInFilter(Conflict):
    def __init__(self, game: str) -> None:
        super().__init__(f"{game} is not in the filter.")
        self.game = game


class NoFreeSessionId(Conflict):
    def __init__(self) -> None:
        super().__init__("No session id available right now. Try again later.")


# ---------------------------
# Access
# ---------------------------
class PermissionDenied(LfgError):
    def __init__(self, message: str = "Missing permission.") -> None:
        super().__init__(message)


class RateLimited(LfgError):
    def __init__(self, actor_id: str) -> None:
        super().__init__("Rate limit reached. Wait a moment.")
        self.actor_id = actor_id


# ---------------------------
# Collaborators
# ---------------------------
class ResourceCreationError(LfgError):
    """
    Raised by a gateway when session resources were only partly created.

    `handles` holds whatever exists on the platform (ResourceHandles or None).
    """

    def __init__(self, message: str, handles=None) -> None:
        super().__init__(message)
        self.handles = handles


class RepositoryUnavailable(LfgError):
    """The backing store cannot be opened at all. Fatal at startup only."""


@dataclass(frozen=True)
class PartialFailure:
    """A side effect that failed after its commit point. Logged, never rolled back."""

    step: str
    detail: str
    community_id: Optional[str] = None
