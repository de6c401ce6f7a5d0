"""
Durable mirror of the LFG state (SQLAlchemy).

The repository is never the authority: the registry loads it once at startup
and then flushes its full state after each mutation. A failed save is the
caller's to log; memory stays authoritative for the rest of the process.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import Float, Integer, String, Text, create_engine, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

import config
from logger import setup_logger

from .errors import RepositoryUnavailable
from .models import AggregateStats, ResourceHandles, Session

logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)


class Base(DeclarativeBase):
    pass


class SessionRow(Base):
    __tablename__ = "lfg_sessions"

    id: Mapped[str] = mapped_column(String(8), primary_key=True)
    organizer_id: Mapped[str] = mapped_column(String(32))
    organizer_name: Mapped[str] = mapped_column(String(100), default="")
    community_id: Mapped[str] = mapped_column(String(32), index=True)
    community_name: Mapped[str] = mapped_column(String(100), default="")
    command_room_id: Mapped[str] = mapped_column(String(32))
    game: Mapped[str] = mapped_column(String(100))
    platform: Mapped[str] = mapped_column(String(50))
    activity: Mapped[str] = mapped_column(String(50))
    gametag: Mapped[str] = mapped_column(String(100))
    description: Mapped[str] = mapped_column(Text, default="")
    stream_url: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    capacity: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[float] = mapped_column(Float)
    category_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    voice_room_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    text_room_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    info_room_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    info_message_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    command_message_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)


class JoinedUserRow(Base):
    __tablename__ = "lfg_joined_users"

    session_id: Mapped[str] = mapped_column(String(8), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, default=0)


class StatsRow(Base):
    __tablename__ = "lfg_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    total_sessions: Mapped[int] = mapped_column(Integer, default=0)
    total_players: Mapped[int] = mapped_column(Integer, default=0)


class AnnouncementTargetRow(Base):
    __tablename__ = "announcement_targets"

    community_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    room_id: Mapped[str] = mapped_column(String(32))


class GameFilterRow(Base):
    __tablename__ = "game_filters"

    community_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    games: Mapped[str] = mapped_column(Text, default="[]")


@dataclass
class PersistedState:
    sessions: Dict[str, Session] = field(default_factory=dict)
    rosters: Dict[str, List[str]] = field(default_factory=dict)
    stats: AggregateStats = field(default_factory=AggregateStats)
    targets: Dict[str, str] = field(default_factory=dict)
    filters: Dict[str, List[str]] = field(default_factory=dict)


def _session_to_row(s: Session) -> SessionRow:
    h = s.handles
    return SessionRow(
        id=s.id,
        organizer_id=s.organizer_id,
        organizer_name=s.organizer_name,
        community_id=s.community_id,
        community_name=s.community_name,
        command_room_id=s.command_room_id,
        game=s.game,
        platform=s.platform,
        activity=s.activity,
        gametag=s.gametag,
        description=s.description,
        stream_url=s.stream_url,
        capacity=s.capacity,
        created_at=s.created_at,
        category_id=h.category_id,
        voice_room_id=h.voice_room_id,
        text_room_id=h.text_room_id,
        info_room_id=h.info_room_id,
        info_message_id=h.info_message_id,
        command_message_id=h.command_message_id,
    )


def _row_to_session(r: SessionRow) -> Session:
    if not r.capacity or r.capacity < 1:
        raise ValueError(f"invalid capacity {r.capacity!r}")
    return Session(
        id=r.id,
        organizer_id=r.organizer_id,
        organizer_name=r.organizer_name or "",
        community_id=r.community_id,
        community_name=r.community_name or "",
        command_room_id=r.command_room_id,
        game=r.game,
        platform=r.platform,
        activity=r.activity,
        gametag=r.gametag,
        description=r.description or "",
        stream_url=r.stream_url,
        capacity=int(r.capacity),
        created_at=float(r.created_at),
        handles=ResourceHandles(
            category_id=r.category_id,
            voice_room_id=r.voice_room_id,
            text_room_id=r.text_room_id,
            info_room_id=r.info_room_id,
            info_message_id=r.info_message_id,
            command_message_id=r.command_message_id,
        ),
    )


def _decode_games(raw: str) -> List[str]:
    games = json.loads(raw or "[]")
    if not isinstance(games, list):
        raise ValueError("games is not a list")
    return [str(g) for g in games]


class SessionRepository:
    def __init__(self, url: str, echo: bool = False) -> None:
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        try:
            self.engine = create_engine(url, echo=echo, connect_args=connect_args)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise RepositoryUnavailable(f"Cannot open LFG store at {url}: {e}") from e
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info(f"LFG store ready ({self.engine.url.render_as_string(hide_password=True)})")

    def load_all(self) -> PersistedState:
        state = PersistedState()
        try:
            with self._session_factory() as db:
                for row in db.scalars(select(SessionRow)):
                    try:
                        state.sessions[row.id] = _row_to_session(row)
                    except (TypeError, ValueError) as e:
                        logger.warning(f"Skipping malformed session row {row.id}: {e}")

                joined = db.scalars(select(JoinedUserRow).order_by(JoinedUserRow.session_id, JoinedUserRow.position))
                for row in joined:
                    if row.session_id not in state.sessions:
                        continue
                    roster = state.rosters.setdefault(row.session_id, [])
                    if row.user_id not in roster:
                        roster.append(row.user_id)

                stats = db.get(StatsRow, 1)
                if stats is not None:
                    state.stats = AggregateStats(
                        total_sessions=int(stats.total_sessions or 0),
                        total_players=int(stats.total_players or 0),
                    )

                for row in db.scalars(select(AnnouncementTargetRow)):
                    state.targets[row.community_id] = row.room_id

                for row in db.scalars(select(GameFilterRow)):
                    try:
                        state.filters[row.community_id] = _decode_games(row.games)
                    except ValueError as e:
                        logger.warning(f"Skipping malformed game filter for {row.community_id}: {e}")
        except SQLAlchemyError as e:
            raise RepositoryUnavailable(f"Cannot read LFG store: {e}") from e

        # a session always has a roster, even if the rows were lost
        for sid, s in state.sessions.items():
            state.rosters.setdefault(sid, [s.organizer_id])

        logger.info(
            f"Loaded {len(state.sessions)} session(s), {len(state.targets)} announcement target(s), "
            f"{len(state.filters)} game filter(s)"
        )
        return state

    def save_all(self, state: PersistedState) -> None:
        """
        One transaction with the full state.

        Sessions and rosters are mirrored exactly. Targets and filters are
        upserted only, since their memory entries may have been evicted by TTL.
        """
        with self._session_factory.begin() as db:
            live_ids = set(state.sessions.keys())
            stored_ids = set(db.scalars(select(SessionRow.id)))
            gone = stored_ids - live_ids
            if gone:
                db.execute(delete(SessionRow).where(SessionRow.id.in_(gone)))

            for s in state.sessions.values():
                db.merge(_session_to_row(s))

            db.execute(delete(JoinedUserRow))
            for sid, roster in state.rosters.items():
                if sid not in live_ids:
                    continue
                for pos, uid in enumerate(roster):
                    db.add(JoinedUserRow(session_id=sid, user_id=uid, position=pos))

            db.merge(
                StatsRow(
                    id=1,
                    total_sessions=state.stats.total_sessions,
                    total_players=state.stats.total_players,
                )
            )

            for cid, room_id in state.targets.items():
                db.merge(AnnouncementTargetRow(community_id=cid, room_id=room_id))

            for cid, games in state.filters.items():
                db.merge(GameFilterRow(community_id=cid, games=json.dumps(list(games))))

    def load_target(self, community_id: str) -> Optional[str]:
        with self._session_factory() as db:
            row = db.get(AnnouncementTargetRow, community_id)
            return row.room_id if row else None

    def load_targets(self) -> Dict[str, str]:
        with self._session_factory() as db:
            return {r.community_id: r.room_id for r in db.scalars(select(AnnouncementTargetRow))}

    def load_filter(self, community_id: str) -> List[str]:
        with self._session_factory() as db:
            row = db.get(GameFilterRow, community_id)
            if row is None:
                return []
            try:
                return _decode_games(row.games)
            except ValueError as e:
                logger.warning(f"Malformed game filter for {community_id}: {e}")
                return []

    def close(self) -> None:
        self.engine.dispose()
