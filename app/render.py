"""
Plain-text rendering of LFG views (Discord markdown).

Kept free of discord imports so replies can be checked in tests.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List

from lfg.errors import PartialFailure
from lfg.protocol import GameFilterView, HistoryPage, MemberListing, SessionSnapshot, StatsSnapshot

PLATFORM_EMOJI = {
    "PC": "🖥️",
    "PlayStation 5": "🎮",
    "PlayStation 4": "🎮",
    "Xbox Series X|S": "🟩",
    "Xbox One": "🟩",
    "Nintendo Switch": "🔴",
    "Mobile": "📱",
    "iOS": "📱",
    "Android": "📱",
    "Crossplay": "🌐",
    "VR": "🥽",
    "Mac": "🍎",
    "Linux": "🐧",
}

ACTIVITY_EMOJI = {
    "Casual": "🎲",
    "Ranked": "🏆",
    "Competitive": "⚔️",
    "Tournament": "🏅",
    "Scrim": "🎯",
    "Training": "📚",
    "Fun": "😄",
    "Discovery": "🔭",
    "Arcade": "🕹️",
    "Co-op": "🤝",
    "Speedrun": "⚡",
    "PvE": "🐉",
    "PvP": "⚔️",
    "Raids": "🗡️",
    "Dungeons": "🏰",
}


def mention(user_id: str) -> str:
    return f"<@{user_id}>"


def _date(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def _details(s: SessionSnapshot) -> List[str]:
    lines = [
        f"🎮 **Game:** {s.game}",
        f"{PLATFORM_EMOJI.get(s.platform, '🕹️')} **Platform:** {s.platform}",
        f"{ACTIVITY_EMOJI.get(s.activity, '🎮')} **Activity:** {s.activity}",
        f"👥 **Players:** {s.joined_count}/{s.capacity}",
        f"🎯 **Gametag:** {s.gametag}",
        f"📝 **Description:** {s.description}",
    ]
    if s.stream_url:
        lines.append(f"🟣 **Stream:** {s.stream_url}")
    return lines


def session_card(s: SessionSnapshot, label: str = "") -> str:
    """Info-room / command-room message of a session."""
    label = label or ("Modified LFG session" if s.modified else "LFG session")
    status = "🔴" if s.is_full else "🟢"
    lines = [
        f"{status} **{label}**",
        f"`🆔 Session #{s.id}`",
        f"👑 **Organizer:** {mention(s.organizer_id)}",
        *_details(s),
        f"👥 **Participants:** {', '.join(mention(m) for m in s.roster) or 'None'}",
        "⏱️ Expires when the voice room stays empty.",
    ]
    return "\n".join(lines)


def announcement(s: SessionSnapshot) -> str:
    """Cross-community announcement. Mentions stay off in the sender."""
    source = s.community_name or "another server"
    lines = [
        f"📣 **New LFG session on {source}**",
        f"`🆔 Session #{s.id}`",
        f"👑 **Organizer:** {s.organizer_name or mention(s.organizer_id)}",
        *_details(s),
    ]
    return "\n".join(lines)


def welcome(session_id: str, organizer_id: str) -> str:
    return f"👋 Welcome to the discussion room of session **#{session_id}**!\n> Organizer: {mention(organizer_id)}"


def created_reply(s: SessionSnapshot, failures: List[PartialFailure]) -> str:
    msg = f"✅ Session **#{s.id}** created. Voice room: <#{s.voice_room_id}>"
    if failures:
        msg += "\n⚠️ Some rooms or messages could not be created: " + "; ".join(f.detail for f in failures)
    return msg


def joined_reply(s: SessionSnapshot) -> str:
    msg = f"✅ You joined session **#{s.id}** ({s.joined_count}/{s.capacity})."
    if s.voice_room_id:
        msg += f" Voice room: <#{s.voice_room_id}>"
    return msg


def modified_reply(s: SessionSnapshot) -> str:
    return f"✏️ Session **#{s.id}** updated: {s.capacity} players, description: {s.description}"


def removal_reply(member_id: str, session_id: str, banned: bool, failures: List[PartialFailure]) -> str:
    verb = "banned from" if banned else "kicked from"
    msg = f"👢 {mention(member_id)} was {verb} session **#{session_id}**."
    if failures:
        msg += "\n⚠️ " + "; ".join(f"{f.step}: {f.detail}" for f in failures)
    return msg


def member_listing(m: MemberListing) -> str:
    header = f"👥 **Session #{m.session_id}**: {m.roster_count}/{m.capacity} joined, {m.in_voice_count} in voice"
    if not m.in_voice:
        return header + "\nNobody is in the voice room."
    body = "\n".join(f"• {mention(uid)}" for uid in m.in_voice)
    return f"{header}\n{body}\nPage {m.page}/{m.total_pages}"


def history_page(h: HistoryPage) -> str:
    if not h.total:
        return "📜 No active sessions."
    lines = [f"📜 **Active sessions** (page {h.page}/{h.total_pages}, {h.total} total)"]
    for s in h.sessions:
        lines.append(
            f"• **#{s.id}** {s.game} ({s.platform}, {s.activity}) by {s.organizer_name or mention(s.organizer_id)}"
            f" {s.joined_count}/{s.capacity}, {_date(s.created_at)}"
        )
    return "\n".join(lines)


def stats_text(st: StatsSnapshot) -> str:
    return (
        f"📊 **LFG statistics**\n"
        f"- Sessions created: {st.total_sessions}\n"
        f"- Player slots offered: {st.total_players}\n"
        f"- Active sessions: {st.active_sessions}\n"
        f"- Players in active sessions: {st.active_players}"
    )


def filter_text(v: GameFilterView) -> str:
    if v.accepts_all:
        current = "All games are accepted."
    else:
        current = "Accepted games: " + ", ".join(f"`{g}`" for g in v.games)
    if v.status and v.status != current:
        return f"⚙️ {v.status}\n{current}"
    return f"⚙️ {current}"


ROOM_LINKS = {
    "voice": ("🔊", "Voice room"),
    "text": ("💬", "Discussion room"),
    "info": ("📢", "Info room"),
}


def room_link(kind: str, s: SessionSnapshot) -> str:
    """Ephemeral answer to a navigation button on a session card."""
    emoji, label = ROOM_LINKS[kind]
    room_id = {"voice": s.voice_room_id, "text": s.text_room_id, "info": s.info_room_id}[kind]
    if not room_id:
        return f"❌ {label} not found."
    return f"{emoji} {label} → https://discord.com/channels/{s.community_id}/{room_id}"


def presence_text(active_sessions: int, active_players: int) -> str:
    return f"Sessions: {active_sessions} | Players: {active_players}"
