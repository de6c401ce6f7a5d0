"""
ResourceGateway on discord.py.

Every session owns a category holding a discussion room, a voice room and an
info room. Display messages are plain markdown built by app.render.
"""

from __future__ import annotations

from typing import Dict, List, Optional

import discord

import config
from logger import setup_logger
from lfg.errors import ResourceCreationError
from lfg.models import ResourceHandles, Session, SessionParams
from lfg.protocol import SessionSnapshot

from app import render

logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)

JOIN_BUTTON_PREFIX = "join_"
# navigation buttons: custom_id prefix -> room kind rendered by app.render.room_link
NAV_BUTTONS = {
    "voice_": ("voice", "🔊 Voice"),
    "text_": ("text", "💬 Discussion"),
    "info_": ("info", "📢 Info"),
}

_NO_MENTIONS = discord.AllowedMentions.none()


def session_view(session_id: str, joinable: bool = True) -> discord.ui.View:
    """
    Buttons under a session card: join (only while seats are left) and
    one link button per session room. Clicks are routed by custom_id in
    BotRuntime.on_interaction.
    """
    view = discord.ui.View(timeout=None)
    if joinable:
        view.add_item(
            discord.ui.Button(
                label="✅ Join session",
                style=discord.ButtonStyle.success,
                custom_id=f"{JOIN_BUTTON_PREFIX}{session_id}",
            )
        )
    for prefix, (_, label) in NAV_BUTTONS.items():
        view.add_item(
            discord.ui.Button(
                label=label,
                style=discord.ButtonStyle.secondary,
                custom_id=f"{prefix}{session_id}",
                row=1,
            )
        )
    return view


class DiscordResourceGateway:
    def __init__(self, bot: discord.Client, webhook_name: Optional[str] = None) -> None:
        self.bot = bot
        self.webhook_name = webhook_name or getattr(config, "ANNOUNCEMENT_WEBHOOK_NAME", "LFG Announcement")

    # ---------------------------
    # Lookups
    # ---------------------------
    async def _channel(self, channel_id: Optional[str]):
        """Cached channel, else fetched. None when it no longer exists."""
        if not channel_id:
            return None
        ch = self.bot.get_channel(int(channel_id))
        if ch is not None:
            return ch
        try:
            return await self.bot.fetch_channel(int(channel_id))
        except (discord.NotFound, discord.Forbidden):
            return None

    def _guild(self, community_id: str) -> Optional[discord.Guild]:
        return self.bot.get_guild(int(community_id))

    # ---------------------------
    # Create / teardown
    # ---------------------------
    async def create_session_resources(self, params: SessionParams, session_id: str) -> ResourceHandles:
        guild = self._guild(params.community_id)
        if guild is None:
            raise ResourceCreationError(f"Community {params.community_id} is not available.")

        created: Dict[str, str] = {}
        me = guild.me
        overwrites = {guild.default_role: discord.PermissionOverwrite(view_channel=True)}
        if me is not None:
            overwrites[me] = discord.PermissionOverwrite(manage_channels=True)

        try:
            category = await guild.create_category(f"🎮-{session_id}-LFG", overwrites=overwrites)
            created["category_id"] = str(category.id)

            text_room = await guild.create_text_channel(f"📝-{session_id}-discussion", category=category)
            created["text_room_id"] = str(text_room.id)
            await text_room.send(render.welcome(session_id, params.organizer_id), allowed_mentions=_NO_MENTIONS)

            voice_room = await guild.create_voice_channel(
                f"🔊-{session_id}-LFG",
                category=category,
                user_limit=params.capacity + 1,
            )
            created["voice_room_id"] = str(voice_room.id)

            info_room = await guild.create_text_channel(f"📢-{session_id}-info", category=category)
            created["info_room_id"] = str(info_room.id)

            snapshot = self._initial_snapshot(params, session_id, ResourceHandles(**created))
            info_message = await info_room.send(
                render.session_card(snapshot, "New LFG session"),
                view=session_view(session_id, joinable=not snapshot.is_full),
                allowed_mentions=_NO_MENTIONS,
            )
            created["info_message_id"] = str(info_message.id)
            await info_message.pin()

            command_room = await self._channel(params.command_room_id)
            if command_room is not None:
                command_message = await command_room.send(
                    render.session_card(snapshot, "New LFG session"),
                    allowed_mentions=_NO_MENTIONS,
                )
                created["command_message_id"] = str(command_message.id)
        except discord.HTTPException as e:
            raise ResourceCreationError(
                f"Discord refused to create the session rooms ({e.status}): {e.text}",
                handles=ResourceHandles(**created) if created else None,
            ) from e

        logger.info(f"[Discord] rooms ready for session {session_id} in {guild.name}")
        return ResourceHandles(**created)

    @staticmethod
    def _initial_snapshot(params: SessionParams, session_id: str, handles: ResourceHandles) -> SessionSnapshot:
        session = Session.from_params(session_id, params, handles, created_at=discord.utils.utcnow().timestamp())
        return SessionSnapshot.of(session, [params.organizer_id])

    async def teardown_resources(self, handles: ResourceHandles) -> None:
        errors: List[str] = []
        for room_id in handles.room_ids():
            ch = await self._channel(room_id)
            if ch is None:
                continue
            try:
                await ch.delete(reason="LFG session ended")
            except discord.NotFound:
                continue
            except discord.HTTPException as e:
                errors.append(f"{room_id}: {e.text}")
        if errors:
            raise RuntimeError("Could not delete room(s) " + ", ".join(errors))

    # ---------------------------
    # Display / announcements
    # ---------------------------
    async def update_display(self, snapshot: SessionSnapshot) -> None:
        # the info card carries the buttons; the join button goes away once the session is full
        targets = [
            (snapshot.info_room_id, snapshot.info_message_id, True),
            (snapshot.command_room_id, snapshot.command_message_id, False),
        ]
        content = render.session_card(snapshot)
        for room_id, message_id, with_buttons in targets:
            if not room_id or not message_id:
                continue
            ch = await self._channel(room_id)
            if ch is None:
                continue
            kwargs = {"content": content, "allowed_mentions": _NO_MENTIONS}
            if with_buttons:
                kwargs["view"] = session_view(snapshot.id, joinable=not snapshot.is_full)
            await ch.get_partial_message(int(message_id)).edit(**kwargs)

    async def send_announcement(self, target_room_id: str, snapshot: SessionSnapshot) -> None:
        ch = await self._channel(target_room_id)
        if not isinstance(ch, discord.TextChannel):
            raise LookupError(f"announcement room {target_room_id} is not a text channel")

        # throwaway webhook so the post carries the bot's name in every server
        webhook = await ch.create_webhook(name=self.webhook_name)
        try:
            user = self.bot.user
            await webhook.send(
                render.announcement(snapshot),
                username=user.name if user else self.webhook_name,
                avatar_url=user.display_avatar.url if user else None,
                allowed_mentions=_NO_MENTIONS,
            )
        finally:
            await webhook.delete()
        logger.debug(f"[Discord] announced {snapshot.id} in #{ch.name} ({ch.guild.name})")

    # ---------------------------
    # Voice room / members
    # ---------------------------
    async def voice_occupants(self, handles: ResourceHandles) -> Optional[List[str]]:
        ch = await self._channel(handles.voice_room_id)
        if not isinstance(ch, discord.VoiceChannel):
            return None
        return [str(m.id) for m in ch.members]

    async def disconnect_member(self, handles: ResourceHandles, member_id: str) -> None:
        ch = await self._channel(handles.voice_room_id)
        if not isinstance(ch, discord.VoiceChannel):
            return
        member = ch.guild.get_member(int(member_id))
        if member is None or member.voice is None or member.voice.channel != ch:
            return
        await member.move_to(None, reason="Removed from LFG session")

    async def ban_member(self, community_id: str, member_id: str, reason: str) -> None:
        guild = self._guild(community_id)
        if guild is None:
            raise LookupError(f"community {community_id} is not available")
        await guild.ban(discord.Object(id=int(member_id)), reason=reason)

    async def resize_voice_room(self, handles: ResourceHandles, capacity: int) -> None:
        ch = await self._channel(handles.voice_room_id)
        if not isinstance(ch, discord.VoiceChannel):
            return
        # one extra slot for the organizer
        await ch.edit(user_limit=capacity + 1)

    # ---------------------------
    # Presence
    # ---------------------------
    async def update_presence(self, active_sessions: int, active_players: int) -> None:
        activity = discord.Game(name=render.presence_text(active_sessions, active_players))
        await self.bot.change_presence(activity=activity, status=discord.Status.online)
