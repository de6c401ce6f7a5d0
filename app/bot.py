import asyncio
import sys
from typing import Callable, Optional

import discord
from discord import app_commands
from discord.ext import commands

import config
from logger import setup_logger, quiet_library_loggers
from lfg.errors import GameNotAllowed, LfgError, RepositoryUnavailable, SessionNotFound
from lfg.protocol import (
    CommandRequest,
    CreateSessionRequest,
    FilterAction,
    GameFilterRequest,
    HistoryRequest,
    JoinSessionRequest,
    ListMembersRequest,
    ModifySessionRequest,
    RemovalMode,
    RemoveMemberRequest,
    SetAnnouncementTargetRequest,
    StatsRequest,
)
from lfg.repository import SessionRepository
from lfg.service import LfgService

from app import render
from app.discord_gateway import JOIN_BUTTON_PREFIX, NAV_BUTTONS, DiscordResourceGateway


logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)

# Suppress verbose logs
quiet_library_loggers(["discord.gateway", "discord.client", "discord.http", "sqlalchemy.engine"])


def _choices(values):
    return [app_commands.Choice(name=v, value=v) for v in values[:25]]


def _error_text(e: LfgError) -> str:
    msg = f"❌ {e.message}"
    if isinstance(e, GameNotAllowed) and e.allowed:
        msg += "\n📋 Allowed games: " + ", ".join(f"`{g}`" for g in e.allowed)
    return msg


class BotRuntime:
    """
    Discord bot wiring (infrastructure layer).
    Builds the LFG service and connects slash commands, buttons and voice events to it.
    """

    def __init__(self):
        intents = discord.Intents.default()
        intents.members = True
        intents.voice_states = True

        self.bot = commands.Bot(command_prefix=getattr(config, "COMMAND_PREFIX", "!"), intents=intents)
        self.gateway = DiscordResourceGateway(self.bot)
        self.repository: Optional[SessionRepository] = None
        self.service: Optional[LfgService] = None

        self._commands_synced = False

        self._register_handlers()
        self._register_commands()

    # ---------------------------
    # Events
    # ---------------------------
    def _register_handlers(self):
        @self.bot.event
        async def on_ready():
            logger.info(f"Bot started: {self.bot.user}")

            if self.service is not None:
                try:
                    await self.service.start()
                except RepositoryUnavailable as e:
                    logger.error(f"LFG store unusable, shutting down: {e.message}")
                    await self.bot.close()
                    return

            if not self._commands_synced:
                await self._sync_commands()

        @self.bot.event
        async def on_voice_state_update(member, before, after):
            if not self.service:
                return

            # every update refreshes the session and its idle countdown
            rooms = {c.id: c for c in (before.channel, after.channel) if c is not None}
            for room in rooms.values():
                try:
                    sid = await self.service.handle_voice_room_activity(str(room.id), empty=not room.members)
                except Exception as e:
                    logger.error(f"Occupancy update for {room.id} failed: {e}", exc_info=True)
                    continue
                if sid:
                    logger.debug(f"{member.display_name} voice update in session {sid} ({len(room.members)} in room)")

        @self.bot.event
        async def on_interaction(interaction: discord.Interaction):
            if interaction.type != discord.InteractionType.component or interaction.guild is None:
                return
            custom_id = (interaction.data or {}).get("custom_id", "")
            if custom_id.startswith(JOIN_BUTTON_PREFIX):
                await self._dispatch(
                    interaction,
                    JoinSessionRequest(
                        actor_id=str(interaction.user.id),
                        community_id=str(interaction.guild.id),
                        session_id=custom_id[len(JOIN_BUTTON_PREFIX):],
                    ),
                    render.joined_reply,
                )
                return
            for prefix, (kind, _) in NAV_BUTTONS.items():
                if custom_id.startswith(prefix):
                    await self._navigate(interaction, kind, custom_id[len(prefix):])
                    return

    async def _sync_commands(self) -> None:
        try:
            dev_guild = getattr(config, "DISCORD_DEV_GUILD_ID", None)
            if dev_guild:
                guild = discord.Object(id=int(dev_guild))
                self.bot.tree.copy_global_to(guild=guild)
                synced = await self.bot.tree.sync(guild=guild)
            else:
                synced = await self.bot.tree.sync()
            self._commands_synced = True
            logger.info(f"Synced {len(synced)} slash command(s)")
        except discord.HTTPException as e:
            logger.error(f"Slash command sync failed: {e}")

    # ---------------------------
    # Dispatch helper
    # ---------------------------
    async def _dispatch(self, interaction: discord.Interaction, request: CommandRequest, render_result: Callable) -> None:
        if self.service is None:
            await interaction.response.send_message("⏳ The bot is still starting. Try again shortly.", ephemeral=True)
            return

        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            result = await self.service.dispatch(request)
        except LfgError as e:
            await interaction.followup.send(_error_text(e), ephemeral=True)
            return
        except Exception as e:
            logger.error(f"{type(request).__name__} from {request.actor_id} failed: {e}", exc_info=True)
            await interaction.followup.send("❌ Something went wrong. Try again later.", ephemeral=True)
            return

        await interaction.followup.send(
            render_result(result),
            ephemeral=True,
            allowed_mentions=discord.AllowedMentions.none(),
        )

    async def _navigate(self, interaction: discord.Interaction, kind: str, session_id: str) -> None:
        if self.service is None:
            await interaction.response.send_message("⏳ The bot is still starting. Try again shortly.", ephemeral=True)
            return
        try:
            snapshot = self.service.registry.snapshot(session_id)
        except SessionNotFound as e:
            await interaction.response.send_message(_error_text(e), ephemeral=True)
            return
        await interaction.response.send_message(render.room_link(kind, snapshot), ephemeral=True)

    @staticmethod
    def _base(interaction: discord.Interaction, can_manage: bool = False) -> dict:
        return {
            "actor_id": str(interaction.user.id),
            "community_id": str(interaction.guild.id),
            "can_manage": can_manage,
        }

    @staticmethod
    def _perms(interaction: discord.Interaction) -> discord.Permissions:
        user = interaction.user
        return user.guild_permissions if isinstance(user, discord.Member) else discord.Permissions.none()

    # ---------------------------
    # Slash commands
    # ---------------------------
    def _register_commands(self):
        tree = self.bot.tree

        @tree.command(name="lfg", description="Create an LFG session")
        @app_commands.guild_only()
        @app_commands.describe(
            game="Game",
            platform="Platform",
            activity="Activity",
            gametag="Your in-game name",
            players="Players wanted",
            description="Short description",
            stream="Twitch channel link",
        )
        @app_commands.choices(
            game=_choices(config.GAME_CHOICES),
            platform=_choices(config.PLATFORM_CHOICES),
            activity=_choices(config.ACTIVITY_CHOICES),
        )
        async def lfg(
            interaction: discord.Interaction,
            game: str,
            platform: str,
            activity: str,
            gametag: str,
            players: int,
            description: Optional[str] = None,
            stream: Optional[str] = None,
        ):
            request = CreateSessionRequest(
                **self._base(interaction, self._perms(interaction).manage_channels),
                actor_name=interaction.user.display_name,
                community_name=interaction.guild.name,
                command_room_id=str(interaction.channel_id),
                game=game,
                platform=platform,
                activity=activity,
                gametag=gametag,
                capacity=players,
                description=description,
                stream_url=stream,
            )
            await self._dispatch(interaction, request, lambda out: render.created_reply(out.snapshot, out.failures))

        @tree.command(name="modify_lfg", description="Change the player count or description of a session")
        @app_commands.guild_only()
        async def modify_lfg(
            interaction: discord.Interaction,
            session_id: str,
            players: Optional[int] = None,
            description: Optional[str] = None,
        ):
            request = ModifySessionRequest(
                **self._base(interaction, self._perms(interaction).manage_channels),
                session_id=session_id,
                capacity=players,
                description=description,
            )
            await self._dispatch(interaction, request, render.modified_reply)

        @tree.command(name="list_members", description="Members currently in a session's voice room")
        @app_commands.guild_only()
        async def list_members(interaction: discord.Interaction, session_id: str, page: app_commands.Range[int, 1] = 1):
            request = ListMembersRequest(**self._base(interaction), session_id=session_id, page=page)
            await self._dispatch(interaction, request, render.member_listing)

        async def _remove(interaction: discord.Interaction, session_id: str, member: discord.Member, mode: RemovalMode):
            request = RemoveMemberRequest(
                **self._base(interaction),
                session_id=session_id,
                target_id=str(member.id),
                mode=mode,
            )
            await self._dispatch(
                interaction,
                request,
                lambda ack: render.removal_reply(ack.member_id, ack.session_id, ack.mode == RemovalMode.BAN, ack.failures),
            )

        @tree.command(name="kick_member", description="Remove a member from your session")
        @app_commands.guild_only()
        async def kick_member(interaction: discord.Interaction, session_id: str, member: discord.Member):
            await _remove(interaction, session_id, member, RemovalMode.KICK)

        @tree.command(name="ban_member", description="Remove a member from your session and ban them")
        @app_commands.guild_only()
        async def ban_member(interaction: discord.Interaction, session_id: str, member: discord.Member):
            await _remove(interaction, session_id, member, RemovalMode.BAN)

        @tree.command(name="stats", description="LFG statistics")
        @app_commands.guild_only()
        async def stats(interaction: discord.Interaction):
            await self._dispatch(interaction, StatsRequest(**self._base(interaction)), render.stats_text)

        @tree.command(name="history", description="Active LFG sessions")
        @app_commands.guild_only()
        async def history(interaction: discord.Interaction, page: app_commands.Range[int, 1] = 1):
            await self._dispatch(interaction, HistoryRequest(**self._base(interaction), page=page), render.history_page)

        @tree.command(name="set_lfg_channel", description="Room that receives LFG announcements from other servers")
        @app_commands.guild_only()
        async def set_lfg_channel(interaction: discord.Interaction, channel: discord.TextChannel):
            request = SetAnnouncementTargetRequest(
                **self._base(interaction, self._perms(interaction).manage_channels),
                room_id=str(channel.id),
            )
            await self._dispatch(interaction, request, lambda t: f"✅ LFG announcements will be posted in <#{t.room_id}>.")

        @tree.command(name="config", description="Games this server accepts announcements for")
        @app_commands.guild_only()
        @app_commands.choices(
            action=[app_commands.Choice(name=a.value, value=a.value) for a in FilterAction],
            game=_choices(config.GAME_CHOICES),
        )
        async def config_cmd(interaction: discord.Interaction, action: str, game: Optional[str] = None):
            request = GameFilterRequest(
                **self._base(interaction, self._perms(interaction).manage_guild),
                action=FilterAction(action),
                game=game,
            )
            await self._dispatch(interaction, request, render.filter_text)

    # ---------------------------
    # Lifecycle
    # ---------------------------
    async def _main(self, token: str) -> None:
        async with self.bot:
            try:
                await self.bot.start(token)
            finally:
                logger.info("Shutting down...")
                if self.service is not None:
                    await self.service.stop()

    def run(self):
        token = config.DISCORD_TOKEN
        if not token:
            logger.error("DISCORD_TOKEN not found")
            sys.exit(1)

        try:
            self.repository = SessionRepository(config.DATABASE_URL, echo=getattr(config, "DATABASE_ECHO", False))
        except RepositoryUnavailable as e:
            logger.error(e.message)
            sys.exit(1)

        self.service = LfgService(self.gateway, self.repository)
        try:
            asyncio.run(self._main(token))
        except KeyboardInterrupt:
            pass
        finally:
            self.repository.close()


def run_bot():
    runtime = BotRuntime()
    runtime.run()
