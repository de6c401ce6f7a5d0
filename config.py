"""
LFG Bot Configuration
=====================

1. Environment variables
2. Discord settings
3. Storage
4. Session lifecycle
5. Caches (TTL)
6. Rate limiting
7. Announcements (cross-community fan-out)
8. Display
9. Logging
"""
import os
from dotenv import load_dotenv
import logging

# ============================================================================
# 1. Environment variables
# ============================================================================
load_dotenv()

# ============================================================================
# 2. DISCORD settings
# ============================================================================
# Secrets stay in the environment (.env). Everything else is a constant here.
DISCORD_TOKEN = os.getenv("DISCORD_TOKEN")
# Optional: sync slash commands to a single guild while developing (instant update).
DISCORD_DEV_GUILD_ID = os.getenv("DISCORD_DEV_GUILD_ID")

# ============================================================================
# 3. Storage
# ============================================================================
# Any SQLAlchemy URL works. SQLite file next to the bot by default.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///lfg_data.db")
# Echo SQL statements (very noisy, debugging only)
DATABASE_ECHO = False

# ============================================================================
# 4. Session lifecycle
# ============================================================================
MIN_PLAYERS = 1
MAX_PLAYERS = 10

# Absolute lifetime of a session regardless of activity (seconds)
SESSION_MAX_AGE_SECONDS = 24 * 60 * 60

# A session whose voice room stays empty this long is deleted (seconds)
IDLE_GRACE_SECONDS = 5 * 60

# Default description when the organizer leaves it blank
DEFAULT_DESCRIPTION = "No description"

# Optional stream link must match this (Twitch channel URL)
STREAM_URL_PATTERN = r"^https?://(www\.)?twitch\.tv/[A-Za-z0-9_]{1,25}/?$"

# ============================================================================
# 5. Caches (TTL)
# ============================================================================
# Every in-memory map entry has its own expiry. Mutations refresh it.
SESSION_CACHE_TTL_SECONDS = 60 * 60
ANNOUNCEMENT_TARGET_TTL_SECONDS = 30 * 60
GAME_FILTER_TTL_SECONDS = 60 * 60

# Period of the maintenance loop (sweep + stale expiry + rate limiter prune)
SWEEP_INTERVAL_SECONDS = 60.0

# ============================================================================
# 6. Rate limiting
# ============================================================================
# One shared quota per user across every command and button.
RATE_LIMIT_QUOTA = 5
RATE_LIMIT_WINDOW_SECONDS = 60.0

# ============================================================================
# 7. Announcements (cross-community fan-out)
# ============================================================================
# Re-announce to other communities when someone joins or is removed.
ANNOUNCE_ON_ROSTER_CHANGE = True
ANNOUNCEMENT_WEBHOOK_NAME = "LFG Announcement"

# ============================================================================
# 8. Display
# ============================================================================
ITEMS_PER_PAGE = 10

GAME_CHOICES = [
    "League of Legends",
    "Valorant",
    "Counter-Strike 2",
    "Dota 2",
    "Apex Legends",
    "Rainbow Six: Siege",
    "Overwatch 2",
    "Fortnite",
    "Rocket League",
    "COD: Warzone",
    "PUBG: Battlegrounds",
    "Hearthstone",
    "Teamfight Tactics",
    "Street Fighter 6",
    "Tekken 8",
    "EA Sports FC 24",
    "StarCraft II",
    "Smite",
    "Paladins",
    "World of Warcraft",
    "Brawlhalla",
    "Albion Online",
    "The Finals",
    "Halo Infinite",
    "Mobile Legends: Bang Bang",
]

PLATFORM_CHOICES = [
    "PC",
    "PlayStation 5",
    "PlayStation 4",
    "Xbox Series X|S",
    "Xbox One",
    "Nintendo Switch",
    "Mobile",
    "iOS",
    "Android",
    "Crossplay",
    "VR",
    "Mac",
    "Linux",
]

ACTIVITY_CHOICES = [
    "Casual",
    "Ranked",
    "Competitive",
    "Tournament",
    "Scrim",
    "Training",
    "Fun",
    "Discovery",
    "Arcade",
    "Co-op",
    "Speedrun",
    "PvE",
    "PvP",
    "Raids",
    "Dungeons",
]

# ============================================================================
# 9. Logging
# ============================================================================
LOG_LEVEL = logging.INFO  # logging.DEBUG shows cache sizes and every save
LOG_FILE = None           # "lfg_bot.log" to also write a detailed file log

# Periodically log cache sizes (sessions/rosters/targets/filters) at INFO
CACHE_METRICS_ENABLED = True
