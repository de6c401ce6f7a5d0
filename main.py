"""
LFG Discord Bot (entrypoint)

This file only keeps the entrypoint.
- Discord bot wiring: app/bot.py
- Discord rooms/messages/webhooks: app/discord_gateway.py
- Session engine (no discord imports): lfg/
"""

from app.bot import run_bot

if __name__ == "__main__":
    print("\nStarting LFG Bot...\n")
    run_bot()
