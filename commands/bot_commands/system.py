"""
Commandes système du bot: !ping, !uptime
"""
import logging
import time

from commands.registry import CommandContext

LOGGER = logging.getLogger(__name__)


async def handle_ping(ctx: CommandContext) -> None:
    """!ping - Test du bot"""
    await ctx.reply(f"@{ctx.author.user.display_name or ctx.author.user.login_name} Pong! 🏓")


async def handle_uptime(ctx: CommandContext, started_at: float) -> None:
    """!uptime - Temps de fonctionnement du bot"""
    await ctx.reply(f"⏱️ Uptime: {format_duration(time.time() - started_at)}")


def format_duration(seconds: float) -> str:
    """3723 -> '1h 02m 03s'"""
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"
