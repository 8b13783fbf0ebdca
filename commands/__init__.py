"""
commands/
=========

- registry.py : CommandRegistry (nom + alias, insensible à la casse)
- bot_commands/ : commandes système (ping, uptime)
"""

from commands.registry import (
    CommandContext,
    CommandRegistry,
    CommandResult,
    CommandStatus,
    register_bot_commands,
)

__all__ = [
    "CommandContext",
    "CommandRegistry",
    "CommandResult",
    "CommandStatus",
    "register_bot_commands",
]
