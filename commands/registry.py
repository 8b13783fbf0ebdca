"""
Registry central pour toutes les commandes du bot.

Les commandes sont enregistrées une fois au démarrage, puis le registry est
gelé. Nom et alias sont insensibles à la casse. Une commande inconnue ou un
handler en erreur est rapporté à l'appelant, jamais propagé: la boucle de chat
ne doit pas s'arrêter pour une commande.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

from core.errors import CommandHandlerError
from core.models import Channel, ChannelUser, Message

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandContext:
    """Contexte passé au handler d'une commande"""
    message: Message
    name: str                          # nom tapé (alias possible), lower-case
    args: list[str] = field(default_factory=list)
    raw_args: str = ""
    reply: Optional[Callable[[str], Awaitable[None]]] = None

    @property
    def author(self) -> ChannelUser:
        return self.message.author

    @property
    def channel(self) -> Channel:
        return self.message.channel


CommandHandler = Callable[[CommandContext], Awaitable[None]]


class CommandStatus(str, Enum):
    INVOKED = "invoked"
    UNKNOWN = "unknown"
    FAILED = "failed"


@dataclass(frozen=True)
class CommandResult:
    status: CommandStatus
    name: str
    error: Optional[CommandHandlerError] = None

    @property
    def ok(self) -> bool:
        return self.status == CommandStatus.INVOKED


@dataclass(frozen=True)
class CommandRegistration:
    name: str
    handler: CommandHandler
    aliases: tuple[str, ...] = ()


class CommandRegistry:
    """Commandes du bot indexées par nom et par alias"""

    def __init__(self):
        self._registrations: dict[str, CommandRegistration] = {}
        self._lookup: dict[str, CommandRegistration] = {}
        self._frozen = False

    def register(self, name: str, handler: CommandHandler, aliases: Iterable[str] = ()) -> CommandRegistration:
        """
        Enregistre une commande.

        Raises:
            RuntimeError: registry déjà gelé
            ValueError: nom vide, ou nom/alias déjà pris
        """
        if self._frozen:
            raise RuntimeError(f"Cannot register '{name}': command registry is frozen")

        key = name.strip().lower()
        alias_keys = tuple(dict.fromkeys(a.strip().lower() for a in aliases if a.strip() and a.strip().lower() != key))
        if not key:
            raise ValueError("Command name cannot be empty")
        for candidate in (key, *alias_keys):
            if candidate in self._lookup:
                raise ValueError(f"Command name or alias '{candidate}' is already registered")

        registration = CommandRegistration(name=key, handler=handler, aliases=alias_keys)
        self._registrations[key] = registration
        for candidate in (key, *alias_keys):
            self._lookup[candidate] = registration

        suffix = f" (alias: {', '.join(alias_keys)})" if alias_keys else ""
        LOGGER.debug(f"Commande enregistrée: {key}{suffix}")
        return registration

    def command(self, name: str, aliases: Iterable[str] = ()):
        """Décorateur: @registry.command("ping")"""
        def decorator(handler: CommandHandler) -> CommandHandler:
            self.register(name, handler, aliases)
            return handler
        return decorator

    def freeze(self) -> None:
        self._frozen = True
        LOGGER.info(f"✅ {len(self._registrations)} commandes enregistrées: {', '.join(sorted(self._registrations))}")

    @property
    def frozen(self) -> bool:
        return self._frozen

    def exists(self, name: str) -> bool:
        return name.lower() in self._lookup

    def get(self, name: str) -> Optional[CommandRegistration]:
        return self._lookup.get(name.lower())

    def names(self) -> list[str]:
        return sorted(self._registrations)

    async def invoke(self, name: str, ctx: CommandContext) -> CommandResult:
        """Exécute une commande; ne lève jamais pour un nom inconnu ou un handler en erreur"""
        registration = self.get(name)
        if registration is None:
            return CommandResult(CommandStatus.UNKNOWN, name.lower())

        try:
            await registration.handler(ctx)
        except Exception as e:
            error = CommandHandlerError(registration.name, e)
            LOGGER.error(f"❌ Erreur commande !{registration.name}: {e}", exc_info=True)
            return CommandResult(CommandStatus.FAILED, registration.name, error)
        return CommandResult(CommandStatus.INVOKED, registration.name)


def register_bot_commands(registry: CommandRegistry, started_at: float) -> None:
    """
    Commandes système du bot (accessibles à tous).
    """
    from .bot_commands.system import handle_ping, handle_uptime

    async def cmd_uptime(ctx: CommandContext) -> None:
        await handle_uptime(ctx, started_at)

    registry.register("ping", handle_ping)
    registry.register("uptime", cmd_uptime)

    LOGGER.info("✅ Bot commands registered: ping, uptime")
