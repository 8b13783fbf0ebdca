#!/usr/bin/env python3
"""
Message Handler
Route les lignes de chat qui commencent par le préfixe vers le CommandRegistry
"""
import logging
import re
from typing import Awaitable, Callable, Iterable, Optional

from commands.registry import CommandContext, CommandRegistry, CommandResult, CommandStatus
from core.message_bus import MessageBus
from core.message_types import ChatMessageEvent, Topics
from core.models import Message

LOGGER = logging.getLogger(__name__)

# Unicode Tag Characters (U+E0000-U+E007F): invisibles, utilisés pour cacher du texte
_TAG_CHARACTERS = re.compile("[\U000E0000-\U000E007F]")

ReplyFunc = Callable[[Message, str], Awaitable[None]]


class MessageHandler:
    """
    Handler pour les commandes chat

    `!nom args...` → CommandRegistry.invoke(nom, ctx).
    Une commande inconnue est loggée, sans réponse dans le chat.
    """

    def __init__(
        self,
        bus: MessageBus,
        registry: CommandRegistry,
        prefix: str = "!",
        reply: Optional[ReplyFunc] = None,
        ignored_user_ids: Iterable[int] = (),
    ):
        """
        Args:
            bus: MessageBus (abonnement à chat.message)
            registry: Commandes enregistrées
            prefix: Préfixe des commandes
            reply: Envoi d'une réponse à un message (IRCClient.reply en prod)
            ignored_user_ids: Auteurs ignorés (le bot lui-même)
        """
        if not prefix:
            raise ValueError("Command prefix cannot be empty")
        self.bus = bus
        self.registry = registry
        self.prefix = prefix
        self._reply = reply
        self.ignored_user_ids = set(ignored_user_ids)

        self.bus.subscribe(Topics.CHAT_MESSAGE, self._handle_chat_message)

    async def _handle_chat_message(self, event: ChatMessageEvent) -> None:
        await self.handle_message(event.message)

    async def handle_message(self, message: Message) -> Optional[CommandResult]:
        """
        Traite un message chat entrant.

        Returns:
            Le résultat de la commande, ou None si le message n'en est pas une
        """
        if message.author.user.identifier in self.ignored_user_ids:
            return None

        text = _TAG_CHARACTERS.sub("", message.content).strip()
        if not text.startswith(self.prefix):
            return None

        parts = text[len(self.prefix):].split(maxsplit=1)
        if not parts:
            return None
        name = parts[0].lower()
        raw_args = parts[1].strip() if len(parts) > 1 else ""

        ctx = CommandContext(
            message=message,
            name=name,
            args=raw_args.split(),
            raw_args=raw_args,
            reply=self._reply_to(message),
        )
        result = await self.registry.invoke(name, ctx)

        if result.status == CommandStatus.UNKNOWN:
            LOGGER.warning(f"⚠️ Commande inconnue: {self.prefix}{name} ({message.author})")
        elif result.status == CommandStatus.INVOKED:
            LOGGER.info(f"🤖 Command: {self.prefix}{name} from {message.author}")
        return result

    def _reply_to(self, message: Message) -> Callable[[str], Awaitable[None]]:
        async def reply(text: str) -> None:
            if self._reply is None:
                LOGGER.debug(f"Réponse non envoyée (pas de transport): {text}")
                return
            await self._reply(message, text)
        return reply
