"""
Tests pour core/message_handler.py et core/message_bus.py
Vérifie le routage des commandes depuis les messages chat
"""
import logging
from unittest.mock import AsyncMock

import pytest

from commands.registry import CommandRegistry, CommandStatus
from core.message_handler import MessageHandler
from core.message_types import ChatMessageEvent, Topics
from core.models import Channel, ChannelUser, GlobalUser, Message


def make_message(content, user_id=2):
    channel = Channel(identifier=1, name="chan")
    author = ChannelUser(user=GlobalUser(identifier=user_id, login_name="viewer"), channel=channel)
    return Message(author=author, content=content)


@pytest.fixture
def goal_registry():
    registry = CommandRegistry()
    handler = AsyncMock()
    registry.register("objectif", handler, aliases=["goal"])
    registry.freeze()
    return registry, handler


@pytest.mark.unit
class TestMessageHandler:
    """Tests handle_message()"""

    @pytest.mark.asyncio
    async def test_alias_invokes_command(self, bus, goal_registry):
        """'!goal' → handler de 'objectif' appelé une fois"""
        registry, handler = goal_registry
        message_handler = MessageHandler(bus, registry)

        result = await message_handler.handle_message(make_message("!goal 100 subs"))

        assert result.status == CommandStatus.INVOKED
        handler.assert_awaited_once()
        ctx = handler.await_args.args[0]
        assert ctx.name == "goal"
        assert ctx.args == ["100", "subs"]
        assert ctx.raw_args == "100 subs"

    @pytest.mark.asyncio
    async def test_unknown_command_logged_no_reply(self, bus, goal_registry, caplog):
        """'!unknowncmd' → log 'inconnue', aucune réponse envoyée"""
        registry, handler = goal_registry
        reply = AsyncMock()
        message_handler = MessageHandler(bus, registry, reply=reply)

        with caplog.at_level(logging.WARNING):
            result = await message_handler.handle_message(make_message("!unknowncmd"))

        assert result.status == CommandStatus.UNKNOWN
        assert "inconnue" in caplog.text
        reply.assert_not_awaited()
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_plain_message_ignored(self, bus, goal_registry):
        """Pas de préfixe → None"""
        registry, _ = goal_registry
        assert await MessageHandler(bus, registry).handle_message(make_message("salut")) is None
        assert await MessageHandler(bus, registry).handle_message(make_message("!")) is None

    @pytest.mark.asyncio
    async def test_tag_characters_stripped(self, bus, goal_registry):
        """Caractères Unicode Tag invisibles retirés avant le parsing"""
        registry, handler = goal_registry
        hidden = "".join(chr(0xE0000 + ord(c)) for c in "x")
        await MessageHandler(bus, registry).handle_message(make_message(f"{hidden}!goal"))
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ignored_author(self, bus, goal_registry):
        """Les messages du bot lui-même sont ignorés"""
        registry, handler = goal_registry
        message_handler = MessageHandler(bus, registry, ignored_user_ids=[2])
        assert await message_handler.handle_message(make_message("!goal")) is None
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reply_goes_through_transport(self, bus):
        """ctx.reply() appelle la fonction reply avec le message d'origine"""
        registry = CommandRegistry()
        reply = AsyncMock()

        async def echo(ctx):
            await ctx.reply("pong")

        registry.register("echo", echo)
        message = make_message("!echo")
        await MessageHandler(bus, registry, reply=reply).handle_message(message)

        reply.assert_awaited_once_with(message, "pong")

    @pytest.mark.asyncio
    async def test_routed_from_bus(self, bus, goal_registry):
        """Un ChatMessageEvent publié sur le bus déclenche la commande"""
        registry, handler = goal_registry
        MessageHandler(bus, registry)

        await bus.publish(Topics.CHAT_MESSAGE, ChatMessageEvent(message=make_message("!objectif")))

        handler.assert_awaited_once()

    def test_empty_prefix_rejected(self, bus, goal_registry):
        """Préfixe vide → ValueError"""
        registry, _ = goal_registry
        with pytest.raises(ValueError):
            MessageHandler(bus, registry, prefix="")


@pytest.mark.unit
class TestMessageBus:
    """Tests MessageBus"""

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self, bus):
        """Un handler qui lève est loggé, les suivants sont appelés"""
        failing = AsyncMock(side_effect=RuntimeError("x"))
        ok = AsyncMock()
        bus.subscribe("t", failing)
        bus.subscribe("t", ok)

        await bus.publish("t", "payload")

        ok.assert_awaited_once_with("payload")
        assert bus.get_stats()["handler_failures"] == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus):
        """Après unsubscribe, le handler n'est plus appelé"""
        handler = AsyncMock()
        bus.subscribe("t", handler)
        bus.unsubscribe("t", handler)
        await bus.publish("t", 1)
        handler.assert_not_awaited()
