#!/usr/bin/env python3
"""
IRC Client - Session chat Twitch
Machine à états de la connexion chat:
    DISCONNECTED → TRANSPORT_SECURING → CAPABILITY_NEGOTIATING → AUTHENTICATING
    → READY → JOINING → ACTIVE, et CLOSED depuis n'importe quel état

- start()         : TLS + CAP REQ + PASS/NICK, jusqu'à GLOBALUSERSTATE
- join_channel()  : JOIN, résolu par ROOMSTATE (ou NOTICE d'échec / timeout)
- run()           : boucle de dispatch → réconciliation EntityState → événements MessageBus

Pas de reconnexion automatique à ce niveau: un échec de transport termine la session.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from core.errors import (
    AuthError,
    BotError,
    CapabilityError,
    HelixError,
    NotFoundError,
    ProtocolError,
    TransportError,
)
from core.message_bus import MessageBus
from core.message_types import (
    ChannelUpdatedEvent,
    ChannelUserUpdatedEvent,
    ChatMessageEvent,
    GlobalUserUpdatedEvent,
    ReadyEvent,
    Topics,
    UserJoinedEvent,
    UserLeftEvent,
)
from core.models import Channel, ChannelUser, ChannelUserDelta, GlobalUser, GlobalUserDelta, Message
from core.state import EntityState
from twitchapi import irc_tags
from twitchapi.auth_manager import AuthManager, TokenRole
from twitchapi.helix_client import HelixClient, global_user_from_helix
from twitchapi.transports.irc_protocol import IrcMessage, LineTransport, parse_irc_line

LOGGER = logging.getLogger(__name__)

CAPABILITIES = ("twitch.tv/commands", "twitch.tv/membership", "twitch.tv/tags")

LOGIN_FAILURE_NOTICES = (
    "login authentication failed",
    "improperly formatted auth",
    "login unsuccessful",
)

JOIN_FAILURE_MSG_IDS = {
    "msg_banned",
    "msg_channel_blocked",
    "msg_channel_suspended",
    "msg_room_not_found",
    "tos_ban",
}


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    TRANSPORT_SECURING = "transport_securing"
    CAPABILITY_NEGOTIATING = "capability_negotiating"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    JOINING = "joining"
    ACTIVE = "active"
    CLOSED = "closed"


class IRCClient:
    """
    Client IRC Twitch
    - Négocie les capabilities et s'authentifie avec le token bot
    - Rejoint les channels
    - Réconcilie l'état et publie un événement typé par message reçu
    """

    def __init__(
        self,
        transport: LineTransport,
        auth: AuthManager,
        state: EntityState,
        bus: MessageBus,
        bot_login: str,
        helix: Optional[HelixClient] = None,
        handshake_timeout: float = 15.0,
        join_timeout: float = 10.0,
    ):
        """
        Args:
            transport: Transport ligne à ligne (IrcTransport en prod)
            auth: AuthManager (token bot pour PASS)
            state: EntityState partagé avec la session EventSub
            bus: MessageBus pour publier les événements
            bot_login: Login du compte bot (NICK)
            helix: Client Helix pour résoudre les utilisateurs inconnus (JOIN/PART)
            handshake_timeout: Timeout CAP + authentification en secondes
            join_timeout: Timeout d'attente du ROOMSTATE après JOIN
        """
        self.transport = transport
        self.auth = auth
        self.state = state
        self.bus = bus
        self.bot_login = bot_login.lower()
        self.helix = helix
        self.handshake_timeout = handshake_timeout
        self.join_timeout = join_timeout

        self.session_state = SessionState.DISCONNECTED
        self.self_user: Optional[GlobalUser] = None
        self._joined_channels: set[str] = set()
        self._pending_joins: dict[str, asyncio.Future] = {}

        self._handlers: dict[str, Callable[[IrcMessage], Awaitable[None]]] = {
            "JOIN": self._on_join,
            "PART": self._on_part,
            "PRIVMSG": self._on_privmsg,
            "USERSTATE": self._on_userstate,
            "ROOMSTATE": self._on_roomstate,
            "GLOBALUSERSTATE": self._on_globaluserstate,
            "PING": self._on_ping,
            "RECONNECT": self._on_reconnect,
            "NOTICE": self._on_notice,
        }

        LOGGER.info(f"IRCClient init pour {self.bot_login}")

    def _set_state(self, new_state: SessionState) -> None:
        if new_state != self.session_state:
            LOGGER.debug(f"IRC session: {self.session_state.value} → {new_state.value}")
            self.session_state = new_state

    # ========================================================================
    # HANDSHAKE
    # ========================================================================

    async def start(self) -> GlobalUser:
        """
        Connexion + capabilities + authentification

        Returns:
            Le GlobalUser du bot (réconcilié depuis GLOBALUSERSTATE)

        Raises:
            TransportError: connexion impossible ou coupée pendant le handshake
            CapabilityError: capabilities refusées (même partiellement)
            AuthError: authentification refusée
        """
        if self.session_state != SessionState.DISCONNECTED:
            raise TransportError(f"Cannot start an IRC session in state {self.session_state.value}")

        LOGGER.info("🚀 Démarrage IRC Client...")
        self._set_state(SessionState.TRANSPORT_SECURING)
        try:
            await self.transport.open()
            await asyncio.wait_for(self._handshake(), timeout=self.handshake_timeout)
        except asyncio.TimeoutError:
            await self._abort()
            raise TransportError(f"IRC handshake timed out after {self.handshake_timeout}s") from None
        except BotError:
            await self._abort()
            raise

        LOGGER.info(f"✅ IRC Client prêt ({self.self_user})")
        await self.bus.publish(Topics.READY, ReadyEvent(user=self.self_user))
        return self.self_user

    async def _handshake(self) -> None:
        self._set_state(SessionState.CAPABILITY_NEGOTIATING)
        await self.transport.send(f"CAP REQ :{' '.join(CAPABILITIES)}")
        await self._negotiate_capabilities()

        self._set_state(SessionState.AUTHENTICATING)
        token = self.auth.get_token(TokenRole.BOT)
        await self.transport.send(f"PASS oauth:{token.access_token}")
        await self.transport.send(f"NICK {self.bot_login}")

        while True:
            message = await self._next_handshake_message()
            if message.command == "NOTICE" and _is_login_failure(message.trailing):
                LOGGER.error(f"❌ Authentification IRC refusée: {message.trailing}")
                raise AuthError(f"IRC authentication failed: {message.trailing}")
            if message.command == "GLOBALUSERSTATE":
                self.self_user = await self.state.upsert_global_user(
                    irc_tags.global_user_delta(message.tags, self.bot_login)
                )
                self._set_state(SessionState.READY)
                return

    async def _negotiate_capabilities(self) -> None:
        acked: set[str] = set()
        while True:
            message = await self._next_handshake_message()
            if message.command != "CAP" or len(message.params) < 3:
                continue
            subcommand = message.params[1].upper()
            caps = set(message.trailing.split())
            if subcommand == "NAK":
                raise CapabilityError(f"Capabilities rejected: {sorted(caps)}")
            if subcommand != "ACK":
                continue
            acked |= caps
            missing = set(CAPABILITIES) - acked
            if missing:
                raise CapabilityError(f"Capabilities not acknowledged: {sorted(missing)}")
            LOGGER.info(f"✅ Capabilities acceptées: {', '.join(sorted(acked))}")
            return

    async def _next_handshake_message(self) -> IrcMessage:
        while True:
            line = await self.transport.readline()
            if line is None:
                raise TransportError("IRC connection closed during handshake")
            try:
                message = parse_irc_line(line)
            except ProtocolError as e:
                LOGGER.warning(f"⚠️ Ligne IRC ignorée: {e}")
                continue
            if message.command == "PING":
                await self._on_ping(message)
                continue
            return message

    async def _abort(self) -> None:
        await self.transport.close()
        self._set_state(SessionState.CLOSED)

    # ========================================================================
    # CHANNELS
    # ========================================================================

    async def join_channel(self, channel: Channel) -> bool:
        """
        Rejoint un channel. run() doit tourner pour que le ROOMSTATE soit reçu.

        Returns:
            True si Twitch a confirmé (ROOMSTATE), False sur NOTICE d'échec ou timeout
        """
        if self.session_state not in (SessionState.READY, SessionState.ACTIVE):
            raise TransportError(f"Cannot join a channel in state {self.session_state.value}")
        if not channel.name:
            raise ValueError(f"Channel {channel.identifier} has no name")

        try:
            self.state.get_channel(channel.identifier)
        except NotFoundError:
            await self.state.insert_channel(channel)

        name = channel.name.lower()
        self._set_state(SessionState.JOINING)
        future = asyncio.get_running_loop().create_future()
        self._pending_joins[name] = future
        try:
            await self.transport.send(f"JOIN #{name}")
            joined = await asyncio.wait_for(future, timeout=self.join_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning(f"⏱️ Pas de ROOMSTATE pour #{name} après {self.join_timeout}s")
            joined = False
        finally:
            self._pending_joins.pop(name, None)

        if joined:
            self._joined_channels.add(name)
            LOGGER.info(f"✅ Channel #{name} rejoint")
        else:
            LOGGER.error(f"❌ Impossible de rejoindre #{name}")

        if self.session_state == SessionState.JOINING:
            self._set_state(SessionState.ACTIVE if self._joined_channels else SessionState.READY)
        return joined

    def get_channels(self) -> list[str]:
        return sorted(self._joined_channels)

    def is_in_channel(self, channel: str) -> bool:
        return channel.lower().lstrip("#") in self._joined_channels

    # ========================================================================
    # DISPATCH
    # ========================================================================

    async def run(self) -> None:
        """Boucle de dispatch jusqu'à la fermeture du transport"""
        LOGGER.info("🔄 Boucle IRC démarrée")
        try:
            while self.session_state != SessionState.CLOSED:
                line = await self.transport.readline()
                if line is None:
                    LOGGER.warning("⚠️ Connexion IRC fermée par le serveur")
                    break
                try:
                    await self._dispatch(parse_irc_line(line))
                except TransportError:
                    raise
                except BotError as e:
                    LOGGER.warning(f"⚠️ Message IRC ignoré ({type(e).__name__}): {e}")
        except TransportError as e:
            LOGGER.error(f"❌ Session IRC interrompue: {e}")
        finally:
            await self._shutdown()
        LOGGER.info("🛑 Boucle IRC terminée")

    async def _dispatch(self, message: IrcMessage) -> None:
        handler = self._handlers.get(message.command)
        if handler is None:
            return
        await handler(message)

    async def _on_join(self, message: IrcMessage) -> None:
        channel_user = await self._membership_user(message)
        LOGGER.debug(f"JOIN {channel_user}")
        await self.bus.publish(Topics.USER_JOINED, UserJoinedEvent(channel_user=channel_user))

    async def _on_part(self, message: IrcMessage) -> None:
        channel_user = await self._membership_user(message)
        LOGGER.debug(f"PART {channel_user}")
        await self.bus.publish(Topics.USER_LEFT, UserLeftEvent(channel_user=channel_user))

    async def _membership_user(self, message: IrcMessage) -> ChannelUser:
        channel = self._channel_by_name(message)
        login = message.nick
        if not login:
            raise ProtocolError(f"{message.command} without source")

        user = self.state.find_global_user_by_name(login)
        if user is None:
            user = await self._fetch_user(login)
        delta = ChannelUserDelta(user=GlobalUserDelta(identifier=user.identifier))
        return await self.state.upsert_channel_user(delta, channel)

    async def _fetch_user(self, login: str) -> GlobalUser:
        if self.helix is None:
            raise ProtocolError(f"Unknown user '{login}' and no Helix client to resolve it")
        try:
            users = await self.helix.get_users(logins=[login])
        except (TransportError, HelixError) as e:
            # échec REST: seul ce message est perdu, la session chat continue
            raise ProtocolError(f"Cannot resolve user '{login}' on Helix: {e}") from e
        if not users:
            raise ProtocolError(f"User '{login}' not found on Helix")
        return await self.state.insert_global_user(global_user_from_helix(users[0]))

    async def _on_privmsg(self, message: IrcMessage) -> None:
        if message.channel is None or len(message.params) < 2:
            raise ProtocolError("PRIVMSG without channel or content")

        channel = await self.state.upsert_channel(
            irc_tags.privmsg_channel_delta(message.tags, message.channel)
        )
        author = await self.state.upsert_channel_user(
            irc_tags.channel_user_delta(message.tags, message.nick), channel
        )
        chat_message = await self.state.insert_message(Message(
            author=author,
            content=message.trailing,
            identifier=irc_tags.message_identifier(message.tags),
            sent_at=_sent_at(message.tags),
        ))
        await self.bus.publish(Topics.CHAT_MESSAGE, ChatMessageEvent(message=chat_message))

    async def _on_userstate(self, message: IrcMessage) -> None:
        channel = self._channel_by_name(message)
        channel_user = await self.state.upsert_channel_user(
            irc_tags.channel_user_delta(message.tags, self.bot_login), channel
        )
        await self.bus.publish(Topics.CHANNEL_USER_UPDATED, ChannelUserUpdatedEvent(channel_user=channel_user))

    async def _on_roomstate(self, message: IrcMessage) -> None:
        if message.channel is None:
            raise ProtocolError("ROOMSTATE without channel")
        channel = await self.state.upsert_channel(irc_tags.roomstate_delta(message.tags, message.channel))

        pending = self._pending_joins.get(message.channel)
        if pending is not None and not pending.done():
            pending.set_result(True)
        await self.bus.publish(Topics.CHANNEL_UPDATED, ChannelUpdatedEvent(channel=channel))

    async def _on_globaluserstate(self, message: IrcMessage) -> None:
        self.self_user = await self.state.upsert_global_user(
            irc_tags.global_user_delta(message.tags, self.bot_login)
        )
        await self.bus.publish(Topics.GLOBAL_USER_UPDATED, GlobalUserUpdatedEvent(user=self.self_user))

    async def _on_ping(self, message: IrcMessage) -> None:
        await self.transport.send(f"PONG :{message.trailing or 'tmi.twitch.tv'}")

    async def _on_reconnect(self, message: IrcMessage) -> None:
        LOGGER.warning("🔄 RECONNECT demandé par Twitch, fermeture de la session")
        await self.close()

    async def _on_notice(self, message: IrcMessage) -> None:
        msg_id = message.tags.get("msg-id", "")
        LOGGER.info(f"📢 NOTICE {message.channel or '*'} [{msg_id}]: {message.trailing}")

        if msg_id in JOIN_FAILURE_MSG_IDS and message.channel:
            pending = self._pending_joins.get(message.channel)
            if pending is not None and not pending.done():
                pending.set_result(False)

    def _channel_by_name(self, message: IrcMessage) -> Channel:
        if message.channel is None:
            raise ProtocolError(f"{message.command} without channel")
        channel = self.state.find_channel_by_name(message.channel)
        if channel is None:
            raise ProtocolError(f"{message.command} for unknown channel #{message.channel}")
        return channel

    # ========================================================================
    # ENVOI
    # ========================================================================

    async def send_message(self, channel: Channel | str, text: str) -> None:
        """Envoie un message dans un channel"""
        name = channel.name if isinstance(channel, Channel) else channel
        await self._privmsg(name, text)

    async def reply(self, message: Message, text: str) -> None:
        """Répond à un message (thread de réponse Twitch)"""
        await self._privmsg(message.channel.name, text, parent_id=str(message.identifier))

    async def _privmsg(self, channel_name: str, text: str, parent_id: Optional[str] = None) -> None:
        if self.session_state not in (SessionState.READY, SessionState.JOINING, SessionState.ACTIVE):
            raise TransportError(f"Cannot send a message in state {self.session_state.value}")
        text = " ".join(text.splitlines()).strip()
        if not text:
            return
        line = f"PRIVMSG #{channel_name.lower().lstrip('#')} :{text}"
        if parent_id:
            line = f"@reply-parent-msg-id={parent_id} {line}"
        await self.transport.send(line)

    # ========================================================================
    # FERMETURE
    # ========================================================================

    async def close(self) -> None:
        """Ferme la session; la boucle run() se termine après le message en cours"""
        if self.session_state == SessionState.CLOSED:
            return
        LOGGER.info("🛑 Arrêt IRC Client...")
        await self._shutdown()

    async def _shutdown(self) -> None:
        self._set_state(SessionState.CLOSED)
        for future in self._pending_joins.values():
            if not future.done():
                future.set_result(False)
        self._joined_channels.clear()
        await self.transport.close()


def _is_login_failure(text: str) -> bool:
    text = text.lower()
    return any(marker in text for marker in LOGIN_FAILURE_NOTICES)


def _sent_at(tags) -> datetime:
    value = tags.get("tmi-sent-ts")
    if value and value.isdigit():
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    return datetime.now(timezone.utc)
