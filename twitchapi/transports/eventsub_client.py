#!/usr/bin/env python3
"""
EventSub Client - Session de notifications (WebSocket)

    DISCONNECTED → CONNECTING → READY → ACTIVE, et CLOSED

- connect()               : ouvre le WebSocket, attend session_welcome → READY
- subscribe_for_channel() : POST eventsub/subscriptions (token broadcaster), READY/ACTIVE uniquement
- run()                   : ACTIVE, décode les notifications → EntityState → MessageBus

Un abonnement WebSocket vit avec la session: après un nouveau connect(), il faut
se réabonner. Un session_reconnect (migration demandée par Twitch) conserve les
abonnements.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from core.errors import BotError, ProtocolError, TransportError
from core.message_bus import MessageBus
from core.message_types import (
    ChannelInfoUpdatedEvent,
    NotificationReadyEvent,
    StreamFinishedEvent,
    StreamStartedEvent,
    Topics,
)
from core.models import Channel, ChannelDelta
from core.state import EntityState
from twitchapi.helix_client import HelixClient, parse_timestamp

LOGGER = logging.getLogger(__name__)

DEFAULT_EVENTSUB_URL = "wss://eventsub.wss.twitch.tv/ws"

SUBSCRIPTION_VERSIONS = {
    "channel.update": "2",
    "stream.online": "1",
    "stream.offline": "1",
}

# url -> WebSocket connecté (aiohttp.ClientWebSocketResponse en prod)
WebSocketFactory = Callable[[str], Awaitable[Any]]

_CLOSED_TYPES = (
    aiohttp.WSMsgType.CLOSE,
    aiohttp.WSMsgType.CLOSING,
    aiohttp.WSMsgType.CLOSED,
    aiohttp.WSMsgType.ERROR,
)


class NotificationState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class Subscription:
    """Abonnement créé côté Twitch pour la session courante"""
    identifier: str
    channel_id: int
    subscription_type: str
    version: str


class EventSubReconnect(Exception):
    """Twitch demande une migration vers une nouvelle URL"""

    def __init__(self, url: str):
        super().__init__(url)
        self.url = url


class EventSubClient:
    """
    Client EventSub WebSocket
    - Une session, plusieurs abonnements (channel.update, stream.online, stream.offline)
    - Les channels sont réconciliés dans EntityState avant publication de l'événement
    """

    def __init__(
        self,
        helix: HelixClient,
        state: EntityState,
        bus: MessageBus,
        url: str = DEFAULT_EVENTSUB_URL,
        ws_factory: Optional[WebSocketFactory] = None,
        welcome_timeout: float = 15.0,
    ):
        self.helix = helix
        self.state = state
        self.bus = bus
        self.url = url
        self.welcome_timeout = welcome_timeout

        self.session_state = NotificationState.DISCONNECTED
        self.session_id: Optional[str] = None
        self.subscriptions: dict[str, Subscription] = {}

        self._ws_factory = ws_factory
        self._http_session: Optional[aiohttp.ClientSession] = None
        self._ws = None

        self._decoders = {
            "channel.update": self._on_channel_update,
            "stream.online": self._on_stream_online,
            "stream.offline": self._on_stream_offline,
        }

    def _set_state(self, new_state: NotificationState) -> None:
        if new_state != self.session_state:
            LOGGER.debug(f"EventSub session: {self.session_state.value} → {new_state.value}")
            self.session_state = new_state

    async def _open(self, url: str):
        if self._ws_factory is not None:
            return await self._ws_factory(url)
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        try:
            return await self._http_session.ws_connect(url, heartbeat=20)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Cannot connect to EventSub {url}: {e}") from e

    # ========================================================================
    # CONNEXION
    # ========================================================================

    async def connect(self) -> str:
        """
        Ouvre la session et attend session_welcome

        Returns:
            L'identifiant de session EventSub

        Raises:
            TransportError: connexion impossible, fermée ou welcome non reçu
        """
        if self.session_state not in (NotificationState.DISCONNECTED, NotificationState.CLOSED):
            raise TransportError(f"Cannot connect EventSub in state {self.session_state.value}")

        LOGGER.info(f"🚀 Connexion EventSub {self.url}...")
        self._set_state(NotificationState.CONNECTING)
        self.subscriptions.clear()
        try:
            self._ws = await self._open(self.url)
            self.session_id = await self._wait_for_welcome(self._ws)
        except BotError:
            await self._close_ws()
            self._set_state(NotificationState.CLOSED)
            raise

        self._set_state(NotificationState.READY)
        LOGGER.info(f"✅ EventSub prêt (session {self.session_id})")
        await self.bus.publish(Topics.NOTIFICATION_READY, NotificationReadyEvent(session_id=self.session_id))
        return self.session_id

    async def _wait_for_welcome(self, ws) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.welcome_timeout

        while True:
            timeout = deadline - loop.time()
            if timeout <= 0:
                raise TransportError("EventSub welcome timeout")
            try:
                msg = await ws.receive(timeout=timeout)
            except asyncio.TimeoutError:
                raise TransportError("EventSub welcome timeout") from None

            if msg.type in _CLOSED_TYPES:
                raise TransportError("EventSub connection closed before welcome")
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue

            try:
                data = _decode_frame(msg.data)
                if _message_type(data) != "session_welcome":
                    continue
                session_id = _section(_section(data, "payload"), "session").get("id")
            except ProtocolError as e:
                LOGGER.warning(f"⚠️ EventSub: {e}, ignoré")
                continue
            if not session_id:
                raise TransportError("EventSub welcome without session id")
            return session_id

    # ========================================================================
    # ABONNEMENTS
    # ========================================================================

    async def subscribe_for_channel(self, subscription_type: str, channel: Channel) -> str:
        """
        Crée un abonnement pour un channel.

        Pas de déduplication: deux appels pour le même (channel, type) créent
        deux abonnements côté Twitch. Un appel par paire et par session.

        Returns:
            L'identifiant de l'abonnement
        """
        if self.session_state not in (NotificationState.READY, NotificationState.ACTIVE):
            raise TransportError(f"Cannot subscribe in state {self.session_state.value}")

        version = SUBSCRIPTION_VERSIONS.get(subscription_type, "1")
        data = await self.helix.create_eventsub_subscription(
            subscription_type,
            version,
            {"broadcaster_user_id": str(channel.identifier)},
            self.session_id,
        )
        subscription = Subscription(
            identifier=data["id"],
            channel_id=channel.identifier,
            subscription_type=subscription_type,
            version=version,
        )
        self.subscriptions[subscription.identifier] = subscription
        LOGGER.info(f"📌 EventSub: {subscription_type} pour {channel} ({subscription.identifier})")
        return subscription.identifier

    # ========================================================================
    # BOUCLE
    # ========================================================================

    async def run(self) -> None:
        """Reçoit les messages jusqu'à la fermeture du WebSocket"""
        if self.session_state != NotificationState.READY:
            raise TransportError(f"Cannot run EventSub in state {self.session_state.value}")

        self._set_state(NotificationState.ACTIVE)
        LOGGER.info("🔄 Boucle EventSub démarrée")
        try:
            while self.session_state == NotificationState.ACTIVE:
                msg = await self._ws.receive()
                if msg.type in _CLOSED_TYPES:
                    LOGGER.warning(f"⚠️ EventSub WebSocket fermé ({msg.type.name})")
                    break
                if msg.type != aiohttp.WSMsgType.TEXT:
                    continue
                try:
                    await self._handle_message(_decode_frame(msg.data))
                except EventSubReconnect as reconnect:
                    await self._migrate(reconnect.url)
                except ProtocolError as e:
                    LOGGER.warning(f"⚠️ EventSub: {e}, ignoré")
        except TransportError as e:
            LOGGER.error(f"❌ Session EventSub interrompue: {e}")
        finally:
            await self._close_ws()
            self._set_state(NotificationState.CLOSED)
        LOGGER.info("🛑 Boucle EventSub terminée")

    async def _handle_message(self, data: dict) -> None:
        message_type = _message_type(data)
        payload = _section(data, "payload")

        if message_type == "session_keepalive":
            return
        if message_type == "session_reconnect":
            url = _section(payload, "session").get("reconnect_url")
            if not url:
                LOGGER.warning("⚠️ session_reconnect sans reconnect_url, ignoré")
                return
            raise EventSubReconnect(url)
        if message_type == "revocation":
            self._on_revocation(_section(payload, "subscription"))
            return
        if message_type == "notification":
            await self._on_notification(data)
            return
        LOGGER.debug(f"EventSub: message_type {message_type!r} ignoré")

    async def _on_notification(self, data: dict) -> None:
        subscription_type = _section(data, "metadata").get("subscription_type")
        decoder = self._decoders.get(subscription_type)
        if decoder is None:
            LOGGER.warning(f"⚠️ EventSub: notification {subscription_type!r} non gérée, ignorée")
            return
        event = _section(_section(data, "payload"), "event")
        try:
            await decoder(event)
        except (KeyError, TypeError, ValueError, ProtocolError) as e:
            LOGGER.warning(f"⚠️ EventSub: notification {subscription_type} illisible, ignorée ({e})")

    async def _on_channel_update(self, event: dict) -> None:
        category_id = event.get("category_id")
        labels = event.get("content_classification_labels")
        channel = await self.state.upsert_channel(ChannelDelta(
            identifier=int(event["broadcaster_user_id"]),
            name=event.get("broadcaster_user_login"),
            title=event.get("title"),
            language=event.get("language"),
            category_id=int(category_id) if category_id else None,
            category_name=event.get("category_name"),
            is_mature=("MatureGame" in labels) if labels is not None else None,
        ))
        await self.bus.publish(Topics.CHANNEL_INFO_UPDATED, ChannelInfoUpdatedEvent(channel=channel))

    async def _on_stream_online(self, event: dict) -> None:
        started_at = parse_timestamp(event.get("started_at"))
        channel = await self.state.upsert_channel(ChannelDelta(
            identifier=int(event["broadcaster_user_id"]),
            name=event.get("broadcaster_user_login"),
            is_live=True,
            started_at=started_at,
        ))
        await self.bus.publish(Topics.STREAM_STARTED, StreamStartedEvent(channel=channel, started_at=started_at))

    async def _on_stream_offline(self, event: dict) -> None:
        channel = await self.state.upsert_channel(ChannelDelta(
            identifier=int(event["broadcaster_user_id"]),
            name=event.get("broadcaster_user_login"),
            is_live=False,
        ))
        await self.bus.publish(Topics.STREAM_FINISHED, StreamFinishedEvent(channel=channel))

    def _on_revocation(self, subscription: dict) -> None:
        identifier = subscription.get("id")
        removed = self.subscriptions.pop(identifier, None)
        LOGGER.warning(
            f"⚠️ EventSub: abonnement {subscription.get('type')} révoqué "
            f"({subscription.get('status')}){'' if removed else ' (inconnu)'}"
        )

    async def _migrate(self, url: str) -> None:
        """session_reconnect: nouveau WebSocket, welcome, puis fermeture de l'ancien"""
        LOGGER.info(f"🔄 EventSub: migration vers {url}")
        new_ws = await self._open(url)
        try:
            session_id = await self._wait_for_welcome(new_ws)
        except TransportError:
            await new_ws.close()
            raise
        old_ws, self._ws = self._ws, new_ws
        self.session_id = session_id
        await old_ws.close()
        LOGGER.info(f"✅ EventSub migré (session {session_id}, {len(self.subscriptions)} abonnements conservés)")

    # ========================================================================
    # FERMETURE
    # ========================================================================

    async def close(self) -> None:
        if self.session_state == NotificationState.CLOSED:
            return
        LOGGER.info("🛑 Arrêt EventSub...")
        self._set_state(NotificationState.CLOSED)
        await self._close_ws()

    async def _close_ws(self) -> None:
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()
        if self._http_session is not None:
            session, self._http_session = self._http_session, None
            await session.close()


def _decode_frame(raw: str) -> dict:
    """Frame texte → objet JSON; ProtocolError si ce n'est pas un objet"""
    try:
        data = json.loads(raw)
    except ValueError:
        raise ProtocolError("message non-JSON") from None
    if not isinstance(data, dict):
        raise ProtocolError(f"message JSON {type(data).__name__} au lieu d'un objet")
    return data


def _section(data: dict, key: str) -> dict:
    """Sous-objet optionnel: absent ou null → {}, autre type → ProtocolError"""
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ProtocolError(f"champ '{key}' n'est pas un objet")
    return value


def _message_type(data: dict) -> Optional[str]:
    return _section(data, "metadata").get("message_type")
