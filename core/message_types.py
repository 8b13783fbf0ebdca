"""
📦 Message Types - Événements typés publiés sur le MessageBus

Contrats de données entre les sessions (IRC, EventSub) et la logique métier.
Chaque événement référence les entités déjà réconciliées dans EntityState.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
import time

from core.models import Channel, ChannelUser, GlobalUser, Message


class Topics:
    """Noms des topics du bus"""
    READY = "chat.ready"
    USER_JOINED = "chat.user_joined"
    USER_LEFT = "chat.user_left"
    CHAT_MESSAGE = "chat.message"
    CHANNEL_USER_UPDATED = "chat.channel_user_updated"
    CHANNEL_UPDATED = "chat.channel_updated"
    GLOBAL_USER_UPDATED = "chat.global_user_updated"

    NOTIFICATION_READY = "eventsub.ready"
    CHANNEL_INFO_UPDATED = "eventsub.channel_update"
    STREAM_STARTED = "eventsub.stream_online"
    STREAM_FINISHED = "eventsub.stream_offline"


@dataclass
class BotEvent:
    """Base des événements (horodatage à la création)"""
    timestamp: float = field(default_factory=time.time, kw_only=True)


# ============================================================================
# SESSION CHAT (IRC)
# ============================================================================

@dataclass
class ReadyEvent(BotEvent):
    """Authentification acceptée (GLOBALUSERSTATE reçu)"""
    user: GlobalUser


@dataclass
class UserJoinedEvent(BotEvent):
    channel_user: ChannelUser


@dataclass
class UserLeftEvent(BotEvent):
    channel_user: ChannelUser


@dataclass
class ChatMessageEvent(BotEvent):
    """Ligne de chat (PRIVMSG) déjà insérée dans l'état"""
    message: Message


@dataclass
class ChannelUserUpdatedEvent(BotEvent):
    """USERSTATE: état du bot dans un channel"""
    channel_user: ChannelUser


@dataclass
class ChannelUpdatedEvent(BotEvent):
    """ROOMSTATE: modes du channel"""
    channel: Channel


@dataclass
class GlobalUserUpdatedEvent(BotEvent):
    user: GlobalUser


# ============================================================================
# SESSION NOTIFICATIONS (EventSub)
# ============================================================================

@dataclass
class NotificationReadyEvent(BotEvent):
    """session_welcome reçu, les abonnements peuvent être créés"""
    session_id: str


@dataclass
class ChannelInfoUpdatedEvent(BotEvent):
    """channel.update: titre, catégorie, langue..."""
    channel: Channel


@dataclass
class StreamStartedEvent(BotEvent):
    channel: Channel
    started_at: Optional[datetime] = None


@dataclass
class StreamFinishedEvent(BotEvent):
    channel: Channel
