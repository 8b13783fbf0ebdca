"""
🗂️ EntityState - État en mémoire du bot

Quatre registres (messages, channels, global users, channel users) reconstruits
depuis le réseau à chaque lancement. Rien n'est persisté.

Règles:
- Chaque entité est indexée par son identifiant numérique (source de vérité)
- Les index par nom (lower-case) sont des caches dérivés, reconstructibles
- Upsert = merge champ par champ, jamais remplacement complet
- Chaque registre a son propre asyncio.Lock (les deux sessions écrivent en parallèle)
- Ordre d'acquisition des locks: global users → channels → channel users → messages
"""
import asyncio
import logging
import uuid
from dataclasses import replace
from typing import Dict, Optional, Tuple

from core.errors import NotFoundError, ProtocolError
from core.models import (
    Channel,
    ChannelDelta,
    ChannelUser,
    ChannelUserDelta,
    GlobalUser,
    GlobalUserDelta,
    Message,
)

LOGGER = logging.getLogger(__name__)

ChannelUserKey = Tuple[int, int]  # (channel identifier, global user identifier)


class EntityState:
    """Registre des entités Twitch vues pendant la session"""

    def __init__(self):
        self._messages: Dict[uuid.UUID, Message] = {}
        self._channels: Dict[int, Channel] = {}
        self._global_users: Dict[int, GlobalUser] = {}
        self._channel_users: Dict[ChannelUserKey, ChannelUser] = {}

        # Index dérivés: nom lower-case -> identifiant
        self._channel_names: Dict[str, int] = {}
        self._user_names: Dict[str, int] = {}

        self._messages_lock = asyncio.Lock()
        self._channels_lock = asyncio.Lock()
        self._global_users_lock = asyncio.Lock()
        self._channel_users_lock = asyncio.Lock()

    # ========================================================================
    # MESSAGES
    # ========================================================================

    async def insert_message(self, message: Message) -> Message:
        """Insère un message (insert-only: un message n'est jamais mis à jour)"""
        async with self._messages_lock:
            if message.identifier in self._messages:
                raise ProtocolError(f"Duplicate message identifier {message.identifier}")
            self._messages[message.identifier] = message
        LOGGER.debug(f"Inserted message {message} in state")
        return message

    def get_message(self, identifier: uuid.UUID) -> Message:
        try:
            return self._messages[identifier]
        except KeyError:
            raise NotFoundError(f"Message {identifier} not in state") from None

    # ========================================================================
    # CHANNELS
    # ========================================================================

    async def insert_channel(self, channel: Channel) -> Channel:
        """Insère un channel construit depuis une réponse Helix"""
        async with self._channels_lock:
            self._channels[channel.identifier] = channel
            self._index_channel_name(channel)
        LOGGER.debug(f"Inserted channel {channel} in state")
        return channel

    async def upsert_channel(self, delta: ChannelDelta) -> Channel:
        """Crée ou met à jour (champ par champ) un channel depuis un delta"""
        async with self._channels_lock:
            return self._upsert_channel_locked(delta)

    def _upsert_channel_locked(self, delta: ChannelDelta) -> Channel:
        identifier = delta.identifier
        if identifier is None and delta.name:
            identifier = self._channel_names.get(delta.name.lower())
        if identifier is None:
            raise ProtocolError(f"Cannot reconcile channel without identifier ({delta.name!r})")

        channel = self._channels.get(identifier)
        if channel is not None:
            changed = channel.apply(delta)
            LOGGER.debug(f"Updated channel {channel} in state ({', '.join(changed) or 'no change'})")
        else:
            channel = Channel.from_delta(_with_identifier(delta, identifier))
            self._channels[identifier] = channel
            LOGGER.debug(f"Created channel {channel} in state")
        self._index_channel_name(channel)
        return channel

    def get_channel(self, identifier: int) -> Channel:
        try:
            return self._channels[identifier]
        except KeyError:
            raise NotFoundError(f"Channel {identifier} not in state") from None

    def find_channel_by_name(self, name: str) -> Optional[Channel]:
        identifier = self._channel_names.get(name.lower().lstrip("#"))
        return self._channels.get(identifier) if identifier is not None else None

    def _index_channel_name(self, channel: Channel) -> None:
        if not channel.name:
            return
        stale = [name for name, ident in self._channel_names.items()
                 if ident == channel.identifier and name != channel.name.lower()]
        for name in stale:
            del self._channel_names[name]
        self._channel_names[channel.name.lower()] = channel.identifier

    # ========================================================================
    # GLOBAL USERS
    # ========================================================================

    async def insert_global_user(self, user: GlobalUser) -> GlobalUser:
        """Insère un utilisateur construit depuis une réponse Helix"""
        async with self._global_users_lock:
            self._global_users[user.identifier] = user
            self._index_user_name(user)
        LOGGER.debug(f"Inserted global user {user} in state")
        return user

    async def upsert_global_user(self, delta: GlobalUserDelta) -> GlobalUser:
        """Crée ou met à jour un global user (identifiant obligatoire)"""
        async with self._global_users_lock:
            return self._upsert_global_user_locked(delta)

    def _upsert_global_user_locked(self, delta: GlobalUserDelta) -> GlobalUser:
        if delta.identifier is None:
            raise ProtocolError(f"Cannot reconcile global user without identifier ({delta.display_name!r})")

        user = self._global_users.get(delta.identifier)
        if user is not None:
            changed = user.apply(delta)
            LOGGER.debug(f"Updated global user {user} in state ({', '.join(changed) or 'no change'})")
        else:
            user = GlobalUser.from_delta(delta)
            self._global_users[user.identifier] = user
            LOGGER.debug(f"Created global user {user} in state")
        self._index_user_name(user)
        return user

    def get_global_user(self, identifier: int) -> GlobalUser:
        try:
            return self._global_users[identifier]
        except KeyError:
            raise NotFoundError(f"Global user {identifier} not in state") from None

    def find_global_user_by_name(self, name: str) -> Optional[GlobalUser]:
        identifier = self._user_names.get(name.lower())
        return self._global_users.get(identifier) if identifier is not None else None

    def _index_user_name(self, user: GlobalUser) -> None:
        names = {n.lower() for n in (user.login_name, user.display_name) if n}
        stale = [name for name, ident in self._user_names.items()
                 if ident == user.identifier and name not in names]
        for name in stale:
            del self._user_names[name]
        for name in names:
            self._user_names[name] = user.identifier

    # ========================================================================
    # CHANNEL USERS
    # ========================================================================

    async def upsert_channel_user(self, delta: ChannelUserDelta, channel: Channel) -> ChannelUser:
        """
        Crée ou met à jour l'état d'un utilisateur dans un channel.

        USERSTATE ne porte jamais de user-id: dans ce cas le GlobalUser est
        résolu par nom (index secondaire, insensible à la casse).

        Raises:
            ProtocolError: ni identifiant, ni nom résolvable
        """
        async with self._global_users_lock:
            user = self._resolve_global_user_locked(delta.user)
        async with self._channel_users_lock:
            key = (channel.identifier, user.identifier)
            channel_user = self._channel_users.get(key)
            if channel_user is not None:
                changed = channel_user.apply(delta)
                LOGGER.debug(f"Updated channel user {channel_user} in state ({', '.join(changed) or 'no change'})")
            else:
                channel_user = ChannelUser(user=user, channel=channel)
                channel_user.apply(delta)
                self._channel_users[key] = channel_user
                LOGGER.debug(f"Created channel user {channel_user} in state")
            return channel_user

    def _resolve_global_user_locked(self, delta: GlobalUserDelta) -> GlobalUser:
        if delta.identifier is not None:
            return self._upsert_global_user_locked(delta)

        name = delta.login_name or delta.display_name
        if not name:
            raise ProtocolError("Cannot reconcile a channel user without user-id or display-name")

        identifier = self._user_names.get(name.lower())
        if identifier is None:
            raise ProtocolError(f"Unknown global user '{name}' and no user-id to create it")

        user = self._global_users[identifier]
        user.apply(delta)
        self._index_user_name(user)
        return user

    def get_channel_user(self, key: ChannelUserKey) -> ChannelUser:
        try:
            return self._channel_users[key]
        except KeyError:
            raise NotFoundError(f"Channel user {key} not in state") from None

    def find_channel_user_by_name(self, channel: Channel, name: str) -> Optional[ChannelUser]:
        identifier = self._user_names.get(name.lower())
        if identifier is None:
            return None
        return self._channel_users.get((channel.identifier, identifier))

    # ========================================================================
    # MAINTENANCE
    # ========================================================================

    def rebuild_name_index(self) -> None:
        """Reconstruit les index par nom depuis les registres principaux"""
        self._channel_names.clear()
        self._user_names.clear()
        for channel in self._channels.values():
            self._index_channel_name(channel)
        for user in self._global_users.values():
            self._index_user_name(user)

    def get_stats(self) -> Dict[str, int]:
        return {
            "messages": len(self._messages),
            "channels": len(self._channels),
            "global_users": len(self._global_users),
            "channel_users": len(self._channel_users),
        }


def _with_identifier(delta: ChannelDelta, identifier: int) -> ChannelDelta:
    if delta.identifier == identifier:
        return delta
    return replace(delta, identifier=identifier)
