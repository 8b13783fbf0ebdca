"""
🏷️ IRC Tags - Décodage des tags IRCv3 Twitch en deltas typés

Un tag absent donne None dans le delta: "non fourni", donc la valeur déjà
connue dans EntityState est conservée. badges et user-type vides sont des
valeurs (badges retirés, utilisateur normal); pour les autres tags, vide =
absent. Une valeur présente mais illisible lève ProtocolError (le message
est ignoré par l'appelant).
"""
import uuid
from typing import Mapping, Optional

from core.errors import ProtocolError
from core.models import ChannelDelta, ChannelUserDelta, GlobalUserDelta

Tags = Mapping[str, str]


def _int(tags: Tags, key: str) -> Optional[int]:
    value = tags.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ProtocolError(f"Tag '{key}' is not an integer: {value!r}") from None


def _bool(tags: Tags, key: str) -> Optional[bool]:
    value = _int(tags, key)
    return None if value is None else value != 0


def _str(tags: Tags, key: str) -> Optional[str]:
    value = tags.get(key)
    return value if value else None


def global_user_delta(tags: Tags, login: Optional[str] = None) -> GlobalUserDelta:
    """user-id, display-name, color (+ login depuis la source IRC)"""
    return GlobalUserDelta(
        identifier=_int(tags, "user-id"),
        login_name=login.lower() if login else None,
        display_name=_str(tags, "display-name"),
        color=_str(tags, "color"),
    )


def channel_user_delta(tags: Tags, login: Optional[str] = None) -> ChannelUserDelta:
    """PRIVMSG / USERSTATE -> état de l'auteur dans le channel"""
    return ChannelUserDelta(
        user=global_user_delta(tags, login),
        is_moderator=_bool(tags, "mod"),
        is_subscriber=_bool(tags, "subscriber"),
        is_turbo=_bool(tags, "turbo"),
        is_first_message=_bool(tags, "first-msg"),
        is_returning_chatter=_bool(tags, "returning-chatter"),
        badges=tags.get("badges"),
        user_type=tags.get("user-type"),
    )


def roomstate_delta(tags: Tags, name: Optional[str] = None) -> ChannelDelta:
    """ROOMSTATE -> modes du channel (mise à jour partielle possible)"""
    return ChannelDelta(
        identifier=_int(tags, "room-id"),
        name=name.lower() if name else None,
        emote_only=_bool(tags, "emote-only"),
        followers_only=_int(tags, "followers-only"),
        r9k=_bool(tags, "r9k"),
        slow_mode=_int(tags, "slow"),
        subscribers_only=_bool(tags, "subs-only"),
    )


def message_identifier(tags: Tags) -> uuid.UUID:
    """Tag `id` du PRIVMSG, ou un UUID généré s'il est absent"""
    value = tags.get("id")
    if not value:
        return uuid.uuid4()
    try:
        return uuid.UUID(value)
    except ValueError:
        raise ProtocolError(f"Tag 'id' is not a UUID: {value!r}") from None


def privmsg_channel_delta(tags: Tags, name: Optional[str]) -> ChannelDelta:
    """PRIVMSG -> référence du channel (room-id + nom), sans toucher aux modes"""
    return ChannelDelta(identifier=_int(tags, "room-id"), name=name.lower() if name else None)
