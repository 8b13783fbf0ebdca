"""
📦 Models - Entités de l'état en mémoire + deltas typés

Les entités (GlobalUser, Channel, ChannelUser, Message) vivent dans EntityState.
Les deltas portent uniquement les champs présents dans le message source:
un champ à None = "non fourni", jamais "effacé".
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


def _apply(target, delta, names) -> list[str]:
    """Copie les champs non-None du delta vers l'entité, retourne les champs modifiés"""
    changed = []
    for name in names:
        value = getattr(delta, name)
        if value is None:
            continue
        if getattr(target, name) != value:
            changed.append(name)
        setattr(target, name, value)
    return changed


# ============================================================================
# DELTAS
# ============================================================================

@dataclass(frozen=True)
class GlobalUserDelta:
    """Mise à jour partielle d'un compte Twitch"""
    identifier: Optional[int] = None
    login_name: Optional[str] = None
    display_name: Optional[str] = None
    color: Optional[str] = None


@dataclass(frozen=True)
class ChannelDelta:
    """Mise à jour partielle d'un channel (ROOMSTATE, Helix, EventSub)"""
    identifier: Optional[int] = None
    name: Optional[str] = None
    title: Optional[str] = None
    language: Optional[str] = None
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    is_mature: Optional[bool] = None
    is_live: Optional[bool] = None
    started_at: Optional[datetime] = None
    emote_only: Optional[bool] = None
    followers_only: Optional[int] = None   # minutes, -1 = désactivé
    r9k: Optional[bool] = None
    slow_mode: Optional[int] = None        # secondes
    subscribers_only: Optional[bool] = None


@dataclass(frozen=True)
class ChannelUserDelta:
    """Mise à jour partielle d'un utilisateur dans un channel (PRIVMSG, USERSTATE)"""
    user: GlobalUserDelta
    is_moderator: Optional[bool] = None
    is_subscriber: Optional[bool] = None
    is_turbo: Optional[bool] = None
    is_first_message: Optional[bool] = None
    is_returning_chatter: Optional[bool] = None
    badges: Optional[str] = None
    user_type: Optional[str] = None


# ============================================================================
# ENTITÉS
# ============================================================================

@dataclass
class GlobalUser:
    """Compte Twitch, indépendant de tout channel"""
    identifier: int
    login_name: str = ""
    display_name: str = ""
    color: str = ""

    @classmethod
    def from_delta(cls, delta: GlobalUserDelta) -> "GlobalUser":
        user = cls(identifier=delta.identifier)
        user.apply(delta)
        if not user.login_name and user.display_name:
            user.login_name = user.display_name.lower()
        return user

    def apply(self, delta: GlobalUserDelta) -> list[str]:
        return _apply(self, delta, ("login_name", "display_name", "color"))

    def __str__(self) -> str:
        return f"'{self.display_name or self.login_name}' ({self.identifier})"


@dataclass
class Channel:
    """Channel d'un broadcaster"""
    identifier: int
    name: str = ""
    title: str = ""
    language: str = ""
    category_id: int = 0
    category_name: str = ""
    is_mature: bool = False
    is_live: bool = False
    started_at: Optional[datetime] = None
    emote_only: bool = False
    followers_only: int = -1
    r9k: bool = False
    slow_mode: int = 0
    subscribers_only: bool = False

    _MUTABLE = (
        "name", "title", "language", "category_id", "category_name", "is_mature",
        "is_live", "started_at", "emote_only", "followers_only", "r9k", "slow_mode",
        "subscribers_only",
    )

    @classmethod
    def from_delta(cls, delta: ChannelDelta) -> "Channel":
        channel = cls(identifier=delta.identifier)
        channel.apply(delta)
        return channel

    def apply(self, delta: ChannelDelta) -> list[str]:
        return _apply(self, delta, self._MUTABLE)

    def __str__(self) -> str:
        return f"'{self.name}' ({self.identifier})"


@dataclass
class ChannelUser:
    """Rôle/état d'un GlobalUser dans un Channel"""
    user: GlobalUser
    channel: Channel
    is_moderator: bool = False
    is_subscriber: bool = False
    is_turbo: bool = False
    is_first_message: bool = False
    is_returning_chatter: bool = False
    badges: str = ""
    user_type: str = ""

    _MUTABLE = (
        "is_moderator", "is_subscriber", "is_turbo", "is_first_message",
        "is_returning_chatter", "badges", "user_type",
    )

    @property
    def key(self) -> tuple[int, int]:
        return (self.channel.identifier, self.user.identifier)

    @property
    def is_broadcaster(self) -> bool:
        return self.user.identifier == self.channel.identifier

    def apply(self, delta: ChannelUserDelta) -> list[str]:
        return _apply(self, delta, self._MUTABLE)

    def __str__(self) -> str:
        return f"{self.user} in {self.channel}"


@dataclass(frozen=True)
class Message:
    """Ligne de chat (immuable une fois créée)"""
    author: ChannelUser
    content: str
    identifier: uuid.UUID = field(default_factory=uuid.uuid4)
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def channel(self) -> Channel:
        return self.author.channel

    def __str__(self) -> str:
        return f"'{self.content}' ({self.identifier})"


__all__ = [
    "GlobalUserDelta", "ChannelDelta", "ChannelUserDelta",
    "GlobalUser", "Channel", "ChannelUser", "Message",
]
