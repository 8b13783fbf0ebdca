"""
Exceptions du bot

Taxonomie commune aux deux sessions (chat IRC + EventSub) et au pipeline Helix.
"""
from typing import Optional


class BotError(Exception):
    """Base de toutes les erreurs du bot"""


class ConfigError(BotError):
    """Configuration invalide ou incomplète (fatal au démarrage)"""


class TransportError(BotError):
    """Échec connect/read/write sur une session (fatal pour cette session)"""


class CapabilityError(TransportError):
    """Twitch a refusé tout ou partie des capabilities demandées"""


class AuthError(BotError):
    """Token invalide, refresh échoué, ou scopes insuffisants"""


class ProtocolError(BotError):
    """Message malformé ou inattendu (le message est ignoré, la boucle continue)"""


class NotFoundError(BotError, LookupError):
    """Entité, token ou commande introuvable"""


class TokenNotFoundError(NotFoundError):
    """Fichier de token absent sur le disque"""


class CommandHandlerError(BotError):
    """Un handler de commande a levé une exception"""

    def __init__(self, command: str, cause: BaseException):
        super().__init__(f"Command '{command}' failed: {cause}")
        self.command = command
        self.cause = cause


class HelixError(BotError):
    """Réponse HTTP non-2xx de l'API Helix"""

    def __init__(self, status: int, method: str, endpoint: str, message: Optional[str] = None):
        super().__init__(f"{method} '{endpoint}' => HTTP {status}{f': {message}' if message else ''}")
        self.status = status
        self.method = method
        self.endpoint = endpoint


class InvalidResponseError(BotError):
    """Réponse 2xx dont le corps n'est pas du JSON valide"""
