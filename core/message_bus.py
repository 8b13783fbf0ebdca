"""
🚌 MessageBus - Système de pub/sub interne

Découple les sessions (IRC, EventSub) de la logique métier.
Les handlers d'un topic sont appelés dans l'ordre d'abonnement; l'exception
d'un handler est loggée et n'empêche pas les suivants de recevoir l'événement.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List

LOGGER = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


class MessageBus:
    """Bus de messages asynchrone simple (pub/sub)"""

    def __init__(self):
        self._subscribers: Dict[str, List[Handler]] = {}
        self._published = 0
        self._failures = 0

    def subscribe(self, topic: str, handler: Handler):
        """
        Abonne un handler à un topic.

        Args:
            topic: Nom du topic (voir core.message_types.Topics)
            handler: Fonction async qui traite l'événement
        """
        self._subscribers.setdefault(topic, []).append(handler)
        LOGGER.info(f"📌 Subscriber ajouté: {topic} -> {_name(handler)}")

    def unsubscribe(self, topic: str, handler: Handler):
        handlers = self._subscribers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(self, topic: str, data: Any):
        """
        Publie un événement sur un topic.

        Les handlers sont attendus séquentiellement: quand publish() retourne,
        chaque handler a traité l'événement (ou échoué, erreur loggée).
        """
        handlers = list(self._subscribers.get(topic, []))
        self._published += 1

        if not handlers:
            LOGGER.debug(f"⚠️ MessageBus: Aucun subscriber pour topic: {topic}")
            return

        LOGGER.debug(f"📤 MessageBus: Publish [{topic}] vers {len(handlers)} handlers")
        for handler in handlers:
            await self._safe_handle(handler, data, topic)

    async def _safe_handle(self, handler: Handler, data: Any, topic: str):
        """Wrapper sécurisé pour exécuter les handlers"""
        try:
            await handler(data)
        except Exception as e:
            self._failures += 1
            LOGGER.error(f"❌ Erreur handler {_name(handler)} sur topic {topic}: {e}", exc_info=True)

    def get_stats(self) -> Dict[str, int]:
        """Retourne les stats du bus"""
        return {
            "topics": len(self._subscribers),
            "subscribers": sum(len(h) for h in self._subscribers.values()),
            "published": self._published,
            "handler_failures": self._failures,
        }


def _name(handler: Handler) -> str:
    return getattr(handler, "__name__", repr(handler))
