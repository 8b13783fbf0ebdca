"""
Core - État, événements et erreurs partagés par les deux sessions
"""

# Import explicites pour Pylance
from core.message_bus import MessageBus
from core.state import EntityState

__all__ = ["EntityState", "MessageBus"]
