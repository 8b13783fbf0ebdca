"""
twitchapi/
==========

Module dédié à TOUTE la gestion de l'API Twitch.

Organisation:
- auth_manager.py : Tokens utilisateurs (bot + broadcaster), refresh, autorisation
- oauth_listener.py : Listener HTTP one-shot pour le code OAuth
- helix_client.py : Requêtes Helix (retry unique sur 401)
- irc_tags.py : Tags IRCv3 → deltas typés
- transports/ : Sessions réseau
  - irc_client.py : IRC Twitch (chat)
  - eventsub_client.py : EventSub WebSocket (notifications)

Philosophie:
- Séparation claire : core/ = bot logic, twitchapi/ = Twitch-specific
- Testable : Code Twitch isolé = mocking facile
"""

from twitchapi.auth_manager import AuthManager, TokenInfo, TokenRole

__all__ = ["AuthManager", "TokenInfo", "TokenRole"]
