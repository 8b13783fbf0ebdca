"""
twitchapi/transports/
=====================

Sessions réseau Twitch.

Modules:
- irc_protocol : Parsing IRCv3 + transport TLS ligne à ligne
- irc_client : Session chat (capabilities, authentification, JOIN, dispatch)
- eventsub_client : Session de notifications EventSub (WebSocket)
"""

from twitchapi.transports.eventsub_client import EventSubClient
from twitchapi.transports.irc_client import IRCClient

__all__ = ["EventSubClient", "IRCClient"]
