#!/usr/bin/env python3
"""
IRC Protocol - Parsing IRCv3 + transport TLS

- parse_irc_line() : ligne brute → IrcMessage (tags, source, commande, params)
- IrcTransport     : connexion TLS ligne par ligne (asyncio streams)

Seul le sous-ensemble utilisé par Twitch est géré: pas de CTCP, pas de DCC.
"""

import asyncio
import logging
import ssl
from dataclasses import dataclass, field
from typing import Optional, Protocol

from core.errors import ProtocolError, TransportError

LOGGER = logging.getLogger(__name__)

_TAG_ESCAPES = {":": ";", "s": " ", "\\": "\\", "r": "\r", "n": "\n"}


@dataclass
class IrcMessage:
    """Message IRC parsé"""
    command: str
    params: list[str] = field(default_factory=list)
    tags: dict[str, str] = field(default_factory=dict)
    source: Optional[str] = None   # "nick!user@host" ou "tmi.twitch.tv"

    @property
    def nick(self) -> Optional[str]:
        if not self.source:
            return None
        return self.source.split("!", 1)[0]

    @property
    def channel(self) -> Optional[str]:
        """Premier paramètre sans le '#', si c'est un channel"""
        if self.params and self.params[0].startswith("#"):
            return self.params[0][1:].lower()
        return None

    @property
    def trailing(self) -> str:
        return self.params[-1] if self.params else ""


def unescape_tag_value(value: str) -> str:
    out = []
    i = 0
    while i < len(value):
        char = value[i]
        if char == "\\" and i + 1 < len(value):
            out.append(_TAG_ESCAPES.get(value[i + 1], value[i + 1]))
            i += 2
            continue
        if char != "\\":
            out.append(char)
        i += 1
    return "".join(out)


def _parse_tags(raw: str) -> dict[str, str]:
    tags = {}
    for part in raw.split(";"):
        if not part:
            continue
        key, _, value = part.partition("=")
        tags[key] = unescape_tag_value(value)
    return tags


def parse_irc_line(line: str) -> IrcMessage:
    """
    Parse une ligne IRCv3

    Exemple:
        @badges=;display-name=User :user!user@user.tmi.twitch.tv PRIVMSG #chan :hello

    Raises:
        ProtocolError: ligne vide ou sans commande
    """
    rest = line.rstrip("\r\n")
    if not rest.strip():
        raise ProtocolError("Empty IRC line")

    tags: dict[str, str] = {}
    if rest.startswith("@"):
        raw_tags, _, rest = rest[1:].partition(" ")
        tags = _parse_tags(raw_tags)
        rest = rest.lstrip(" ")

    source = None
    if rest.startswith(":"):
        source, _, rest = rest[1:].partition(" ")
        rest = rest.lstrip(" ")

    trailing = None
    if " :" in rest:
        rest, _, trailing = rest.partition(" :")
    elif rest.startswith(":"):
        trailing, rest = rest[1:], ""

    parts = rest.split()
    if not parts:
        raise ProtocolError(f"IRC line without command: {line!r}")

    params = parts[1:]
    if trailing is not None:
        params.append(trailing)
    return IrcMessage(command=parts[0].upper(), params=params, tags=tags, source=source)


# ============================================================================
# TRANSPORT
# ============================================================================

class LineTransport(Protocol):
    """Interface minimale utilisée par l'IRCClient (remplacée par un fake en test)"""

    async def open(self) -> None: ...
    async def send(self, line: str) -> None: ...
    async def readline(self) -> Optional[str]: ...
    async def close(self) -> None: ...

    @property
    def is_open(self) -> bool: ...


class IrcTransport:
    """Connexion IRC TLS via asyncio.open_connection"""

    def __init__(self, host: str, port: int = 6697, use_tls: bool = True, connect_timeout: float = 10.0):
        self.host = host
        self.port = port
        self.use_tls = use_tls
        self.connect_timeout = connect_timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    @property
    def is_open(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def open(self) -> None:
        context = ssl.create_default_context() if self.use_tls else None
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port, ssl=context),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"Cannot connect to {self.host}:{self.port}: {e}") from e
        LOGGER.info(f"🔌 Connecté à {self.host}:{self.port} (tls={self.use_tls})")

    async def send(self, line: str) -> None:
        if not self.is_open:
            raise TransportError("IRC transport is not open")
        if line.startswith("PASS "):
            LOGGER.debug("> PASS oauth:***")
        else:
            LOGGER.debug(f"> {line}")
        try:
            self._writer.write((line + "\r\n").encode("utf-8"))
            await self._writer.drain()
        except (OSError, ConnectionError) as e:
            raise TransportError(f"IRC write failed: {e}") from e

    async def readline(self) -> Optional[str]:
        """Retourne la prochaine ligne, ou None quand la connexion est fermée"""
        if self._reader is None:
            return None
        try:
            raw = await self._reader.readline()
        except (OSError, ConnectionError) as e:
            raise TransportError(f"IRC read failed: {e}") from e
        if not raw:
            return None
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        LOGGER.debug(f"< {line}")
        return line

    async def close(self) -> None:
        if self._writer is None:
            return
        writer, self._writer = self._writer, None
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, ConnectionError, ssl.SSLError) as e:
            LOGGER.debug(f"Fermeture IRC incomplète: {e}")
        LOGGER.info(f"🔌 Connexion {self.host}:{self.port} fermée")
