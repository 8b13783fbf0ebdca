"""
Pytest configuration for CI tests
Provides common fixtures and fakes (no network, no real Twitch credentials)
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import aiohttp
import httpx
import pytest

from core.message_bus import MessageBus
from core.state import EntityState
from twitchapi.auth_manager import AuthManager, TokenInfo, TokenRole


def make_token(role=TokenRole.BOT, access="access-1", refresh="refresh-1", scopes=("chat:read", "chat:edit")):
    return TokenInfo(
        role=role,
        access_token=access,
        refresh_token=refresh,
        expires_at=datetime.now(timezone.utc) + timedelta(hours=4),
        scopes=tuple(scopes),
    )


class OAuthServer:
    """Faux id.twitch.tv/oauth2 (validate + token) pour httpx.MockTransport"""

    def __init__(self):
        self.valid_tokens = {"access-1"}
        self.refresh_calls = 0
        self.code_exchanges = 0
        self.next_access = "access-2"
        self.scope = ["chat:read", "chat:edit"]
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/validate"):
            token = request.headers["Authorization"].removeprefix("OAuth ")
            if token in self.valid_tokens:
                return httpx.Response(200, json={"login": "test_bot", "user_id": "1", "scopes": self.scope})
            return httpx.Response(401, json={"status": 401, "message": "invalid access token"})

        if request.url.path.endswith("/token"):
            form = dict(httpx.QueryParams(request.content.decode()))
            if form["grant_type"] == "refresh_token":
                self.refresh_calls += 1
            else:
                self.code_exchanges += 1
            self.valid_tokens.add(self.next_access)
            return httpx.Response(200, json={
                "access_token": self.next_access,
                "refresh_token": f"refresh-for-{self.next_access}",
                "expires_in": 14400,
                "scope": self.scope,
                "token_type": "bearer",
            })
        return httpx.Response(404)


class FakeLineTransport:
    """Transport IRC simulé: lignes entrantes en file, lignes sortantes enregistrées"""

    def __init__(self, lines=(), replies=None):
        self.sent = []
        self.is_open = False
        self.replies = dict(replies or {})   # préfixe de ligne envoyée -> lignes à recevoir
        self._incoming = asyncio.Queue()
        self.feed(*lines)

    def feed(self, *lines):
        for line in lines:
            self._incoming.put_nowait(line)

    async def open(self):
        self.is_open = True

    async def send(self, line):
        self.sent.append(line)
        for prefix, lines in self.replies.items():
            if line.startswith(prefix):
                self.feed(*lines)

    async def readline(self):
        return await self._incoming.get()

    async def close(self):
        if self.is_open:
            self.is_open = False
            self._incoming.put_nowait(None)


class FakeWebSocket:
    """WebSocket EventSub simulé (receive/close)"""

    def __init__(self, messages=()):
        self.closed = False
        self._queue = asyncio.Queue()
        self.feed(*messages)

    def feed(self, *messages):
        for message in messages:
            self._queue.put_nowait(message)

    async def receive(self, timeout=None):
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is None:
            return SimpleNamespace(type=aiohttp.WSMsgType.CLOSED, data=None)
        return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=json.dumps(item))

    async def close(self):
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)


def eventsub_message(message_type, payload=None, subscription_type=None):
    metadata = {"message_id": "m-1", "message_type": message_type, "message_timestamp": "2024-01-01T00:00:00Z"}
    if subscription_type:
        metadata["subscription_type"] = subscription_type
        metadata["subscription_version"] = "1"
    return {"metadata": metadata, "payload": payload or {}}


def welcome(session_id="session-1"):
    return eventsub_message("session_welcome", {"session": {"id": session_id, "status": "connected"}})


@pytest.fixture
def state():
    return EntityState()


@pytest.fixture
def bus():
    return MessageBus()


@pytest.fixture
def oauth_server():
    return OAuthServer()


@pytest.fixture
def auth(tmp_path, oauth_server):
    """AuthManager branché sur le faux serveur OAuth, tokens dans tmp_path"""
    manager = AuthManager(
        "client-id",
        "client-secret",
        data_directory=tmp_path,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(oauth_server)),
    )
    manager.tokens[TokenRole.BOT] = make_token(TokenRole.BOT)
    manager.tokens[TokenRole.BROADCASTER] = make_token(TokenRole.BROADCASTER)
    return manager


@pytest.fixture
def recorder(bus):
    """Enregistre tous les événements publiés, par topic"""
    events = {}

    def listen(*topics):
        for topic in topics:
            async def handler(event, topic=topic):
                events.setdefault(topic, []).append(event)
            bus.subscribe(topic, handler)
        return events

    return listen
