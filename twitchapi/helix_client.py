#!/usr/bin/env python3
"""Helix Client - Pipeline de requêtes REST Helix avec user tokens

Chaque requête porte le Client-Id de l'app et le bearer token du rôle demandé
(bot ou broadcaster), lu à chaque tentative depuis l'AuthManager.

Un seul retry par requête:
- 401 à la 1ère tentative → refresh + save du token, pause, 2ème tentative
- 401 à la 2ème tentative → AuthError
- tout autre statut non-2xx → HelixError immédiatement
- corps 2xx non-JSON → InvalidResponseError
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

import httpx

from core.errors import AuthError, HelixError, InvalidResponseError, TransportError
from core.models import ChannelDelta, GlobalUser, GlobalUserDelta
from twitchapi.auth_manager import AuthManager, TokenRole

LOGGER = logging.getLogger(__name__)

DEFAULT_HELIX_URL = "https://api.twitch.tv/helix"
DEFAULT_RETRY_DELAY = 10.0

Params = dict | Sequence[tuple[str, Any]] | None


class HelixClient:
    """Client Helix authentifié (user tokens bot/broadcaster)"""

    def __init__(
        self,
        auth: AuthManager,
        base_url: str = DEFAULT_HELIX_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timeout: float = 8.0,
    ):
        """Initialise le client Helix.

        Args:
            auth: AuthManager qui détient les tokens
            base_url: Racine de l'API Helix
            http_client: Client httpx injecté (tests), sinon créé à la demande
            retry_delay: Pause en secondes avant la tentative qui suit un refresh
            timeout: Timeout des requêtes en secondes
        """
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._http = http_client
        self._owns_http = http_client is None
        LOGGER.debug(f"HelixClient init ({self.base_url}, retry_delay={retry_delay}s)")

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    async def request(
        self,
        role: TokenRole,
        endpoint: str,
        method: str = "GET",
        params: Params = None,
        payload: Any = None,
    ) -> Any:
        """Exécute une requête Helix au nom d'un rôle.

        Returns:
            Le JSON décodé, ou None pour une réponse 204

        Raises:
            AuthError: 401 après refresh + retry
            HelixError: statut non-2xx (hors 401)
            InvalidResponseError: corps non-JSON
            TransportError: échec réseau
        """
        endpoint = endpoint.lstrip("/")
        for attempt in (1, 2):
            token = self.auth.get_token(role)
            response = await self._send(token.access_token, endpoint, method, params, payload)

            if response.status_code == 401:
                if attempt == 1:
                    LOGGER.warning(f"⚠️ [HELIX] {method} {endpoint} => 401, refresh du token {role.value}")
                    await self.auth.refresh(role, token)
                    await asyncio.sleep(self.retry_delay)
                    continue
                raise AuthError(f"{method} '{endpoint}' still unauthorized after token refresh")

            if not response.is_success:
                raise HelixError(response.status_code, method, endpoint, _error_message(response))

            if response.status_code == 204 or not response.content:
                return None
            try:
                return response.json()
            except ValueError as e:
                raise InvalidResponseError(f"{method} '{endpoint}' returned a non-JSON body") from e

        raise AssertionError("unreachable")

    async def _send(self, access_token: str, endpoint: str, method: str, params: Params, payload: Any) -> httpx.Response:
        headers = {
            "Client-Id": self.auth.client_id,
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        LOGGER.debug(f"[HELIX] {method} {endpoint} params={params}")
        try:
            return await self.http.request(
                method,
                f"{self.base_url}/{endpoint}",
                params=params,
                json=payload,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{method} '{endpoint}' failed: {e}") from e

    async def bot_request(self, endpoint: str, method: str = "GET", params: Params = None, payload: Any = None) -> Any:
        return await self.request(TokenRole.BOT, endpoint, method, params, payload)

    async def broadcaster_request(self, endpoint: str, method: str = "GET", params: Params = None, payload: Any = None) -> Any:
        return await self.request(TokenRole.BROADCASTER, endpoint, method, params, payload)

    # ========================================================================
    # HELPERS
    # ========================================================================

    async def get_users(self, ids: Iterable[int] = (), logins: Iterable[str] = ()) -> list[dict]:
        """GET users. Sans ids ni logins, retourne l'utilisateur du token bot."""
        params = [("id", str(i)) for i in ids] + [("login", login.lower()) for login in logins]
        body = await self.bot_request("users", params=params or None)
        return (body or {}).get("data", [])

    async def get_channel_information(self, broadcaster_id: int) -> Optional[dict]:
        body = await self.bot_request("channels", params={"broadcaster_id": str(broadcaster_id)})
        data = (body or {}).get("data", [])
        return data[0] if data else None

    async def create_eventsub_subscription(
        self,
        subscription_type: str,
        version: str,
        condition: dict,
        session_id: str,
    ) -> dict:
        """POST eventsub/subscriptions (transport websocket). Token broadcaster."""
        payload = {
            "type": subscription_type,
            "version": version,
            "condition": condition,
            "transport": {"method": "websocket", "session_id": session_id},
        }
        body = await self.broadcaster_request("eventsub/subscriptions", method="POST", payload=payload)
        data = (body or {}).get("data", [])
        if not data:
            raise InvalidResponseError(f"No subscription returned for {subscription_type}")
        return data[0]

    async def close(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        return response.json().get("message")
    except ValueError:
        return response.text or None


# ============================================================================
# CONVERSIONS Helix -> modèles
# ============================================================================

def global_user_from_helix(data: dict) -> GlobalUser:
    """Objet `users` Helix -> GlobalUser"""
    return GlobalUser.from_delta(GlobalUserDelta(
        identifier=int(data["id"]),
        login_name=data.get("login"),
        display_name=data.get("display_name"),
    ))


def channel_delta_from_helix(data: dict) -> ChannelDelta:
    """Objet `channels` Helix -> ChannelDelta"""
    category_id = data.get("game_id")
    return ChannelDelta(
        identifier=int(data["broadcaster_id"]),
        name=data.get("broadcaster_login"),
        title=data.get("title"),
        language=data.get("broadcaster_language"),
        category_id=int(category_id) if category_id else None,
        category_name=data.get("game_name"),
        is_mature=_content_labels_mature(data),
    )


def _content_labels_mature(data: dict) -> Optional[bool]:
    labels = data.get("content_classification_labels")
    if labels is None:
        return None
    return "MatureGame" in labels


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Timestamp RFC3339 Twitch (suffixe Z, fractions variables) -> datetime UTC"""
    if not value:
        return None
    value = value.replace("Z", "+00:00")
    if "." in value:
        head, _, tail = value.partition(".")
        digits = "".join(c for c in tail if c.isdigit())
        offset = tail[len(digits):]
        value = f"{head}.{digits[:6].ljust(6, '0')}{offset}"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
