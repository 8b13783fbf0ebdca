#!/usr/bin/env python3
"""
AuthManager
Gestion centralisée des User Tokens (bot + broadcaster)

- Load/save depuis {data_directory}/<role>-token.json (écriture atomique)
- Validation via /oauth2/validate
- Refresh sérialisé par rôle (un seul refresh même si plusieurs appels 401 arrivent ensemble)
- Autorisation interactive (authorization code flow) quand le token manque ou n'a pas les scopes
"""

import asyncio
import json
import logging
import os
import secrets
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional
from urllib.parse import urlencode

import httpx

from core.errors import AuthError, TokenNotFoundError, TransportError
from twitchapi.oauth_listener import wait_for_code

LOGGER = logging.getLogger(__name__)

DEFAULT_OAUTH_URL = "https://id.twitch.tv/oauth2"
DEFAULT_EXPIRES_IN = 14400  # 4h, durée standard d'un user token Twitch

# (authorize_url, redirect_url, state) -> authorization code
CodeReceiver = Callable[[str, str, str], Awaitable[str]]


class TokenRole(str, Enum):
    """Les deux identités utilisées par le bot"""
    BOT = "bot"
    BROADCASTER = "broadcaster"


@dataclass(frozen=True)
class TokenInfo:
    """Info sur un token utilisateur (remplacé en bloc à chaque refresh)"""
    role: TokenRole
    access_token: str
    refresh_token: str
    expires_at: datetime
    scopes: tuple[str, ...] = ()

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at

    def to_json(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
            "scopes": list(self.scopes),
        }

    @classmethod
    def from_json(cls, role: TokenRole, data: dict) -> "TokenInfo":
        expires_at = datetime.fromisoformat(data["expires_at"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return cls(
            role=role,
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=expires_at,
            scopes=tuple(data.get("scopes", ())),
        )


class AuthManager:
    """
    Gère les deux user tokens (bot + broadcaster)

    Les tokens en mémoire font foi: le disque peut être en retard sur la
    mémoire, jamais en avance.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        data_directory: str | Path = "data",
        oauth_url: str = DEFAULT_OAUTH_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        code_receiver: Optional[CodeReceiver] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.data_directory = Path(data_directory)
        self.oauth_url = oauth_url.rstrip("/")
        self.tokens: dict[TokenRole, TokenInfo] = {}
        self.token_paths: dict[TokenRole, Path] = {}

        self._http = http_client
        self._owns_http = http_client is None
        self._code_receiver = code_receiver
        self._locks = {role: asyncio.Lock() for role in TokenRole}

        LOGGER.info("AuthManager initialisé")

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=10.0)
        return self._http

    def token_path(self, role: TokenRole) -> Path:
        """Fichier du token: celui passé à ensure_token(), sinon data/<role>-token.json"""
        if role in self.token_paths:
            return self.token_paths[role]
        return self.data_directory / f"{role.value}-token.json"

    # ========================================================================
    # STORAGE
    # ========================================================================

    def load(self, role: TokenRole, path: Optional[Path] = None) -> TokenInfo:
        """
        Charge un token depuis le disque

        Raises:
            TokenNotFoundError: fichier absent
            AuthError: fichier illisible ou incomplet
        """
        path = Path(path) if path else self.token_path(role)
        if not path.exists():
            raise TokenNotFoundError(f"Token file {path} not found")

        try:
            with open(path, "r", encoding="utf-8") as f:
                token = TokenInfo.from_json(role, json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise AuthError(f"Cannot read token file {path}: {e}") from e

        LOGGER.info(f"✅ Token {role.value} chargé depuis {path}")
        return token

    def save(self, token: TokenInfo, path: Optional[Path] = None) -> None:
        """Sauvegarde atomique: fichier temporaire, fsync, puis os.replace"""
        path = Path(path) if path else self.token_path(token.role)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(token.to_json(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        LOGGER.info(f"💾 Token {token.role.value} sauvegardé dans {path}")

    # ========================================================================
    # OAUTH
    # ========================================================================

    async def validate(self, token: TokenInfo) -> bool:
        """
        Valide un token via GET /oauth2/validate

        Returns:
            True (200), False (401)

        Raises:
            AuthError: autre statut HTTP
            TransportError: échec réseau
        """
        try:
            response = await self.http.get(
                f"{self.oauth_url}/validate",
                headers={"Authorization": f"OAuth {token.access_token}"},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Token validation request failed: {e}") from e

        if response.status_code == 200:
            data = response.json()
            LOGGER.info(f"✅ Token {token.role.value} valide ({data.get('login', '?')})")
            return True
        if response.status_code == 401:
            LOGGER.warning(f"⚠️ Token {token.role.value} invalide ou expiré (401)")
            return False
        raise AuthError(f"Token validation failed: HTTP {response.status_code}")

    async def refresh(self, role: TokenRole, stale: Optional[TokenInfo] = None) -> TokenInfo:
        """
        Refresh le token d'un rôle puis le persiste

        Args:
            role: Rôle à refresh
            stale: Token qui a provoqué le refresh. Si un autre appel l'a déjà
                remplacé, le token courant est retourné sans second refresh.

        Raises:
            AuthError: pas de token pour ce rôle, ou refresh refusé
        """
        async with self._locks[role]:
            current = self.tokens.get(role)
            if current is None:
                raise AuthError(f"No {role.value} token to refresh")
            if stale is not None and current.access_token != stale.access_token:
                LOGGER.debug(f"Token {role.value} déjà refreshé par un autre appel")
                return current

            LOGGER.info(f"🔄 Refresh token {role.value} via Twitch OAuth...")
            result = await self._token_request({
                "grant_type": "refresh_token",
                "refresh_token": current.refresh_token,
            })
            token = self._token_from_response(role, result, fallback_scopes=current.scopes)

            self.tokens[role] = token
            self.save(token)
            LOGGER.info(f"✅ Token {role.value} refreshé (expires: {token.expires_at})")
            return token

    async def request_authorization(
        self,
        role: TokenRole,
        redirect_url: str,
        scopes: Iterable[str],
        path: Optional[Path] = None,
    ) -> TokenInfo:
        """
        Authorization code flow interactif

        L'URL d'autorisation est loggée, le code est récupéré par le code
        receiver (par défaut un listener HTTP local one-shot), puis échangé
        contre un token qui est persisté.
        """
        scopes = tuple(scopes)
        state = secrets.token_urlsafe(16)
        authorize_url = f"{self.oauth_url}/authorize?" + urlencode({
            "client_id": self.client_id,
            "redirect_uri": redirect_url,
            "response_type": "code",
            "scope": " ".join(scopes),
            "state": state,
            "force_verify": "true",
        })

        LOGGER.warning(f"🔐 Autorisation requise pour le token {role.value}")
        LOGGER.warning(f"   Ouvrir: {authorize_url}")

        receiver = self._code_receiver
        if receiver is None:
            receiver = wait_for_code
        code = await receiver(authorize_url, redirect_url, state)

        result = await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_url,
        })
        token = self._token_from_response(role, result, fallback_scopes=scopes)

        self.tokens[role] = token
        self.save(token, path)
        LOGGER.info(f"✅ Token {role.value} obtenu ({len(token.scopes)} scopes)")
        return token

    async def _token_request(self, form: dict) -> dict:
        data = {"client_id": self.client_id, "client_secret": self.client_secret, **form}
        try:
            response = await self.http.post(f"{self.oauth_url}/token", data=data)
        except httpx.HTTPError as e:
            raise AuthError(f"Token request failed: {e}") from e

        if response.status_code != 200:
            raise AuthError(f"Token request ({form['grant_type']}) failed: {response.status_code} - {response.text}")
        try:
            return response.json()
        except ValueError as e:
            raise AuthError(f"Token endpoint returned invalid JSON: {e}") from e

    @staticmethod
    def _token_from_response(role: TokenRole, result: dict, fallback_scopes: Iterable[str]) -> TokenInfo:
        try:
            access_token = result["access_token"]
            refresh_token = result["refresh_token"]
        except KeyError as e:
            raise AuthError(f"Token response missing {e}") from e
        expires_in = result.get("expires_in") or DEFAULT_EXPIRES_IN
        return TokenInfo(
            role=role,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            scopes=tuple(result.get("scope") or fallback_scopes),
        )

    # ========================================================================
    # STARTUP / ACCESS
    # ========================================================================

    @staticmethod
    def has_required_scopes(token: TokenInfo, required: Iterable[str]) -> bool:
        """True si tous les scopes requis sont présents dans le token"""
        return set(required) <= set(token.scopes)

    async def ensure_token(
        self,
        role: TokenRole,
        required_scopes: Iterable[str],
        redirect_url: str,
        path: Optional[Path] = None,
    ) -> TokenInfo:
        """
        Chemin de démarrage pour un rôle:
        load → validate → refresh si invalide → ré-autorisation si scopes manquants.
        Un fichier absent mène directement à l'autorisation.
        """
        required_scopes = tuple(required_scopes)
        if path:
            self.token_paths[role] = Path(path)
        try:
            token = self.load(role, path)
        except TokenNotFoundError:
            LOGGER.warning(f"⚠️ Aucun token {role.value} sur le disque")
            return await self.request_authorization(role, redirect_url, required_scopes, path)

        self.tokens[role] = token
        if not await self.validate(token):
            token = await self.refresh(role, token)

        if not self.has_required_scopes(token, required_scopes):
            missing = sorted(set(required_scopes) - set(token.scopes))
            LOGGER.warning(f"⚠️ Token {role.value} sans les scopes requis: {missing}")
            token = await self.request_authorization(role, redirect_url, required_scopes, path)

        return token

    def get_token(self, role: TokenRole) -> TokenInfo:
        try:
            return self.tokens[role]
        except KeyError:
            raise AuthError(f"No {role.value} token loaded") from None

    def get_stats(self) -> dict[str, int]:
        """Retourne les stats de tokens"""
        expired = sum(1 for token in self.tokens.values() if token.is_expired)
        return {
            "total_tokens": len(self.tokens),
            "valid_tokens": len(self.tokens) - expired,
            "expired_tokens": expired,
        }

    async def close(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
