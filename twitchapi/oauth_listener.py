"""
🔑 OAuth Listener - Récupère le code d'autorisation OAuth

Serveur HTTP local one-shot (aiohttp.web) sur l'URL de redirection: attend
la redirection de Twitch, vérifie le `state`, retourne le `code` puis s'arrête.
"""
import asyncio
import logging
from typing import Optional
from urllib.parse import urlparse

from aiohttp import web

from core.errors import AuthError

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0


class OAuthCodeListener:
    """Listener one-shot pour le callback OAuth"""

    def __init__(self, redirect_url: str, state: str):
        parsed = urlparse(redirect_url)
        self.host = parsed.hostname or "localhost"
        self.port = parsed.port or 80
        self.path = parsed.path or "/"
        self.state = state

        self.app = web.Application()
        self.app.router.add_get(self.path, self.handle_callback)
        self.runner: Optional[web.AppRunner] = None
        self._result: asyncio.Future = asyncio.get_running_loop().create_future()

    async def handle_callback(self, request: web.Request) -> web.Response:
        """GET {redirect_path}?code=...&state=... (ou ?error=...)"""
        query = request.query
        if self._result.done():
            return web.Response(text="Autorisation déjà traitée.", status=409)

        if "error" in query:
            reason = query.get("error_description") or query["error"]
            self._result.set_exception(AuthError(f"Authorization denied: {reason}"))
            return web.Response(text=f"Autorisation refusée: {reason}", status=400)

        if query.get("state") != self.state:
            LOGGER.warning("⚠️ Callback OAuth avec un state invalide, ignoré")
            return web.Response(text="State invalide.", status=400)

        code = query.get("code")
        if not code:
            return web.Response(text="Code manquant.", status=400)

        self._result.set_result(code)
        return web.Response(text="✅ Autorisation reçue, vous pouvez fermer cet onglet.")

    async def start(self) -> None:
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        LOGGER.info(f"🔑 Listener OAuth démarré sur http://{self.host}:{self.port}{self.path}")

    async def wait(self, timeout: float = DEFAULT_TIMEOUT) -> str:
        try:
            return await asyncio.wait_for(asyncio.shield(self._result), timeout)
        except asyncio.TimeoutError:
            raise AuthError(f"No authorization received within {timeout:.0f}s") from None

    async def stop(self) -> None:
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
            LOGGER.info("Listener OAuth arrêté")


async def wait_for_code(authorize_url: str, redirect_url: str, state: str) -> str:
    """
    Code receiver par défaut de l'AuthManager

    Args:
        authorize_url: URL à ouvrir dans un navigateur (déjà loggée par l'appelant)
        redirect_url: URL de redirection enregistrée sur l'app Twitch
        state: Valeur anti-CSRF attendue dans le callback

    Returns:
        Le code d'autorisation
    """
    listener = OAuthCodeListener(redirect_url, state)
    await listener.start()
    try:
        return await listener.wait()
    finally:
        await listener.stop()
