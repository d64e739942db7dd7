"""HTTP server of the bot host.

Routes::

    GET  /, /auth        302 to the Twitch authorize URL
    GET  /callback       finish the authorization and store the credential
    POST /bots/{name}    EventSub webhook deliveries of one bot identity
    POST /setup-app-token
    POST /setup-bots     point the webhook bots' chat subscriptions at this server
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from aiohttp import web

from core.token_manager import AuthStateError, OAuthError
from handlers.async_comm import AsyncCommError
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging

    from core.eventsub.webhook import WebhookIngress, WebhookResult
    from core.host import IdentityHost
    from core.token_manager import AuthorizedIdentity


__all__: list[str] = ["EventSubServer"]

logger: logging.Logger = LoggerUtils.get_logger(__name__)


class EventSubServer:
    """aiohttp application serving the webhook, OAuth and setup routes of a host.

    Attributes:
        host (IdentityHost): The bots and shared stores the routes act on.
        bind_host (str): Interface to listen on.
        port (int): TCP port to listen on.
        app (web.Application): The aiohttp application.
    """

    def __init__(self, host: IdentityHost, *, bind_host: str | None = None, port: int | None = None) -> None:
        self.host: IdentityHost = host
        self.bind_host: str = bind_host or host.config.SERVER.HOST
        self.port: int = port or host.config.SERVER.PORT
        self.app: web.Application = web.Application()
        self.runner: web.AppRunner | None = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_get("/", self.handle_auth)
        self.app.router.add_get("/auth", self.handle_auth)
        self.app.router.add_get("/callback", self.handle_callback)
        self.app.router.add_post("/bots/{name}", self.handle_webhook)
        self.app.router.add_post("/setup-app-token", self.handle_setup_app_token)
        self.app.router.add_post("/setup-bots", self.handle_setup_bots)

    @property
    def base_url(self) -> str:
        public_url: str = self.host.config.SERVER.PUBLIC_URL
        if public_url:
            return public_url.rstrip("/")
        return f"http://localhost:{self.port}"

    @property
    def redirect_uri(self) -> str:
        return f"{self.base_url}/callback"

    async def handle_auth(self, request: web.Request) -> web.Response:
        _ = request
        url: str = await self.host.flow.begin(self.redirect_uri)
        raise web.HTTPFound(location=url)

    async def handle_callback(self, request: web.Request) -> web.Response:
        """Exchange the authorization code and store the resulting credential."""
        error: str | None = request.query.get("error")
        if error:
            description: str = request.query.get("error_description", "")
            logger.warning("Authorization denied: %s %s", error, description)
            return web.Response(status=400, text=f"AUTHORIZATION DENIED: {error} {description}".strip())

        state: str = request.query.get("state", "")
        code: str = request.query.get("code", "")
        missing: list[str] = []
        if not state:
            missing.append("STATE MISSING")
        if not code:
            missing.append("CODE MISSING")
        if missing:
            return web.Response(status=400, text="\n".join(missing))

        try:
            identity: AuthorizedIdentity = await self.host.flow.complete(code, state, self.redirect_uri)
        except AuthStateError:
            return web.Response(status=400, text="INVALID STATE")
        except OAuthError as err:
            logger.error("Authorization failed: %s", err)
            return web.Response(status=502, text=str(err))

        return web.Response(text=f"Tokens saved for {identity.user_id} ({identity.login})")

    async def handle_webhook(self, request: web.Request) -> web.Response:
        name: str = request.match_info["name"]
        ingress: WebhookIngress | None = self.host.get_ingress(name)
        if ingress is None:
            logger.warning("Webhook delivery for unknown bot '%s'", name)
            return web.Response(status=404, text="Unknown bot")

        body: bytes = await request.read()
        result: WebhookResult = await ingress.handle(request.headers, body)
        return web.Response(status=result.status, text=result.text, content_type="text/plain")

    async def handle_setup_app_token(self, request: web.Request) -> web.Response:
        _ = request
        try:
            await self.host.setup_app_token()
        except (OAuthError, AsyncCommError) as err:
            logger.error("App token setup failed: %s", err)
            return web.Response(status=502, text=str(err))
        return web.Response(text="App access token saved")

    async def handle_setup_bots(self, request: web.Request) -> web.Response:
        _ = request
        results: dict[str, str] = await self.host.setup_webhooks()
        return web.json_response(results)

    async def start(self) -> None:
        """Start listening on ``bind_host:port``."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.bind_host, self.port)
        await site.start()
        logger.info("Server listening on %s:%d (public URL %s)", self.bind_host, self.port, self.base_url)

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
            logger.info("Server stopped")
