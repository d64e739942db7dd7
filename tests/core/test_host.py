from __future__ import annotations

import json
from types import SimpleNamespace
from typing import TYPE_CHECKING, Any

import aiohttp
import pytest

from core.eventsub.webhook import compute_signature
from core.host import BotHooks, IdentityHost
from core.token_manager import AppCredentials
from handlers.async_comm import ApiRequest, ApiResponse
from models.command_models import DynamicCommand, Reply
from models.config_models import Config, IdentityConfig, Server, Storage
from models.credential_models import APP_TOKEN_IDENTITY, Credential

if TYPE_CHECKING:
    from pathlib import Path

    from models.command_models import CommandContext, ParsedCommand

SECRET = "webhook-secret"


class FakeHttp:
    """Answers Twitch API calls by URL and records every request."""

    def __init__(self) -> None:
        self.requests: list[ApiRequest] = []
        self.validate_user_ids: dict[str, str] = {}
        self.closed: bool = False
        self.session = SimpleNamespace(ws_connect=self._ws_connect)

    def initialize_session(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    async def _ws_connect(self, url: str) -> Any:
        msg = f"cannot connect to {url}"
        raise aiohttp.ClientError(msg)

    async def send(self, request: ApiRequest, *, total_timeout: float | None = None) -> ApiResponse:
        _ = total_timeout
        self.requests.append(request)
        if request.url.endswith("/oauth2/validate"):
            token = request.headers["Authorization"].removeprefix("OAuth ")
            user_id = self.validate_user_ids.get(token)
            if user_id is None:
                return ApiResponse(status=401, body=b'{"status": 401}')
            return ApiResponse(status=200, body=json.dumps({"user_id": user_id, "login": "bot"}).encode())
        if request.url.endswith("/helix/chat/messages"):
            return ApiResponse(status=200, body=b'{"data": [{"is_sent": true}]}')
        if request.url.endswith("/eventsub/subscriptions") and request.method == "GET":
            return ApiResponse(status=200, body=b'{"data": [], "pagination": {}}')
        if request.url.endswith("/eventsub/subscriptions") and request.method == "POST":
            body = request.json or {}
            subscription = dict(body, id="sub-new", status="webhook_callback_verification_pending")
            return ApiResponse(status=202, body=json.dumps({"data": [subscription]}).encode())
        return ApiResponse(status=404)


def make_config(tmp_path: Path, *, public_url: str = "https://bots.example.com") -> Config:
    return Config(
        SERVER=Server(PUBLIC_URL=public_url),
        STORAGE=Storage(DB_PATH=str(tmp_path / "bots.db")),
        BOTS=[
            IdentityConfig(
                NAME="SnaleBot",
                BOT_USER_ID="111",
                BOT_USERNAME="snale_bot",
                CHANNEL_USER_ID="900",
                TRANSPORT="webhook",
                COMMANDS={"test": "Snale bot is working"},
                CUSTOM_COMMANDS=True,
            ),
            IdentityConfig(
                NAME="ToxicMan",
                BOT_USER_ID="222",
                BOT_USERNAME="toxic_man_bot",
                CHANNEL_USER_ID="900",
                TRANSPORT="websocket",
                COMMANDS={"test": "Do NOT talk to me"},
            ),
            IdentityConfig(
                NAME="Unauthorized",
                BOT_USER_ID="333",
                BOT_USERNAME="nobody_bot",
                CHANNEL_USER_ID="900",
            ),
        ],
    )


def make_host(tmp_path: Path, http: FakeHttp, **kwargs: Any) -> IdentityHost:
    app = AppCredentials(client_id="client-id", client_secret="client-secret", eventsub_secret=SECRET)
    return IdentityHost(make_config(tmp_path, **kwargs), app, http=http)  # type: ignore[arg-type]


async def store_credentials(host: IdentityHost, *, app_token: bool = True) -> None:
    await host.credentials.set("111", Credential("111", "snale-token", "snale-refresh"))
    await host.credentials.set("222", Credential("222", "toxic-token", "toxic-refresh"))
    if app_token:
        await host.credentials.set(APP_TOKEN_IDENTITY, Credential(APP_TOKEN_IDENTITY, "app-token"))


def chat_delivery(text: str) -> tuple[dict[str, str], bytes]:
    body = json.dumps(
        {
            "subscription": {
                "id": "sub-1",
                "type": "channel.chat.message",
                "version": "1",
                "status": "enabled",
                "condition": {"broadcaster_user_id": "900", "user_id": "111"},
                "transport": {"method": "webhook", "callback": "https://bots.example.com/bots/snalebot"},
            },
            "event": {
                "broadcaster_user_id": "900",
                "broadcaster_user_login": "streamer",
                "broadcaster_user_name": "Streamer",
                "chatter_user_id": "42",
                "chatter_user_login": "viewer",
                "chatter_user_name": "Viewer",
                "message_id": "chat-1",
                "message": {"text": text, "fragments": []},
                "badges": [],
            },
        }
    ).encode()
    headers = {
        "Twitch-Eventsub-Message-Id": "evt-1",
        "Twitch-Eventsub-Message-Timestamp": "2024-01-01T00:00:00Z",
        "Twitch-Eventsub-Message-Type": "notification",
        "Twitch-Eventsub-Message-Signature": compute_signature(SECRET, "evt-1", "2024-01-01T00:00:00Z", body),
    }
    return headers, body


@pytest.mark.asyncio
async def test_setup_builds_bots_with_credentials_and_skips_others(tmp_path: Path) -> None:
    host = make_host(tmp_path, FakeHttp())
    await store_credentials(host)

    bots = await host.setup()

    assert sorted(bot.name for bot in bots) == ["SnaleBot", "ToxicMan"]
    assert host.get_bot("SNALEBOT") is host.bots["snalebot"]
    assert host.get_bot("unauthorized") is None
    assert host.get_ingress("snalebot") is not None
    assert host.get_ingress("toxicman") is None
    assert host.app_refresher is not None
    await host.stop()


@pytest.mark.asyncio
async def test_identities_have_separate_credentials_and_routers(tmp_path: Path) -> None:
    host = make_host(tmp_path, FakeHttp())
    await store_credentials(host)
    await host.setup()

    snale = host.bots["snalebot"]
    toxic = host.bots["toxicman"]

    assert snale.credential_cache.access_token == "snale-token"
    assert toxic.credential_cache.access_token == "toxic-token"
    assert snale.credential_cache is not toxic.credential_cache
    assert "addcommand" in snale.router.commands
    assert "addcommand" not in toxic.router.commands
    # webhook subscriptions use the app token, WebSocket ones the bot's own token
    assert snale.subscriptions is not None
    assert snale.subscriptions.refresher is host.app_refresher
    assert toxic.subscriptions is not None
    assert toxic.subscriptions.refresher is toxic.refresher
    await host.stop()


@pytest.mark.asyncio
async def test_webhook_delivery_is_answered_by_the_right_bot(tmp_path: Path) -> None:
    http = FakeHttp()
    host = make_host(tmp_path, http)
    await store_credentials(host)
    await host.setup()

    ingress = host.get_ingress("snalebot")
    assert ingress is not None
    headers, body = chat_delivery("!test")
    result = await ingress.handle(headers, body)

    assert result.status == 200
    sent = [r for r in http.requests if r.url.endswith("/helix/chat/messages")]
    assert len(sent) == 1
    assert sent[0].json == {"message": "Snale bot is working", "sender_id": "111", "broadcaster_id": "900"}
    assert sent[0].headers["Authorization"] == "Bearer snale-token"
    await host.stop()


@pytest.mark.asyncio
async def test_hooks_extend_the_router(tmp_path: Path) -> None:
    def hello(context: CommandContext) -> Reply:
        return Reply(f"hello {context.chatter.login}")

    def missing(parsed: ParsedCommand, context: CommandContext) -> Reply:
        _ = context
        return Reply(f"no such command: {parsed.name}")

    http = FakeHttp()
    app = AppCredentials(client_id="client-id", client_secret="client-secret", eventsub_secret=SECRET)
    hooks = {"ToxicMan": BotHooks(commands={"hello": DynamicCommand(hello)}, on_command_missing=missing)}
    host = IdentityHost(make_config(tmp_path), app, hooks=hooks, http=http)  # type: ignore[arg-type]
    await store_credentials(host)
    await host.setup()

    toxic = host.bots["toxicman"]
    assert "hello" in toxic.router.commands
    assert toxic.router.on_command_missing is missing
    assert "hello" not in host.bots["snalebot"].router.commands
    await host.stop()


@pytest.mark.asyncio
async def test_setup_webhooks_reports_per_bot(tmp_path: Path) -> None:
    http = FakeHttp()
    host = make_host(tmp_path, http)
    await store_credentials(host)
    await host.setup()

    results = await host.setup_webhooks()

    assert results == {"SnaleBot": "created"}
    create = next(r for r in http.requests if r.method == "POST" and r.url.endswith("/eventsub/subscriptions"))
    assert create.headers["Authorization"] == "Bearer app-token"
    assert create.json is not None
    assert create.json["transport"] == {
        "method": "webhook",
        "callback": "https://bots.example.com/bots/snalebot",
        "secret": SECRET,
    }
    await host.stop()


@pytest.mark.asyncio
async def test_setup_webhooks_errors(tmp_path: Path) -> None:
    host = make_host(tmp_path, FakeHttp(), public_url="")
    await store_credentials(host)
    await host.setup()
    assert await host.setup_webhooks() == {"SnaleBot": "error: SERVER.PUBLIC_URL is not set"}
    await host.stop()

    other = tmp_path / "other"
    host = make_host(other, FakeHttp())
    await store_credentials(host, app_token=False)
    await host.setup()
    assert host.app_refresher is None
    assert await host.setup_webhooks() == {"SnaleBot": "error: no app access token"}
    await host.stop()


@pytest.mark.asyncio
async def test_start_authenticates_and_stop_releases_everything(tmp_path: Path) -> None:
    http = FakeHttp()
    # ToxicMan's token is rejected and cannot be refreshed against the fake endpoint
    http.validate_user_ids = {"snale-token": "111"}
    host = make_host(tmp_path, http)
    await store_credentials(host)

    await host.start()
    try:
        assert list(host.bots) == ["snalebot"]
        assert host.get_ingress("snalebot") is not None
    finally:
        await host.stop()

    assert http.closed
    await host.stop()


@pytest.mark.asyncio
async def test_websocket_bot_session_ends_when_connection_fails(tmp_path: Path) -> None:
    http = FakeHttp()
    http.validate_user_ids = {"snale-token": "111", "toxic-token": "222"}
    host = make_host(tmp_path, http)
    await store_credentials(host)

    await host.start()
    try:
        toxic = host.bots["toxicman"]
        task = host._session_tasks["ToxicMan"]  # noqa: SLF001
        await task
        assert toxic.session is not None
        assert not toxic.session.is_active
    finally:
        await host.stop()


@pytest.mark.asyncio
async def test_run_maintenance(tmp_path: Path) -> None:
    host = make_host(tmp_path, FakeHttp())
    await host.replay_guard.check_and_mark("evt-1", "ts")

    purged = await host.run_maintenance()

    assert purged == {"replay": 0, "auth_states": 0}
    await host.stop()


def test_webhook_callback(tmp_path: Path) -> None:
    host = make_host(tmp_path, FakeHttp(), public_url="https://bots.example.com/")
    assert host.webhook_callback(host.config.BOTS[0]) == "https://bots.example.com/bots/snalebot"
