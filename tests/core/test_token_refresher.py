from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import pytest

from core.token_manager import OAuthError
from core.token_refresher import CredentialCache, TokenRefresher
from core.token_storage import CredentialStore
from handlers.async_comm import ApiRequest, ApiResponse
from models.credential_models import Credential, TokenGrant

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


class FakeHttp:
    """Answers 200 for the current token and 401 for any other one."""

    def __init__(self, valid_token: str, on_send: Callable[[ApiRequest], None] | None = None) -> None:
        self.valid_token: str = valid_token
        self.on_send = on_send
        self.requests: list[ApiRequest] = []

    async def send(self, request: ApiRequest, *, total_timeout: float | None = None) -> ApiResponse:
        _ = total_timeout
        self.requests.append(request)
        if self.on_send is not None:
            self.on_send(request)
        token: str = request.headers["Authorization"].removeprefix("Bearer ")
        if token == self.valid_token:
            return ApiResponse(status=200, body=b'{"ok": true}')
        return ApiResponse(status=401, body=b'{"status": 401}')


def build(token: str) -> ApiRequest:
    return ApiRequest(
        method="GET",
        url="https://api.twitch.tv/helix/users",
        headers={"Authorization": f"Bearer {token}"},
    )


def make_refresher(
    tmp_path: Path,
    http: Any,
    renew: Any,
    *,
    on_token_refresh: Any = None,
) -> TokenRefresher:
    return TokenRefresher(
        cache=CredentialCache(Credential("1234", "old-access", "old-refresh")),
        store=CredentialStore(tmp_path / "tokens.db"),
        http=http,
        renew=renew,
        on_token_refresh=on_token_refresh,
    )


@pytest.mark.asyncio
async def test_execute_passes_through_non_401(tmp_path: Path) -> None:
    http = FakeHttp(valid_token="old-access")
    renew_calls: list[Credential] = []

    async def renew(current: Credential) -> Credential:
        renew_calls.append(current)
        return current

    refresher = make_refresher(tmp_path, http, renew)
    response = await refresher.execute(build)

    assert response.status == 200
    assert len(http.requests) == 1
    assert renew_calls == []


@pytest.mark.asyncio
async def test_execute_refreshes_persists_then_retries_once(tmp_path: Path) -> None:
    store_snapshots: list[Any] = []
    refresher: TokenRefresher

    def on_send(request: ApiRequest) -> None:
        # capture what the store holds at the moment the retry goes out
        if "new-access" in request.headers["Authorization"]:
            row = refresher.store.connection.execute("SELECT access_token FROM credentials").fetchone()
            store_snapshots.append(row)

    http = FakeHttp(valid_token="new-access", on_send=on_send)
    hook_calls: list[Credential] = []

    async def renew(current: Credential) -> Credential:
        assert current.refresh_token == "old-refresh"
        return Credential(current.identity, "new-access", "new-refresh")

    async def on_token_refresh(credential: Credential) -> None:
        hook_calls.append(credential)

    refresher = make_refresher(tmp_path, http, renew, on_token_refresh=on_token_refresh)
    response = await refresher.execute(build)

    assert response.status == 200
    assert [r.headers["Authorization"] for r in http.requests] == ["Bearer old-access", "Bearer new-access"]
    assert store_snapshots[0]["access_token"] == "new-access"
    assert refresher.cache.access_token == "new-access"
    assert await refresher.store.get("1234") == Credential("1234", "new-access", "new-refresh")
    assert hook_calls == [Credential("1234", "new-access", "new-refresh")]


@pytest.mark.asyncio
async def test_execute_returns_original_401_when_refresh_fails(tmp_path: Path) -> None:
    http = FakeHttp(valid_token="never")

    async def renew(current: Credential) -> Credential:
        _ = current
        msg = "invalid refresh token"
        raise OAuthError(msg)

    refresher = make_refresher(tmp_path, http, renew)
    response = await refresher.execute(build)

    assert response.status == 401
    assert len(http.requests) == 1
    assert refresher.cache.access_token == "old-access"
    assert await refresher.store.get("1234") is None


@pytest.mark.asyncio
async def test_execute_never_loops_when_retry_is_also_401(tmp_path: Path) -> None:
    http = FakeHttp(valid_token="never")

    async def renew(current: Credential) -> Credential:
        return Credential(current.identity, "new-access", "new-refresh")

    refresher = make_refresher(tmp_path, http, renew)
    response = await refresher.execute(build)

    assert response.status == 401
    assert len(http.requests) == 2


@pytest.mark.asyncio
async def test_concurrent_401s_share_one_refresh(tmp_path: Path) -> None:
    http = FakeHttp(valid_token="new-access")
    renew_count = 0

    async def renew(current: Credential) -> Credential:
        nonlocal renew_count
        renew_count += 1
        for _ in range(5):
            await asyncio.sleep(0)
        return Credential(current.identity, "new-access", "new-refresh")

    refresher = make_refresher(tmp_path, http, renew)
    responses = await asyncio.gather(*(refresher.execute(build) for _ in range(8)))

    assert renew_count == 1
    assert all(response.status == 200 for response in responses)
    retries = [r for r in http.requests if r.headers["Authorization"] == "Bearer new-access"]
    assert len(retries) == 8


@pytest.mark.asyncio
async def test_stale_401_retries_with_current_token_without_refresh(tmp_path: Path) -> None:
    refresher: TokenRefresher
    renew_count = 0

    def on_send(request: ApiRequest) -> None:
        # another caller finished a refresh while this request was in flight
        if "old-access" in request.headers["Authorization"]:
            refresher.cache.update(Credential("1234", "new-access", "new-refresh"))

    http = FakeHttp(valid_token="new-access", on_send=on_send)

    async def renew(current: Credential) -> Credential:
        nonlocal renew_count
        renew_count += 1
        return current

    refresher = make_refresher(tmp_path, http, renew)
    response = await refresher.execute(build)

    assert response.status == 200
    assert renew_count == 0
    assert len(http.requests) == 2


@pytest.mark.asyncio
async def test_failing_hook_does_not_fail_the_call(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.ERROR)
    http = FakeHttp(valid_token="new-access")

    async def renew(current: Credential) -> Credential:
        return Credential(current.identity, "new-access", "new-refresh")

    def on_token_refresh(credential: Credential) -> None:
        _ = credential
        msg = "hook failure"
        raise RuntimeError(msg)

    refresher = make_refresher(tmp_path, http, renew, on_token_refresh=on_token_refresh)
    response = await refresher.execute(build)

    assert response.status == 200
    assert any("on_token_refresh hook raised" in rec.message for rec in caplog.records)


@pytest.mark.asyncio
async def test_for_user_keeps_refresh_token_when_none_is_issued(tmp_path: Path) -> None:
    http = FakeHttp(valid_token="new-access")

    class FakeOAuth:
        def __init__(self) -> None:
            self.refreshed_with: list[str] = []

        async def refresh(self, refresh_token: str) -> TokenGrant:
            self.refreshed_with.append(refresh_token)
            return TokenGrant(access_token="new-access")

    oauth = FakeOAuth()
    refresher = TokenRefresher.for_user(
        cache=CredentialCache(Credential("1234", "old-access", "old-refresh")),
        store=CredentialStore(tmp_path / "tokens.db"),
        http=http,
        oauth=oauth,  # type: ignore[arg-type]
    )
    await refresher.execute(build)

    assert oauth.refreshed_with == ["old-refresh"]
    assert refresher.cache.credential == Credential("1234", "new-access", "old-refresh")


@pytest.mark.asyncio
async def test_for_app_uses_client_credentials(tmp_path: Path) -> None:
    http = FakeHttp(valid_token="new-app")

    class FakeOAuth:
        async def client_credentials(self) -> TokenGrant:
            return TokenGrant(access_token="new-app")

    refresher = TokenRefresher.for_app(
        cache=CredentialCache(Credential("app-access-token", "old-app")),
        store=CredentialStore(tmp_path / "tokens.db"),
        http=http,
        oauth=FakeOAuth(),  # type: ignore[arg-type]
    )
    response = await refresher.execute(build)

    assert response.status == 200
    stored = await refresher.store.get("app-access-token")
    assert stored is not None
    assert stored.access_token == "new-app"


def test_credential_cache_rejects_other_identity() -> None:
    cache = CredentialCache(Credential("1234", "a", "r"))
    with pytest.raises(ValueError, match="cannot replace"):
        cache.update(Credential("9999", "b", "r"))
