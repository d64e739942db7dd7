import asyncio
import logging

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from handlers.async_comm import ApiRequest, ApiResponse, AsyncCommError, AsyncCommTimeoutError, AsyncHttp


def _make_app() -> web.Application:
    async def echo(request: web.Request) -> web.Response:
        body: dict = {
            "method": request.method,
            "query": dict(request.query),
            "auth": request.headers.get("Authorization", ""),
        }
        if request.content_type == "application/json":
            body["json"] = await request.json()
        elif request.content_type == "application/x-www-form-urlencoded":
            body["form"] = dict(await request.post())
        return web.json_response(body)

    async def unauthorized(request: web.Request) -> web.Response:
        _ = request
        return web.json_response({"status": 401, "message": "Invalid OAuth token"}, status=401)

    async def slow(request: web.Request) -> web.Response:
        _ = request
        await asyncio.sleep(1)
        return web.Response(text="late")

    app = web.Application()
    app.router.add_route("*", "/echo", echo)
    app.router.add_get("/unauthorized", unauthorized)
    app.router.add_get("/slow", slow)
    return app


@pytest.mark.asyncio
async def test_init_does_not_open_session(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG)

    # the session is opened lazily
    AsyncHttp()

    assert any("AsyncHttp initializing" in rec.message for rec in caplog.records)
    assert not any("AsyncHttp session initialized" in rec.message for rec in caplog.records)


@pytest.mark.asyncio
async def test_context_enter_logs_session_initialized(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG)

    http = AsyncHttp()
    caplog.clear()

    async with http:
        assert not http.session.closed

    assert any("AsyncHttp session initialized" in rec.message for rec in caplog.records)
    assert any("AsyncHttp session closed" in rec.message for rec in caplog.records)


@pytest.mark.asyncio
async def test_reenter_after_close_logs_session_initialized(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG)

    http = AsyncHttp()

    # first context closes the session
    async with http:
        pass

    caplog.clear()

    async with http:
        pass

    assert any("AsyncHttp session initialized" in rec.message for rec in caplog.records)


@pytest.mark.asyncio
async def test_send_returns_full_response() -> None:
    async with TestServer(_make_app()) as server, AsyncHttp() as http:
        response: ApiResponse = await http.send(
            ApiRequest(
                method="POST",
                url=str(server.make_url("/echo")),
                headers={"Authorization": "Bearer abc"},
                params={"user_id": "42"},
                json={"message": "hi"},
            )
        )

    assert response.status == 200
    assert response.ok
    assert response.json() == {
        "method": "POST",
        "query": {"user_id": "42"},
        "auth": "Bearer abc",
        "json": {"message": "hi"},
    }


@pytest.mark.asyncio
async def test_send_posts_form_data() -> None:
    async with TestServer(_make_app()) as server, AsyncHttp() as http:
        response = await http.send(
            ApiRequest(method="POST", url=str(server.make_url("/echo")), data={"grant_type": "client_credentials"})
        )

    assert response.json()["form"] == {"grant_type": "client_credentials"}


@pytest.mark.asyncio
async def test_send_returns_error_statuses() -> None:
    async with TestServer(_make_app()) as server, AsyncHttp() as http:
        response = await http.send(ApiRequest(method="GET", url=str(server.make_url("/unauthorized"))))

    assert response.status == 401
    assert not response.ok
    assert "Invalid OAuth token" in response.text


@pytest.mark.asyncio
async def test_send_timeout_raises() -> None:
    async with TestServer(_make_app()) as server, AsyncHttp() as http:
        with pytest.raises(AsyncCommTimeoutError):
            await http.send(ApiRequest(method="GET", url=str(server.make_url("/slow"))), total_timeout=0.2)


@pytest.mark.asyncio
async def test_send_connection_failure_raises() -> None:
    server = TestServer(_make_app())
    await server.start_server()
    url = str(server.make_url("/echo"))
    await server.close()

    async with AsyncHttp() as http:
        with pytest.raises(AsyncCommError):
            await http.send(ApiRequest(method="GET", url=url), total_timeout=2)


def test_empty_body_decodes_to_none() -> None:
    assert ApiResponse(status=204).json() is None
    assert ApiResponse(status=200, body=b"caf\xc3\xa9").text == "café"
