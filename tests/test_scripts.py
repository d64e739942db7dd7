from __future__ import annotations

import argparse
from pathlib import Path

import pytest

from core.commands.router import CommandRouter
from models.command_models import ChatUser, CommandContext, DynamicCommand, Reply, StaticCommand
from models.config_models import Config, IdentityConfig, Server
from run_bots import default_hooks, list_commands, resolve_log_file
from run_bots import parse_arguments as parse_run_arguments
from setup_tokens import DEFAULT_REDIRECT_URI, read_redirect, resolve_redirect_uri


def test_read_redirect_extracts_code_and_state() -> None:
    code, state = read_redirect("http://localhost:3000/callback?code=abc123&scope=openid&state=f00d\n")
    assert code == "abc123"
    assert state == "f00d"


@pytest.mark.parametrize(
    "url",
    [
        "http://localhost:3000/callback?error=access_denied&error_description=The+user+denied+you+access",
        "http://localhost:3000/callback?state=f00d",
        "",
    ],
)
def test_read_redirect_rejects_unusable_urls(url: str) -> None:
    with pytest.raises(RuntimeError):
        read_redirect(url)


def test_resolve_redirect_uri() -> None:
    config = Config(SERVER=Server(PUBLIC_URL="https://bots.example.com/"))

    explicit = argparse.Namespace(redirect_uri="http://127.0.0.1:9000/callback")
    implicit = argparse.Namespace(redirect_uri=None)

    assert resolve_redirect_uri(explicit, config) == "http://127.0.0.1:9000/callback"
    assert resolve_redirect_uri(implicit, config) == "https://bots.example.com/callback"
    assert resolve_redirect_uri(implicit, Config()) == DEFAULT_REDIRECT_URI


def test_list_commands_reply() -> None:
    router = CommandRouter({"test": StaticCommand("ok"), "hi": StaticCommand("hello")}, prefix="?")
    router.add("commands", DynamicCommand(lambda context: list_commands(router, context)))
    context = CommandContext(
        argument="",
        chatter=ChatUser("42", "viewer"),
        broadcaster=ChatUser("900", "streamer"),
        badges=(),
        message_id="msg-1",
    )

    assert list_commands(router, context) == Reply("?commands ?hi ?test")


def test_default_hooks_cover_every_bot() -> None:
    config = Config(BOTS=[IdentityConfig(NAME="SnaleBot"), IdentityConfig(NAME="ToxicMan")])
    hooks = default_hooks(config)
    assert set(hooks) == {"SnaleBot", "ToxicMan"}
    assert all(hook.on_token_refresh is not None for hook in hooks.values())


def test_run_arguments() -> None:
    args = parse_run_arguments(["--config", "other.ini", "--port", "8080", "--debug"])
    assert args.config == "other.ini"
    assert args.port == 8080
    assert args.debug is True


def test_resolve_log_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    resolved = resolve_log_file("twitchbots.log")

    assert Path(resolved).is_absolute()
    assert Path(resolved) == (tmp_path / "twitchbots.log").resolve()
    assert resolve_log_file(str(tmp_path / "other.log")) == str((tmp_path / "other.log").resolve())
    assert resolve_log_file("  ") == ""
