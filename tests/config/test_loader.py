from __future__ import annotations

from textwrap import dedent
from typing import TYPE_CHECKING

import pytest

from config.loader import (
    ConfigFileNotFoundError,
    ConfigFormatError,
    ConfigLoader,
    ConfigTypeError,
    ConfigValueError,
)

if TYPE_CHECKING:
    from pathlib import Path


def _write_ini(tmp_path: Path, content: str) -> Path:
    ini_path: Path = tmp_path / "twitchbots.ini"
    ini_path.write_text(dedent(content), encoding="utf-8")
    return ini_path


def _bot_section(name: str = "SnaleBot", **values: str) -> str:
    settings: dict[str, str] = {
        "BOT_USER_ID": '"123456789"',
        "BOT_USERNAME": '"snale_bot"',
        "CHANNEL_USER_ID": '"987654321"',
    }
    settings.update(values)
    lines: list[str] = [f"[BOT.{name}]", *(f"{key} = {value}" for key, value in settings.items())]
    return "\n".join(lines) + "\n"


def test_config_loader_raises_for_missing_file(tmp_path: Path) -> None:
    ini_path: Path = tmp_path / "missing.ini"
    with pytest.raises(ConfigFileNotFoundError):
        ConfigLoader(config_filename=str(ini_path), script_name="test")


def test_config_loader_reads_sections_and_bots(tmp_path: Path) -> None:
    ini_path: Path = _write_ini(
        tmp_path,
        """
        [GENERAL]
        DEBUG = False
        LOG_FILE = "bots.log"

        [SERVER]
        HOST = "127.0.0.1"
        PORT = 8080
        PUBLIC_URL = "https://bots.example.com"

        [STORAGE]
        DB_PATH = "data/bots.db"

        [EVENTSUB]
        REPLAY_RETENTION_SEC = 900
        WELCOME_TIMEOUT_SEC = 7.5

        [BOT.SnaleBot]
        BOT_USER_ID = "123456789"
        BOT_USERNAME = "snale_bot"
        CHANNEL_USER_ID = "987654321"
        TRANSPORT = "webhook"
        COMMANDS = {"!Test": "Snale bot is working", "hi": "hello"}
        CUSTOM_COMMANDS = True

        [BOT.ToxicMan]
        BOT_USER_ID = "555555555"
        BOT_USERNAME = "toxic_man_bot"
        CHANNEL_USER_ID = "987654321"
        TRANSPORT = "websocket"
        COMMAND_PREFIX = "?"
        """,
    )

    config = ConfigLoader(config_filename=str(ini_path), script_name="run_bots").config

    assert config.GENERAL.SCRIPT_NAME == "run_bots"
    assert config.GENERAL.LOG_FILE == "bots.log"
    assert config.SERVER.HOST == "127.0.0.1"
    assert config.SERVER.PORT == 8080
    assert config.SERVER.PUBLIC_URL == "https://bots.example.com"
    assert config.STORAGE.DB_PATH == "data/bots.db"
    assert config.EVENTSUB.REPLAY_RETENTION_SEC == 900.0
    assert config.EVENTSUB.WELCOME_TIMEOUT_SEC == 7.5
    assert config.EVENTSUB.KEEPALIVE_GRACE_SEC == 5.0

    assert [bot.NAME for bot in config.BOTS] == ["SnaleBot", "ToxicMan"]
    snale, toxic = config.BOTS
    assert snale.route_name == "snalebot"
    assert snale.TRANSPORT == "webhook"
    assert snale.COMMANDS == {"test": "Snale bot is working", "hi": "hello"}
    assert snale.CUSTOM_COMMANDS is True
    assert toxic.TRANSPORT == "websocket"
    assert toxic.COMMAND_PREFIX == "?"
    assert toxic.COMMANDS == {}
    assert toxic.CUSTOM_COMMANDS is False


def test_config_loader_overrides(tmp_path: Path) -> None:
    ini_path: Path = _write_ini(tmp_path, "[GENERAL]\nDEBUG = False\n\n" + _bot_section())

    config = ConfigLoader(config_filename=str(ini_path), script_name="test", debug=True, port=4567).config

    assert config.GENERAL.DEBUG is True
    assert config.SERVER.PORT == 4567


def test_config_loader_without_bots(tmp_path: Path) -> None:
    ini_path: Path = _write_ini(tmp_path, "[GENERAL]\nDEBUG = True\n")
    config = ConfigLoader(config_filename=str(ini_path), script_name="test").config
    assert config.BOTS == []


def test_config_loader_rejects_duplicate_names(tmp_path: Path) -> None:
    ini_path: Path = _write_ini(tmp_path, _bot_section("SnaleBot") + "\n" + _bot_section("snalebot"))
    with pytest.raises(ConfigValueError, match="Duplicate"):
        ConfigLoader(config_filename=str(ini_path), script_name="test")


@pytest.mark.parametrize(
    ("values", "error"),
    [
        ({"BOT_USERNAME": '"bad name!"'}, ConfigFormatError),
        ({"BOT_USERNAME": '"abc"'}, ConfigFormatError),
        ({"BOT_USER_ID": "123456789"}, ConfigTypeError),
        ({"BOT_USER_ID": '"snale"'}, ConfigValueError),
        ({"CHANNEL_USER_ID": '""'}, ConfigValueError),
        ({"TRANSPORT": '"carrier-pigeon"'}, ConfigValueError),
        ({"COMMAND_PREFIX": '" "'}, ConfigValueError),
        ({"COMMANDS": '["test"]'}, ConfigTypeError),
        ({"COMMANDS": '{"two words": "x"}'}, ConfigValueError),
        ({"COMMANDS": '{"test": 1}'}, ConfigTypeError),
        ({"CUSTOM_COMMANDS": "maybe"}, ConfigValueError),
        ({"COMMANDS": "{not a literal"}, ConfigFormatError),
    ],
)
def test_config_loader_rejects_invalid_bot_settings(
    tmp_path: Path, values: dict[str, str], error: type[Exception]
) -> None:
    ini_path: Path = _write_ini(tmp_path, _bot_section(**values))
    with pytest.raises(error):
        ConfigLoader(config_filename=str(ini_path), script_name="test")


def test_config_loader_rejects_unquoted_string(tmp_path: Path) -> None:
    ini_path: Path = _write_ini(tmp_path, "[SERVER]\nPUBLIC_URL = 42\n")
    with pytest.raises(ConfigTypeError):
        ConfigLoader(config_filename=str(ini_path), script_name="test")


def test_config_loader_rejects_bad_number(tmp_path: Path) -> None:
    ini_path: Path = _write_ini(tmp_path, "[SERVER]\nPORT = eighty\n")
    with pytest.raises(ConfigValueError):
        ConfigLoader(config_filename=str(ini_path), script_name="test")


def test_config_loader_rejects_unparsable_file(tmp_path: Path) -> None:
    ini_path: Path = _write_ini(tmp_path, "no section header\n")
    with pytest.raises(ConfigFormatError):
        ConfigLoader(config_filename=str(ini_path), script_name="test")


def test_config_loader_rejects_nameless_bot_section(tmp_path: Path) -> None:
    ini_path: Path = _write_ini(tmp_path, "[BOT.]\nBOT_USERNAME = \"snale_bot\"\n")
    with pytest.raises(ConfigFormatError, match="no bot name"):
        ConfigLoader(config_filename=str(ini_path), script_name="test")
