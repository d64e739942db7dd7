"""Run every bot configured in twitchbots.ini.

Starts the HTTP server (webhook, OAuth and setup routes) and connects the WebSocket
bots. Credentials must have been stored beforehand with setup_tokens.py or through the
server's /auth route.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from contextlib import suppress
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Final, NoReturn

from config.loader import Config, ConfigLoader, ConfigLoaderError
from core.eventsub.server import EventSubServer
from core.host import BotHooks, IdentityHost
from core.token_manager import AppCredentials
from core.version import VERSION
from models.command_models import DynamicCommand, Reply
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging

    from core.commands.router import CommandRouter
    from models.command_models import CommandContext, CommandResult
    from models.credential_models import Credential

CFG_FILE: Final[str] = "twitchbots.ini"

logger: logging.Logger = LoggerUtils.get_logger(__name__)


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        print(f"\n{message}\n", file=sys.stderr)
        self.print_help(sys.stderr)
        raise SystemExit(2)


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    parser = _ArgumentParser(description="Run the Twitch EventSub chat bots")
    parser.add_argument("--config", dest="config", default=CFG_FILE, metavar="FILE", help="INI configuration file")
    parser.add_argument("--port", dest="port", type=int, metavar="PORT", help="Override SERVER.PORT")
    parser.add_argument("--debug", dest="debug", action="store_true", help="Log at DEBUG level")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return parser.parse_args(argv)


def list_commands(router: CommandRouter, context: CommandContext) -> CommandResult:
    """Reply with every command name of the bot."""
    _ = context
    names: list[str] = sorted(name for name, _text in router.list_commands())
    return Reply(" ".join(f"{router.prefix}{name}" for name in names))


def resolve_log_file(log_file: str) -> str:
    """Absolute path of the log file; an empty name keeps file logging disabled."""
    if not log_file.strip():
        return ""
    return str(Path(log_file).expanduser().resolve())


def default_hooks(config: Config) -> dict[str, BotHooks]:
    hooks: dict[str, BotHooks] = {}
    for identity in config.BOTS:

        async def log_refresh(credential: Credential, name: str = identity.NAME) -> None:
            logger.info("<%s> Stored a renewed token for %s", name, credential.identity)

        hooks[identity.NAME] = BotHooks(on_token_refresh=log_refresh)
    return hooks


async def run(config: Config, app: AppCredentials) -> None:
    host = IdentityHost(config, app, hooks=default_hooks(config))
    server = EventSubServer(host)

    stop_event = asyncio.Event()
    loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    try:
        await host.start()
        for bot in host.bots.values():
            bot.router.add("commands", DynamicCommand(partial(list_commands, bot.router), "List the commands"))
        await server.start()
        print(f"Running {len(host.bots)} bot(s). Press Ctrl+C to stop.")
        await stop_event.wait()
    finally:
        await server.stop()
        await host.stop()


def main(argv: list[str] | None = None) -> int:
    args: argparse.Namespace = parse_arguments(argv)
    script_name: str = Path(sys.argv[0]).stem
    try:
        config: Config = ConfigLoader(
            config_filename=args.config, script_name=script_name, debug=args.debug, port=args.port
        ).config
    except ConfigLoaderError as err:
        print(f"\nError: {err}", file=sys.stderr)
        return 1

    config.GENERAL.VERSION = VERSION
    log_utils = LoggerUtils(resolve_log_file(config.GENERAL.LOG_FILE))
    log_utils.set_level("DEBUG" if config.GENERAL.DEBUG else "INFO")

    try:
        app: AppCredentials = AppCredentials.from_env()
    except RuntimeError as err:
        logger.critical("%s", err)
        print(f"\nError: {err}", file=sys.stderr)
        return 1

    if not config.BOTS:
        print("\nError: no [BOT.<name>] section is defined.", file=sys.stderr)
        return 1

    logger.info("%s %s starting", script_name, VERSION)
    with suppress(KeyboardInterrupt):
        asyncio.run(run(config, app))
    return 0


if __name__ == "__main__":
    sys.exit(main())
