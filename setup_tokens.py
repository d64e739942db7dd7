"""Setup tokens for the Twitch bots.

This script authorizes one bot account (or fetches the app access token) and stores the
credential in the database configured in twitchbots.ini. Run it once per bot account
before the first start of run_bots.py, or whenever a bot's tokens need to be reset.

The redirect URI must be registered for the Twitch application. After authorizing, the
browser is sent to that URI; paste the full address it ends up on back into the console.

This is a console-only application; no log file is created.
All output is sent to stdout/stderr for immediate user feedback.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import urllib.parse
import webbrowser
from contextlib import suppress
from pathlib import Path
from typing import Final, NoReturn

from config.loader import Config, ConfigLoader, ConfigLoaderError
from core.auth_state import AuthStateStore
from core.token_manager import AppCredentials, AuthorizationFlow, AuthorizedIdentity, OAuthClient, OAuthError
from core.token_storage import CredentialStore
from handlers.async_comm import AsyncHttp

CFG_FILE: Final[str] = "twitchbots.ini"
DEFAULT_REDIRECT_URI: Final[str] = "http://localhost:3000/callback"


def check_python_version() -> None:
    """Check if Python version is 3.13 or later.

    Raises:
        RuntimeError: If Python version is below 3.13.
    """
    if sys.version_info < (3, 13):
        msg = "Python 3.13 or later is required"
        raise RuntimeError(msg)


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        print(f"\n{message}\n", file=sys.stderr)
        self.print_help(sys.stderr)
        raise SystemExit(2)


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        argparse.Namespace: Parsed arguments.
    """
    parser = _ArgumentParser(
        description="Setup Twitch OAuth tokens for the bots",
        epilog="Example: python setup_tokens.py --redirect-uri http://localhost:3000/callback",
    )
    parser.add_argument(
        "--redirect-uri",
        dest="redirect_uri",
        metavar="URI",
        help=f"Redirect URI registered for the application (default: <PUBLIC_URL>/callback or {DEFAULT_REDIRECT_URI})",
    )
    parser.add_argument(
        "--app-token", dest="app_token", action="store_true", help="Fetch and store the app access token instead"
    )
    return parser.parse_args(argv)


def load_config() -> Config:
    """Load the configuration file.

    Raises:
        ConfigLoaderError: If configuration file cannot be loaded.
    """
    script_name: str = Path(sys.argv[0]).stem
    return ConfigLoader(config_filename=CFG_FILE, script_name=script_name).config


def resolve_redirect_uri(args: argparse.Namespace, config: Config) -> str:
    if args.redirect_uri:
        return args.redirect_uri
    if config.SERVER.PUBLIC_URL:
        return f"{config.SERVER.PUBLIC_URL.rstrip('/')}/callback"
    return DEFAULT_REDIRECT_URI


def read_redirect(redirected: str) -> tuple[str, str]:
    """Extract ``code`` and ``state`` from the pasted redirect URL.

    Raises:
        RuntimeError: If the URL carries an error or no authorization code.
    """
    query: dict[str, str] = dict(urllib.parse.parse_qsl(urllib.parse.urlparse(redirected.strip()).query))
    if "error" in query:
        msg: str = f"Authorization denied: {query['error']} {query.get('error_description', '')}".strip()
        raise RuntimeError(msg)
    code: str | None = query.get("code")
    if not code:
        msg = "Authorization code not found in redirect URL."
        raise RuntimeError(msg)
    return code, query.get("state", "")


def get_redirect_via_browser(url: str) -> str:
    """Open the authorize URL and ask for the address the browser was redirected to."""
    print("Opening browser to authorize the bot account...")
    print("Log in to Twitch as the BOT account, not as the broadcaster.")
    if not webbrowser.open(url):
        print(f"Please open the following URL in your browser:\n{url}")

    try:
        return input("Paste the full redirect URL here: ")
    except EOFError as err:
        msg: str = "forced termination or input unavailable; cannot obtain authorization code."
        raise RuntimeError(msg) from err


async def authorize_bot(flow: AuthorizationFlow, redirect_uri: str) -> AuthorizedIdentity:
    url: str = await flow.begin(redirect_uri)
    code, state = read_redirect(get_redirect_via_browser(url))
    return await flow.complete(code, state, redirect_uri)


async def main(argv: list[str] | None = None) -> None:
    """Main entry point for token setup.

    Performs the following steps:
    1. Check Python version
    2. Parse command-line arguments
    3. Load configuration
    4. Check environment variables
    5. Execute the OAuth authorization flow (or the app token request)
    6. Save the credential to the database
    """
    check_python_version()
    print("=" * 50)
    print("Twitch Token Setup Utility")
    print("=" * 50)

    args: argparse.Namespace = parse_arguments(argv)
    try:
        config: Config = load_config()
    except ConfigLoaderError as err:
        print("\nError: Failed to load configuration file.", file=sys.stderr)
        print(f"Details: {err}", file=sys.stderr)
        return

    try:
        app: AppCredentials = AppCredentials.from_env()
    except RuntimeError as err:
        print(f"\nError: {err}", file=sys.stderr)
        print("Please set it before running this script.", file=sys.stderr)
        return

    db_path: str = config.STORAGE.DB_PATH
    async with AsyncHttp() as http:
        with CredentialStore(db_path) as credentials, AuthStateStore(db_path) as states:
            flow = AuthorizationFlow(OAuthClient(app, http), states, credentials)
            try:
                if args.app_token:
                    await flow.setup_app_token()
                    print("\nApp access token saved.")
                    return

                redirect_uri: str = resolve_redirect_uri(args, config)
                print(f"\nRedirect URI: {redirect_uri}")
                print("-" * 50)
                identity: AuthorizedIdentity = await authorize_bot(flow, redirect_uri)
            except (OAuthError, RuntimeError) as err:
                print(f"\nError: {err}", file=sys.stderr)
                return

    print("\n" + "=" * 50)
    print("✓ Token setup completed successfully!")
    print("=" * 50)
    print(f"Tokens saved for {identity.user_id} ({identity.login})")
    print(f"Database: {db_path}")

    configured: list[str] = [bot.NAME for bot in config.BOTS if bot.BOT_USER_ID == identity.user_id]
    if configured:
        print(f"Used by: {', '.join(configured)}")
    else:
        print(f"\nNote: no [BOT.<name>] section has BOT_USER_ID = '{identity.user_id}' yet.")
    print("\nYou can now run run_bots.py")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, EOFError):
        print("\n\nSetup cancelled by user.", file=sys.stderr)
    except (OSError, RuntimeError, ValueError) as err:
        print(f"\nFatal error: {err}", file=sys.stderr)
    finally:
        # Pause before exit to allow user to read the output
        with suppress(KeyboardInterrupt, EOFError):
            input("\nPress Enter to exit...")
