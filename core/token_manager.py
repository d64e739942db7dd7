"""OAuth2 client for the Twitch identity provider.

``OAuthClient`` talks to the authorize, token and validate endpoints. ``AuthorizationFlow``
ties it to the one-time state store and the credential store: ``begin`` builds the
authorize URL, ``complete`` handles the redirect back and stores the new credential under
the Twitch user id found in the ID token.
"""

from __future__ import annotations

import os
import urllib.parse
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

import jwt
from twitchio import Scopes

from handlers.async_comm import ApiRequest, ApiResponse, AsyncCommError, AsyncHttp
from models.credential_models import APP_TOKEN_IDENTITY, TokenGrant
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging

    from core.auth_state import AuthStateStore
    from core.token_storage import CredentialStore
    from models.credential_models import Credential, PendingAuthState


__all__: list[str] = [
    "ACCESS_SCOPES",
    "AppCredentials",
    "AuthStateError",
    "AuthorizationFlow",
    "AuthorizedIdentity",
    "OAuthClient",
    "OAuthError",
]

logger: logging.Logger = LoggerUtils.get_logger(__name__)

AUTHORIZE_URL: Final[str] = "https://id.twitch.tv/oauth2/authorize"
TOKEN_URL: Final[str] = "https://id.twitch.tv/oauth2/token"
VALIDATE_URL: Final[str] = "https://id.twitch.tv/oauth2/validate"

# Scopes requested from every bot account. "openid" makes the token endpoint return an
# ID token, which tells us which Twitch user has just authorized.
ACCESS_SCOPES: Final[list[str]] = [
    *Scopes(
        user_read_chat=True,
        user_write_chat=True,
        user_bot=True,
    ).selected,
    "openid",
]


class OAuthError(Exception):
    """The identity provider refused or failed a token request."""


class AuthStateError(OAuthError):
    """The ``state`` of an authorization callback is unknown, expired or already used."""


@dataclass(frozen=True)
class AppCredentials:
    """Client id and secret of the Twitch application.

    Attributes:
        client_id (str): The Twitch API client ID.
        client_secret (str): The Twitch API client secret.
        eventsub_secret (str): HMAC secret of webhook subscriptions.
    """

    client_id: str
    client_secret: str
    eventsub_secret: str = ""

    def __repr__(self) -> str:
        return f"AppCredentials(client_id={self.client_id!r})"

    @property
    def webhook_secret(self) -> str:
        return self.eventsub_secret or self.client_secret

    @classmethod
    def from_env(cls) -> AppCredentials:
        """Load the application credentials from environment variables.

        Example:
            export TWITCH_API_CLIENT_ID="your_client_id"
            export TWITCH_API_CLIENT_SECRET="your_client_secret"
            export TWITCH_EVENTSUB_SECRET="10 to 100 ascii characters"  # optional

        Raises:
            RuntimeError: If a required environment variable is not set.
        """

        def _require_env_var(name: str) -> str:
            value: str | None = os.getenv(name)
            if not value:
                msg: str = f"The '{name}' environment variable has not been set."
                raise RuntimeError(msg)
            return value

        return cls(
            client_id=_require_env_var("TWITCH_API_CLIENT_ID"),
            client_secret=_require_env_var("TWITCH_API_CLIENT_SECRET"),
            eventsub_secret=os.getenv("TWITCH_EVENTSUB_SECRET", ""),
        )


@dataclass(frozen=True)
class AuthorizedIdentity:
    """Result of a completed authorization: who logged in."""

    user_id: str
    login: str = ""


class OAuthClient:
    """Client for the Twitch OAuth2 endpoints.

    Token endpoint calls post form data and return a ``TokenGrant``; a non-200 answer
    or an answer without ``access_token`` raises ``OAuthError``.
    """

    def __init__(self, app: AppCredentials, http: AsyncHttp) -> None:
        self.app: AppCredentials = app
        self.http: AsyncHttp = http

    def build_authorize_url(self, redirect_uri: str, state: str) -> str:
        """Build the URL the bot account owner is sent to.

        Args:
            redirect_uri (str): Callback URL registered for the application.
            state (str): One-time state value echoed back on the callback.
        """
        params: dict[str, str] = {
            "client_id": self.app.client_id,
            "redirect_uri": redirect_uri,
            "state": state,
            "response_type": "code",
            "scope": " ".join(ACCESS_SCOPES),
        }
        return f"{AUTHORIZE_URL}?{urllib.parse.urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        """Exchange the authorization code for access, refresh and ID tokens."""
        return await self._token_request(
            {
                "client_id": self.app.client_id,
                "client_secret": self.app.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
            },
            purpose="Token exchange",
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Renew a user access token."""
        return await self._token_request(
            {
                "client_id": self.app.client_id,
                "client_secret": self.app.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            purpose="Token refresh",
        )

    async def client_credentials(self) -> TokenGrant:
        """Obtain a new app access token."""
        return await self._token_request(
            {
                "client_id": self.app.client_id,
                "client_secret": self.app.client_secret,
                "grant_type": "client_credentials",
            },
            purpose="App token request",
        )

    @staticmethod
    def validate_request(access_token: str) -> ApiRequest:
        """Request against the validate endpoint, suitable for ``TokenRefresher.execute``."""
        return ApiRequest(method="GET", url=VALIDATE_URL, headers={"Authorization": f"OAuth {access_token}"})

    async def validate(self, access_token: str) -> dict[str, Any]:
        """Validate a token and return the provider's answer (login, user_id, scopes...).

        Raises:
            OAuthError: If the token is not valid.
        """
        response: ApiResponse = await self._send(self.validate_request(access_token), purpose="Token validation")
        if response.status != 200:
            msg: str = f"Token validation failed: {response.status} {response.text}"
            raise OAuthError(msg)
        return response.json() or {}

    async def _send(self, request: ApiRequest, *, purpose: str) -> ApiResponse:
        try:
            return await self.http.send(request)
        except AsyncCommError as err:
            msg: str = f"{purpose} failed: {err}"
            raise OAuthError(msg) from err

    async def _token_request(self, params: dict[str, str], *, purpose: str) -> TokenGrant:
        # OAuth token endpoints expect form data.
        request = ApiRequest(method="POST", url=TOKEN_URL, data=params)
        response: ApiResponse = await self._send(request, purpose=purpose)

        data: Any
        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status != 200 or not isinstance(data, dict) or not data.get("access_token"):
            logger.error("%s returned status %d: %s", purpose, response.status, response.text)
            msg: str = f"{purpose} failed with status {response.status}"
            raise OAuthError(msg)

        scope: Any = data.get("scope") or ()
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or "",
            id_token=data.get("id_token") or "",
            expires_in=int(data.get("expires_in") or 0),
            scope=tuple(scope) if isinstance(scope, list) else tuple(str(scope).split()),
        )


class AuthorizationFlow:
    """Authorization code flow that lands the resulting credential in the store."""

    def __init__(self, oauth: OAuthClient, states: AuthStateStore, credentials: CredentialStore) -> None:
        self.oauth: OAuthClient = oauth
        self.states: AuthStateStore = states
        self.credentials: CredentialStore = credentials

    async def begin(self, redirect_uri: str) -> str:
        """Create a one-time state and return the authorize URL carrying it."""
        pending: PendingAuthState = await self.states.generate()
        return self.oauth.build_authorize_url(redirect_uri, pending.state)

    async def complete(self, code: str, state: str, redirect_uri: str) -> AuthorizedIdentity:
        """Finish the flow started by ``begin``.

        Args:
            code (str): Authorization code from the callback query.
            state (str): State from the callback query.
            redirect_uri (str): The same redirect URI that was used in ``begin``.

        Returns:
            AuthorizedIdentity: The Twitch user whose credential was stored.

        Raises:
            AuthStateError: If the state is not valid.
            OAuthError: If the code exchange fails or the ID token is unusable.
        """
        if not await self.states.verify(state):
            msg: str = "Invalid or expired authorization state."
            raise AuthStateError(msg)
        if not code:
            msg = "Authorization code is missing."
            raise OAuthError(msg)

        grant: TokenGrant = await self.oauth.exchange_code(code, redirect_uri)
        identity: AuthorizedIdentity = self.read_id_token(grant.id_token)

        credential: Credential = grant.to_credential(identity.user_id)
        await self.credentials.set(identity.user_id, credential)
        logger.info("Stored credential for user %s (%s)", identity.user_id, identity.login)
        return identity

    async def setup_app_token(self) -> None:
        """Fetch a fresh app access token and store it."""
        grant: TokenGrant = await self.oauth.client_credentials()
        await self.credentials.set(APP_TOKEN_IDENTITY, grant.to_credential(APP_TOKEN_IDENTITY))
        logger.info("App access token stored")

    @staticmethod
    def read_id_token(id_token: str) -> AuthorizedIdentity:
        """Extract ``sub`` and ``preferred_username`` from an ID token.

        The token comes straight from the token endpoint over TLS, so its signature is
        not checked here.

        Raises:
            OAuthError: If the token is missing, malformed or has no subject.
        """
        if not id_token:
            msg: str = "The token endpoint returned no ID token; is the 'openid' scope granted?"
            raise OAuthError(msg)
        try:
            claims: dict[str, Any] = jwt.decode(id_token, options={"verify_signature": False})
        except jwt.PyJWTError as err:
            msg = f"Malformed ID token: {err}"
            raise OAuthError(msg) from err

        user_id: Any = claims.get("sub")
        if not isinstance(user_id, str) or not user_id:
            msg = "ID token has no subject."
            raise OAuthError(msg)
        return AuthorizedIdentity(user_id=user_id, login=str(claims.get("preferred_username") or ""))
