"""Data models for OAuth credentials and authorization state."""

from __future__ import annotations

from dataclasses import dataclass

__all__: list[str] = ["APP_TOKEN_IDENTITY", "Credential", "PendingAuthState", "TokenGrant"]

# Key under which the app access token (client credentials grant) is stored.
APP_TOKEN_IDENTITY: str = "app-access-token"


@dataclass(frozen=True)
class Credential:
    """OAuth token pair of one identity.

    Attributes:
        identity (str): Twitch user id, or ``APP_TOKEN_IDENTITY`` for the app token.
        access_token (str): Bearer token sent with API calls.
        refresh_token (str): Token exchanged for a new pair. Empty for the app token.
    """

    identity: str
    access_token: str
    refresh_token: str = ""

    def __repr__(self) -> str:
        # tokens must never end up in logs
        return f"Credential(identity={self.identity!r})"


@dataclass(frozen=True)
class TokenGrant:
    """Successful answer of the token endpoint."""

    access_token: str
    refresh_token: str = ""
    id_token: str = ""
    expires_in: int = 0
    scope: tuple[str, ...] = ()

    def __repr__(self) -> str:
        return f"TokenGrant(expires_in={self.expires_in}, scope={self.scope})"

    def to_credential(self, identity: str, *, previous_refresh_token: str = "") -> Credential:
        """Build the credential to store, keeping the old refresh token if none was issued."""
        return Credential(
            identity=identity,
            access_token=self.access_token,
            refresh_token=self.refresh_token or previous_refresh_token,
        )


@dataclass(frozen=True)
class PendingAuthState:
    """One-time OAuth ``state`` value awaiting its callback.

    Attributes:
        state (str): Random hex string placed in the authorize URL.
        expiration (float): Unix timestamp after which the state is rejected.
    """

    state: str
    expiration: float

    def is_expired(self, now: float) -> bool:
        return now > self.expiration
