"""Refresh-on-401 wrapper for authenticated API calls.

Each identity owns one ``CredentialCache`` and one ``TokenRefresher``. A call is built from
the current access token; when the API answers 401 the token is renewed once, persisted,
and the call is re-issued exactly once with the new token. Concurrent 401s of the same
identity share a single in-flight renewal.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING, Final

from core.token_manager import OAuthError
from handlers.async_comm import DEFAULT_TOTAL_TIMEOUT
from models.credential_models import APP_TOKEN_IDENTITY
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging
    from collections.abc import Awaitable, Callable

    from core.token_manager import OAuthClient
    from core.token_storage import CredentialStore
    from handlers.async_comm import ApiRequest, ApiResponse, AsyncHttp
    from models.credential_models import Credential, TokenGrant

    type RequestBuilder = Callable[[str], ApiRequest]
    type RenewFunc = Callable[[Credential], Awaitable[Credential]]
    type TokenRefreshHook = Callable[[Credential], Awaitable[None] | None]


__all__: list[str] = ["CredentialCache", "TokenRefresher"]

logger: logging.Logger = LoggerUtils.get_logger(__name__)

HTTP_UNAUTHORIZED: Final[int] = 401


class CredentialCache:
    """In-memory credential of one identity.

    Populated at startup from the credential store, replaced only by the identity's
    ``TokenRefresher`` and read by everything that sends requests for the identity.
    """

    def __init__(self, credential: Credential) -> None:
        self._credential: Credential = credential

    def __repr__(self) -> str:
        return f"CredentialCache(identity={self._credential.identity!r})"

    @property
    def identity(self) -> str:
        return self._credential.identity

    @property
    def credential(self) -> Credential:
        return self._credential

    @property
    def access_token(self) -> str:
        return self._credential.access_token

    def update(self, credential: Credential) -> None:
        if credential.identity != self._credential.identity:
            msg: str = f"Credential of '{credential.identity}' cannot replace that of '{self.identity}'."
            raise ValueError(msg)
        self._credential = credential


class TokenRefresher:
    """Send requests with an identity's token, renewing it on 401.

    Attributes:
        cache (CredentialCache): Credential of the identity.
        store (CredentialStore): Durable store the renewed credential is written to.
        http (AsyncHttp): HTTP client used for the API calls.
        request_timeout (float): Total timeout of each physical request in seconds.
    """

    def __init__(
        self,
        *,
        cache: CredentialCache,
        store: CredentialStore,
        http: AsyncHttp,
        renew: RenewFunc,
        on_token_refresh: TokenRefreshHook | None = None,
        request_timeout: float = DEFAULT_TOTAL_TIMEOUT,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self.cache: CredentialCache = cache
        self.store: CredentialStore = store
        self.http: AsyncHttp = http
        self.request_timeout: float = request_timeout
        self._renew_credential: RenewFunc = renew
        self.on_token_refresh: TokenRefreshHook | None = on_token_refresh
        self._log: logging.Logger | logging.LoggerAdapter = log or logger
        self._inflight: asyncio.Task[str | None] | None = None
        self._lock: asyncio.Lock = asyncio.Lock()

    @classmethod
    def for_user(
        cls,
        *,
        cache: CredentialCache,
        store: CredentialStore,
        http: AsyncHttp,
        oauth: OAuthClient,
        **kwargs,
    ) -> TokenRefresher:
        """Refresher for a bot account; renews with the ``refresh_token`` grant."""

        async def renew(current: Credential) -> Credential:
            grant: TokenGrant = await oauth.refresh(current.refresh_token)
            return grant.to_credential(current.identity, previous_refresh_token=current.refresh_token)

        return cls(cache=cache, store=store, http=http, renew=renew, **kwargs)

    @classmethod
    def for_app(
        cls,
        *,
        cache: CredentialCache,
        store: CredentialStore,
        http: AsyncHttp,
        oauth: OAuthClient,
        **kwargs,
    ) -> TokenRefresher:
        """Refresher for the app access token; renews with the ``client_credentials`` grant."""

        async def renew(current: Credential) -> Credential:
            _ = current
            grant: TokenGrant = await oauth.client_credentials()
            return grant.to_credential(APP_TOKEN_IDENTITY)

        return cls(cache=cache, store=store, http=http, renew=renew, **kwargs)

    async def execute(self, build_request: RequestBuilder) -> ApiResponse:
        """Send the request built from the current token, renewing once on 401.

        At most two physical requests are made. If the renewal fails, the original 401
        response is returned unchanged.

        Args:
            build_request (RequestBuilder): Builds the request from an access token. It is
                called again with the new token for the retry.

        Returns:
            ApiResponse: The response of the last request sent.

        Raises:
            AsyncCommError: If a request could not be sent or timed out.
        """
        token: str = self.cache.access_token
        request: ApiRequest = build_request(token)
        response: ApiResponse = await self.http.send(request, total_timeout=self.request_timeout)
        if response.status != HTTP_UNAUTHORIZED:
            return response

        self._log.warning("Request to '%s' returned unauthorized. Refreshing...", request.url)
        new_token: str | None = await self._renewed_token(token)
        if new_token is None:
            return response

        retry: ApiRequest = build_request(new_token)
        self._log.info("Tokens refreshed. Re-sending '%s'", retry.url)
        return await self.http.send(retry, total_timeout=self.request_timeout)

    async def _renewed_token(self, stale_token: str) -> str | None:
        """Get a token newer than ``stale_token``, starting a renewal only if none is running."""
        async with self._lock:
            if self.cache.access_token != stale_token:
                # another call renewed the token after ours was sent
                return self.cache.access_token
            task: asyncio.Task[str | None] | None = self._inflight
            if task is None:
                task = asyncio.create_task(self._renew(), name=f"token-refresh-{self.cache.identity}")
                self._inflight = task
            else:
                self._log.debug("Joining in-flight token refresh")

        # shield so that a cancelled caller does not cancel the renewal shared with others
        return await asyncio.shield(task)

    async def _renew(self) -> str | None:
        try:
            try:
                credential: Credential = await self._renew_credential(self.cache.credential)
            except OAuthError as err:
                self._log.error("Token refresh failed: %s", err)
                return None

            # persist before anyone retries with the new token
            await self.store.set(credential.identity, credential)
            self.cache.update(credential)
        finally:
            self._inflight = None

        self._log.info("Access token refreshed")
        await self._notify(credential)
        return credential.access_token

    async def _notify(self, credential: Credential) -> None:
        if self.on_token_refresh is None:
            return
        try:
            result = self.on_token_refresh(credential)
            if inspect.isawaitable(result):
                await result
        except Exception as err:  # noqa: BLE001
            self._log.error("on_token_refresh hook raised: %s", err)
