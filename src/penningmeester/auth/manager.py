"""
Token manager. Hands out valid access tokens for one provider.

Stored tokens are returned as long as they are not (nearly) expired, expired
ones are refreshed through the token endpoint, and an interactive
authorization is only started in AuthOnly mode. A Normal run never binds the
privileged callback listener.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

import httpx

from penningmeester.auth.oauth2 import USER_AGENT, OAuth2Client
from penningmeester.auth.token_store import TokenRecord, TokenStore
from penningmeester.errors import (
    NotAuthorizedError,
    ReauthorizationRequiredError,
    TokenExchangeError,
    TokenStorageError,
)
from penningmeester.modes import ExecutionMode

logger = logging.getLogger("penningmeester.auth.manager")

Authorizer = Callable[[], Awaitable[TokenRecord]]


class TokenManager:
    """Provides a valid access token on demand.

    Args:
        client: OAuth2 client of the provider.
        store: Where the provider's TokenRecord lives.
        mode: Execution mode of this process.
        authorizer: Runs an interactive authorization and returns the persisted
            record. Only used in AuthOnly mode.
        expiry_margin: Tokens expiring within this many seconds count as expired.
        clock: Returns the current unix time.
    """

    def __init__(
        self,
        client: OAuth2Client,
        store: TokenStore,
        mode: ExecutionMode,
        *,
        authorizer: Authorizer | None = None,
        expiry_margin: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.store = store
        self.mode = mode
        self.expiry_margin = expiry_margin
        self._authorizer = authorizer
        self._clock = clock

    @property
    def provider(self) -> str:
        return self.client.provider.name

    async def get_valid_access_token(self) -> str:
        """Return an access token that is valid for at least ``expiry_margin``.

        Raises:
            NotAuthorizedError: Normal mode and nothing is stored.
            ReauthorizationRequiredError: Normal mode and the refresh token was refused.
            TokenExchangeError: The token endpoint failed for another reason.
            TokenStorageError: A refreshed token pair could not be persisted.
            AuthError: Any failure of the interactive authorization (AuthOnly).
        """
        record = self.store.load()
        if record is None:
            if not self._may_authorize:
                raise NotAuthorizedError(f"No {self.provider} token stored in {self.store.path}")
            logger.info("No %s token pair available. Need to authorize.", self.provider)
            return (await self._authorize()).access_token

        if not record.is_expired(self._clock(), self.expiry_margin):
            return record.access_token

        return (await self._refresh(record)).access_token

    async def ensure_authorized(self) -> str:
        """Like :meth:`get_valid_access_token`, but also asks the provider.

        A provider may revoke an access token before it expires. When the
        provider has a ``verify_url``, the token is tried against it and a
        401 answer is treated like a refused refresh token.
        """
        token = await self.get_valid_access_token()
        if await self.client.verify(token):
            return token

        if not self._may_authorize:
            raise ReauthorizationRequiredError(f"{self.provider} no longer accepts the stored credentials")
        return (await self._authorize()).access_token

    async def authorized_client(self, **kwargs: Any) -> httpx.AsyncClient:
        """An httpx client that sends a valid bearer token, for API calls."""
        token = await self.get_valid_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
            **kwargs.pop("headers", {}),
        }
        kwargs.setdefault("timeout", self.client.timeout)
        return httpx.AsyncClient(headers=headers, **kwargs)

    @property
    def _may_authorize(self) -> bool:
        return self.mode is ExecutionMode.AUTH_ONLY and self._authorizer is not None

    async def _refresh(self, record: TokenRecord) -> TokenRecord:
        try:
            refreshed = await self.client.refresh(record)
        except TokenExchangeError as e:
            if not e.rejected:
                raise
            if not self._may_authorize:
                raise ReauthorizationRequiredError(
                    f"{self.provider} refused the stored refresh token ({e.error or e.status_code})"
                ) from e
            logger.warning("%s refused the refresh token, starting a new authorization", self.provider)
            return await self._authorize()

        try:
            self.store.save(refreshed)
        except OSError as e:
            raise TokenStorageError(
                f"Refreshed {self.provider} tokens could not be written to {self.store.path}: {e}"
            ) from e
        return refreshed

    async def _authorize(self) -> TokenRecord:
        if self._authorizer is None:
            raise RuntimeError(f"No authorizer configured for {self.provider}")
        return await self._authorizer()
