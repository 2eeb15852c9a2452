"""
OAuth2 client: authorization URLs, PKCE and token endpoint calls.

Speaks the standard authorization-code and refresh-token grants against a
provider's token endpoint. Exact Online expects the client credentials in the
form body, Pretix expects HTTP basic authentication; both are supported.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import time
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from penningmeester import __version__
from penningmeester.auth.token_store import TokenRecord
from penningmeester.config import ClientAuth, ProviderConfig
from penningmeester.errors import TokenExchangeError

logger = logging.getLogger("penningmeester.auth.oauth2")

USER_AGENT = f"penningmeester v{__version__}"


# ---------------------------------------------------------------------------
# PKCE helpers
# ---------------------------------------------------------------------------

def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and code_challenge pair.

    Returns:
        Tuple of (code_verifier, code_challenge) for the S256 method.
    """
    # 43-128 characters are allowed
    code_verifier = secrets.token_urlsafe(64)[:128]

    digest = hashlib.sha256(code_verifier.encode()).digest()
    code_challenge = base64.urlsafe_b64encode(digest).decode().rstrip("=")

    return code_verifier, code_challenge


def generate_state() -> str:
    return secrets.token_urlsafe(32)


class OAuth2Client:
    """Client side of the OAuth2 flows for one provider.

    Usage::

        client = OAuth2Client(config.providers["exact"], timeout=30)
        url = client.get_authorization_url(redirect_uri, state)
        # ... operator approves in the browser, callback delivers `code` ...
        record = await client.exchange_code(code, redirect_uri)
    """

    def __init__(
        self,
        provider: ProviderConfig,
        *,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.provider = provider
        self.timeout = timeout
        self._clock = clock
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable httpx client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Authorization request
    # ------------------------------------------------------------------

    def get_authorization_url(
        self,
        redirect_uri: str,
        state: str,
        *,
        code_challenge: str | None = None,
    ) -> str:
        """Build the URL the operator opens to approve access.

        Args:
            redirect_uri: Must match the registered redirect URI exactly.
            state: CSRF protection value echoed back on the callback.
            code_challenge: PKCE code challenge (S256), if PKCE is used.
        """
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": self.provider.client_id,
            "redirect_uri": redirect_uri,
            "state": state,
        }
        if self.provider.scope:
            params["scope"] = self.provider.scope

        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"

        params.update(self.provider.extra_authorize_params)

        return f"{self.provider.authorize_url}?{urlencode(params)}"

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        *,
        code_verifier: str | None = None,
    ) -> TokenRecord:
        """Exchange an authorization code for a token pair.

        Raises:
            TokenExchangeError: On transport failures or a non-2xx answer.
        """
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            payload["code_verifier"] = code_verifier

        data = await self._post_token(payload, "authorization code exchange")
        record = TokenRecord.from_oauth_response(data, now=self._clock(), default_scope=self.provider.scope)
        logger.info("Exchanged authorization code for %s tokens", self.provider.name)
        return record

    async def refresh(self, record: TokenRecord) -> TokenRecord:
        """Trade the refresh token of ``record`` for a new token pair.

        Raises:
            TokenExchangeError: ``rejected`` is set when the provider refused
                the refresh token itself.
        """
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": record.refresh_token,
        }

        logger.debug("Refreshing %s access token", self.provider.name)
        data = await self._post_token(payload, "token refresh")
        refreshed = TokenRecord.from_oauth_response(data, now=self._clock(), previous=record)
        logger.info(
            "Refreshed %s access token (expires in %ds)",
            self.provider.name,
            refreshed.expires_at - self._clock(),
        )
        return refreshed

    async def verify(self, access_token: str) -> bool:
        """Check a token against the provider's ``verify_url``.

        Returns:
            False if the provider answered 401, True on success.

        Raises:
            TokenExchangeError: On any other failure.
        """
        if not self.provider.verify_url:
            return True

        client = await self._get_client()
        try:
            resp = await client.get(
                self.provider.verify_url,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"Could not verify {self.provider.name} token: {e}") from e

        if resp.status_code == 401:
            logger.info("%s credentials present, but no longer valid", self.provider.name)
            return False
        if resp.is_error:
            raise TokenExchangeError(
                f"Verifying {self.provider.name} token failed with HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        return True

    async def _post_token(self, payload: dict[str, str], action: str) -> dict[str, Any]:
        client = await self._get_client()

        auth: httpx.BasicAuth | None = None
        if self.provider.client_auth is ClientAuth.BASIC:
            auth = httpx.BasicAuth(self.provider.client_id, self.provider.client_secret)
        else:
            payload = {
                **payload,
                "client_id": self.provider.client_id,
                "client_secret": self.provider.client_secret,
            }

        try:
            resp = await client.post(self.provider.token_url, data=payload, auth=auth)
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"{self.provider.name} {action} failed: {e}") from e

        if resp.is_error:
            error = _error_code(resp)
            detail = f" ({error})" if error else ""
            raise TokenExchangeError(
                f"{self.provider.name} {action} failed with HTTP {resp.status_code}{detail}",
                status_code=resp.status_code,
                error=error,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise TokenExchangeError(f"{self.provider.name} {action} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise TokenExchangeError(f"{self.provider.name} {action} returned an unexpected payload")
        return data


def _error_code(resp: httpx.Response) -> str | None:
    """Extract the OAuth2 ``error`` field from an error response, if any."""
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    return None
