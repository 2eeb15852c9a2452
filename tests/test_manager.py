"""Tests for the token manager."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import NOW, FakeTokenEndpoint
from penningmeester.auth.manager import TokenManager
from penningmeester.auth.token_store import TokenRecord, TokenStore
from penningmeester.config import ProviderConfig
from penningmeester.errors import (
    NotAuthorizedError,
    ReauthorizationRequiredError,
    TokenExchangeError,
    TokenStorageError,
)
from penningmeester.modes import ExecutionMode

MARGIN = 60.0


def _provider(**kwargs) -> ProviderConfig:
    return ProviderConfig(
        name="exact",
        client_id="my-client",
        client_secret="my-secret",
        authorize_url="https://provider.test/authorize",
        token_url="https://provider.test/token",
        **kwargs,
    )


def _manager(
    tmp_path: Path,
    endpoint: FakeTokenEndpoint,
    mode: ExecutionMode = ExecutionMode.NORMAL,
    *,
    authorizer: AsyncMock | None = None,
    provider: ProviderConfig | None = None,
) -> TokenManager:
    client = endpoint.client_for(provider or _provider())
    store = TokenStore(tmp_path / "exact.json")
    return TokenManager(
        client,
        store,
        mode,
        authorizer=authorizer,
        expiry_margin=MARGIN,
        clock=lambda: NOW,
    )


def _authorizer(store: TokenStore | None = None) -> AsyncMock:
    record = TokenRecord("fresh-access", "fresh-refresh", NOW + 3600)

    async def authorize() -> TokenRecord:
        if store is not None:
            store.save(record)
        return record

    return AsyncMock(side_effect=authorize)


# ---------------------------------------------------------------------------
# Normal mode
# ---------------------------------------------------------------------------


class TestNormalMode:
    @pytest.mark.asyncio
    async def test_empty_store_is_not_authorized(self, tmp_path: Path, endpoint: FakeTokenEndpoint) -> None:
        authorizer = _authorizer()
        manager = _manager(tmp_path, endpoint, authorizer=authorizer)

        with pytest.raises(NotAuthorizedError) as exc_info:
            await manager.get_valid_access_token()

        assert "--only-auth" in exc_info.value.hint
        assert endpoint.requests == []
        authorizer.assert_not_called()

    @pytest.mark.asyncio
    async def test_valid_token_is_returned_without_network(self, tmp_path: Path, endpoint: FakeTokenEndpoint) -> None:
        manager = _manager(tmp_path, endpoint)
        manager.store.save(TokenRecord("stored", "refresh", NOW + MARGIN + 1))

        assert await manager.get_valid_access_token() == "stored"
        assert await manager.get_valid_access_token() == "stored"
        assert endpoint.requests == []

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_once(self, tmp_path: Path, endpoint: FakeTokenEndpoint) -> None:
        manager = _manager(tmp_path, endpoint)
        manager.store.save(TokenRecord("old", "refresh", NOW - 5))

        assert await manager.get_valid_access_token() == "access-1"
        assert await manager.get_valid_access_token() == "access-1"

        assert len(endpoint.requests) == 1
        assert endpoint.form()["refresh_token"] == "refresh"
        assert manager.store.load() == TokenRecord("access-1", "refresh-1", NOW + 600)

    @pytest.mark.asyncio
    async def test_margin_boundary_triggers_refresh(self, tmp_path: Path, endpoint: FakeTokenEndpoint) -> None:
        manager = _manager(tmp_path, endpoint)
        manager.store.save(TokenRecord("old", "refresh", NOW + MARGIN))

        assert await manager.get_valid_access_token() == "access-1"
        assert len(endpoint.requests) == 1

    @pytest.mark.asyncio
    async def test_refused_refresh_requires_reauthorization(self, tmp_path: Path, endpoint: FakeTokenEndpoint) -> None:
        authorizer = _authorizer()
        manager = _manager(tmp_path, endpoint, authorizer=authorizer)
        stored = TokenRecord("old", "revoked", NOW - 5)
        manager.store.save(stored)
        endpoint.reply(400, {"error": "invalid_grant"})

        with pytest.raises(ReauthorizationRequiredError, match="invalid_grant"):
            await manager.get_valid_access_token()

        authorizer.assert_not_called()
        assert manager.store.load() == stored

    @pytest.mark.asyncio
    async def test_provider_outage_is_not_a_reauthorization(self, tmp_path: Path, endpoint: FakeTokenEndpoint) -> None:
        manager = _manager(tmp_path, endpoint)
        manager.store.save(TokenRecord("old", "refresh", NOW - 5))
        endpoint.responses.append(httpx.ConnectTimeout("timed out"))

        with pytest.raises(TokenExchangeError) as exc_info:
            await manager.get_valid_access_token()

        assert not isinstance(exc_info.value, ReauthorizationRequiredError)
        assert len(endpoint.requests) == 1

    @pytest.mark.asyncio
    async def test_unwritable_store_after_refresh(
        self, tmp_path: Path, endpoint: FakeTokenEndpoint, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        manager = _manager(tmp_path, endpoint)
        manager.store.save(TokenRecord("old", "refresh", NOW - 5))

        def read_only(record: TokenRecord) -> None:
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr(manager.store, "save", read_only)

        with pytest.raises(TokenStorageError, match="could not be written") as exc_info:
            await manager.get_valid_access_token()

        assert exc_info.value.exit_code == 9
        assert "--only-auth" in exc_info.value.hint
        assert isinstance(exc_info.value.__cause__, PermissionError)

    @pytest.mark.asyncio
    async def test_corrupt_store_is_not_authorized(self, tmp_path: Path, endpoint: FakeTokenEndpoint) -> None:
        manager = _manager(tmp_path, endpoint)
        manager.store.path.write_text("garbage")

        with pytest.raises(NotAuthorizedError):
            await manager.get_valid_access_token()

    @pytest.mark.asyncio
    async def test_revoked_access_token(self, tmp_path: Path, endpoint: FakeTokenEndpoint) -> None:
        manager = _manager(tmp_path, endpoint, provider=_provider(verify_url="https://provider.test/me"))
        manager.store.save(TokenRecord("stored", "refresh", NOW + 3600))
        endpoint.reply(401)

        with pytest.raises(ReauthorizationRequiredError):
            await manager.ensure_authorized()

    @pytest.mark.asyncio
    async def test_authorized_client(self, tmp_path: Path, endpoint: FakeTokenEndpoint) -> None:
        manager = _manager(tmp_path, endpoint)
        manager.store.save(TokenRecord("stored", "refresh", NOW + 3600))

        async with await manager.authorized_client(headers={"X-Division": "42"}) as client:
            assert client.headers["authorization"] == "Bearer stored"
            assert client.headers["x-division"] == "42"
            assert client.headers["user-agent"].startswith("penningmeester")


# ---------------------------------------------------------------------------
# AuthOnly mode
# ---------------------------------------------------------------------------


class TestAuthOnlyMode:
    @pytest.mark.asyncio
    async def test_empty_store_authorizes(self, tmp_path: Path, endpoint: FakeTokenEndpoint) -> None:
        manager = _manager(tmp_path, endpoint, ExecutionMode.AUTH_ONLY)
        manager._authorizer = authorizer = _authorizer(manager.store)

        assert await manager.get_valid_access_token() == "fresh-access"

        authorizer.assert_awaited_once()
        assert manager.store.load().access_token == "fresh-access"

    @pytest.mark.asyncio
    async def test_valid_token_skips_authorization(self, tmp_path: Path, endpoint: FakeTokenEndpoint) -> None:
        authorizer = _authorizer()
        manager = _manager(tmp_path, endpoint, ExecutionMode.AUTH_ONLY, authorizer=authorizer)
        manager.store.save(TokenRecord("stored", "refresh", NOW + 3600))

        assert await manager.ensure_authorized() == "stored"
        authorizer.assert_not_called()

    @pytest.mark.asyncio
    async def test_refused_refresh_falls_back_to_authorization(
        self, tmp_path: Path, endpoint: FakeTokenEndpoint
    ) -> None:
        manager = _manager(tmp_path, endpoint, ExecutionMode.AUTH_ONLY)
        manager._authorizer = authorizer = _authorizer(manager.store)
        manager.store.save(TokenRecord("old", "revoked", NOW - 5))
        endpoint.reply(401, {"error": "invalid_client"})

        assert await manager.get_valid_access_token() == "fresh-access"
        authorizer.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_revoked_access_token_reauthorizes(self, tmp_path: Path, endpoint: FakeTokenEndpoint) -> None:
        authorizer = _authorizer()
        manager = _manager(
            tmp_path,
            endpoint,
            ExecutionMode.AUTH_ONLY,
            authorizer=authorizer,
            provider=_provider(verify_url="https://provider.test/me"),
        )
        manager.store.save(TokenRecord("stored", "refresh", NOW + 3600))
        endpoint.reply(401)

        assert await manager.ensure_authorized() == "fresh-access"
        authorizer.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_without_authorizer_behaves_like_normal(self, tmp_path: Path, endpoint: FakeTokenEndpoint) -> None:
        manager = _manager(tmp_path, endpoint, ExecutionMode.AUTH_ONLY)

        with pytest.raises(NotAuthorizedError):
            await manager.get_valid_access_token()

    @pytest.mark.asyncio
    async def test_authorize_without_authorizer_raises(self, tmp_path: Path, endpoint: FakeTokenEndpoint) -> None:
        manager = _manager(tmp_path, endpoint, ExecutionMode.AUTH_ONLY)

        with pytest.raises(RuntimeError, match="No authorizer"):
            await manager._authorize()
