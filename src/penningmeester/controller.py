"""
Mode controller: the top-level entry point of a penningmeester run.

Decides per invocation what the process does:

- **AuthOnly** (``--only-auth``): (re)establish a valid token for every
  provider, binding the privileged callback listener when needed, then stop.
- **Normal**: obtain tokens from the store (refreshing them) for the business
  operations. Never binds the listener; a missing or unusable token fails
  fast with an instruction to rerun in AuthOnly mode.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from penningmeester.auth.manager import TokenManager
from penningmeester.auth.oauth2 import OAuth2Client
from penningmeester.auth.server import AuthorizationServer
from penningmeester.auth.token_store import TokenStore
from penningmeester.config import PenningmeesterConfig, ProviderConfig
from penningmeester.errors import ConfigError
from penningmeester.modes import ExecutionMode

logger = logging.getLogger("penningmeester")

ClientFactory = Callable[[ProviderConfig], OAuth2Client]


@dataclass
class ModeController:
    """Runs the authorization step of a process in its execution mode.

    Usage::

        controller = ModeController.from_config("config.yaml", only_auth=True)
        tokens = await controller.run()
    """

    config: PenningmeesterConfig
    mode: ExecutionMode
    present: Callable[[str], None] | None = None
    client_factory: ClientFactory | None = None
    clock: Callable[[], float] = field(default=time.time)

    @classmethod
    def from_config(cls, config_path: str | None = None, *, only_auth: bool = False, **overrides: Any) -> ModeController:
        """Create a controller from a config file or keyword arguments."""
        config = PenningmeesterConfig.load(config_path, **overrides)
        return cls(config=config, mode=ExecutionMode.from_flags(only_auth))

    def store_for(self, provider: str) -> TokenStore:
        return TokenStore(self.config.token_path(provider), owner=self.config.owner_ids())

    def manager_for(self, provider: str) -> TokenManager:
        """Build the TokenManager of ``provider`` for this process's mode."""
        try:
            provider_config = self.config.providers[provider]
        except KeyError:
            known = ", ".join(self.config.providers)
            raise ConfigError(f"Unknown provider '{provider}' (configured: {known})") from None

        if self.client_factory is not None:
            client = self.client_factory(provider_config)
        else:
            client = OAuth2Client(provider_config, timeout=self.config.http_timeout, clock=self.clock)
        store = self.store_for(provider)

        authorizer = None
        if self.mode is ExecutionMode.AUTH_ONLY:
            server = AuthorizationServer(client, store, self.config.web_server, present=self.present)
            authorizer = server.authorize

        return TokenManager(
            client,
            store,
            self.mode,
            authorizer=authorizer,
            expiry_margin=self.config.expiry_margin,
            clock=self.clock,
        )

    async def run(self, providers: list[str] | None = None) -> dict[str, str]:
        """Ensure every selected provider has a working access token.

        Providers are handled one after another, so at most one callback
        listener exists at a time.

        Returns:
            Access token per provider name.
        """
        names = providers or list(self.config.providers)
        logger.info("Checking authorizations (%s mode)", self.mode.value)

        tokens: dict[str, str] = {}
        for name in names:
            manager = self.manager_for(name)
            try:
                tokens[name] = await manager.ensure_authorized()
            finally:
                await manager.client.close()

        logger.info("All authorizations are present")
        if self.mode is ExecutionMode.AUTH_ONLY:
            logger.info("Flag '--only-auth' set. Stopping here")
        return tokens
