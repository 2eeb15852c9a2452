"""
penningmeester configuration management.

Supports loading from YAML files, environment variables, and keyword overrides.
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from penningmeester.errors import ConfigError

_DEFAULT_TOKEN_DIR = Path.home() / ".penningmeester" / "tokens"
_ENV_PREFIX = "PENNINGMEESTER_"

_EXACT_BASE_URL = "https://start.exactonline.nl"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ProviderKind(str, Enum):
    EXACT = "exact"
    PRETIX = "pretix"
    GENERIC = "generic"


class ClientAuth(str, Enum):
    """How the client authenticates itself at the token endpoint."""

    BODY = "body"
    BASIC = "basic"


class WebServerConfig(BaseModel):
    """Built-in HTTPS callback server."""

    hostname: str = Field(
        default="penningmeester.local",
        description="Hostname the certificate is issued for; part of the redirect URI",
    )
    bind_address: str = Field(default="0.0.0.0")
    port: int = Field(default=443, ge=0, le=65535)
    ssl_cert: Path = Field(description="Path to the PEM certificate (chain)")
    ssl_key: Path = Field(description="Path to the PEM private key")
    callback_timeout: float = Field(default=300.0, gt=0, description="Seconds to wait for the browser")
    open_browser: bool = True

    @property
    def redirect_uri(self) -> str:
        if self.port in (443, 0):
            return f"https://{self.hostname}/callback"
        return f"https://{self.hostname}:{self.port}/callback"


class ProviderConfig(BaseModel):
    """OAuth2 client registration for one provider."""

    name: str = ""
    kind: ProviderKind = ProviderKind.GENERIC
    url: str | None = Field(default=None, description="Base URL of a self-hosted provider (Pretix)")
    client_id: str
    client_secret: str = ""
    authorize_url: str | None = None
    token_url: str | None = None
    verify_url: str | None = Field(default=None, description="GET endpoint used to check a token still works")
    scope: str = ""
    client_auth: ClientAuth = ClientAuth.BODY
    use_pkce: bool = False
    extra_authorize_params: dict[str, str] = Field(default_factory=dict)
    token_file: Path | None = None

    @field_validator("url")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        return value.rstrip("/") if value else value

    @model_validator(mode="after")
    def _apply_preset(self) -> ProviderConfig:
        if self.kind is ProviderKind.EXACT:
            self.authorize_url = self.authorize_url or f"{_EXACT_BASE_URL}/api/oauth2/auth"
            self.token_url = self.token_url or f"{_EXACT_BASE_URL}/api/oauth2/token"
            self.verify_url = self.verify_url or f"{_EXACT_BASE_URL}/api/v1/current/Me"
            self.extra_authorize_params = {"force_login": "0", **self.extra_authorize_params}
        elif self.kind is ProviderKind.PRETIX:
            if not self.url:
                raise ValueError("pretix providers need the `url` of the Pretix instance")
            self.authorize_url = self.authorize_url or f"{self.url}/api/v1/oauth/authorize"
            self.token_url = self.token_url or f"{self.url}/api/v1/oauth/token"
            self.verify_url = self.verify_url or f"{self.url}/api/v1/organizers/"
            self.scope = self.scope or "read write"
            if "client_auth" not in self.model_fields_set:
                self.client_auth = ClientAuth.BASIC

        if not self.authorize_url or not self.token_url:
            raise ValueError("authorize_url and token_url are required for generic providers")
        return self


class PenningmeesterConfig(BaseModel):
    """Root configuration for penningmeester."""

    log_level: str = Field(default="INFO")
    token_dir: Path = Field(default=_DEFAULT_TOKEN_DIR)
    token_owner: str | None = Field(
        default=None,
        description="'uid:gid' that owns the token files; defaults to the sudo caller",
    )
    expiry_margin: float = Field(default=60.0, ge=0, description="Refresh tokens this many seconds early")
    http_timeout: float = Field(default=30.0, gt=0)
    web_server: WebServerConfig
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        value = value.upper()
        if value not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(_LOG_LEVELS)}")
        return value

    @field_validator("token_owner")
    @classmethod
    def _check_owner(cls, value: str | None) -> str | None:
        if value is not None:
            uid, _, gid = value.partition(":")
            if not uid.isdigit() or not gid.isdigit():
                raise ValueError("token_owner must look like 'uid:gid'")
        return value

    @model_validator(mode="after")
    def _name_providers(self) -> PenningmeesterConfig:
        if not self.providers:
            raise ValueError("at least one provider must be configured")
        for name, provider in self.providers.items():
            provider.name = name
        self.token_dir = self.token_dir.expanduser()
        return self

    def token_path(self, provider: str) -> Path:
        """Location of the token file for ``provider``."""
        configured = self.providers[provider].token_file
        if configured is not None:
            return configured.expanduser()
        return self.token_dir / f"{provider}.json"

    def owner_ids(self) -> tuple[int, int] | None:
        """The (uid, gid) token files should belong to, if not the current user."""
        if self.token_owner:
            uid, _, gid = self.token_owner.partition(":")
            return int(uid), int(gid)
        sudo_uid = os.environ.get("SUDO_UID")
        sudo_gid = os.environ.get("SUDO_GID")
        if sudo_uid and sudo_gid and hasattr(os, "geteuid") and os.geteuid() == 0:
            return int(sudo_uid), int(sudo_gid)
        return None

    @classmethod
    def load(cls, config_path: str | Path | None = None, **overrides: Any) -> PenningmeesterConfig:
        """Load configuration from file, env vars, and overrides.

        Priority: overrides > env vars > config file > defaults.
        """
        data: dict[str, Any] = {}

        # 1. Load from YAML file
        config_path = config_path or os.environ.get(f"{_ENV_PREFIX}CONFIG")
        if config_path:
            path = Path(config_path).expanduser()
            if not path.exists():
                raise ConfigError(f"Config file {path} does not exist")
            try:
                with open(path) as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Could not read config file {path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Config file {path} must contain a mapping")

        # 2. Override from environment variables
        env_level = os.environ.get(f"{_ENV_PREFIX}LOG_LEVEL")
        env_token_dir = os.environ.get(f"{_ENV_PREFIX}TOKEN_DIR")
        if env_level:
            data["log_level"] = env_level
        if env_token_dir:
            data["token_dir"] = env_token_dir

        for name, provider in (data.get("providers") or {}).items():
            secret = os.environ.get(f"{_ENV_PREFIX}{name.upper()}_CLIENT_SECRET")
            if secret and isinstance(provider, dict):
                provider["client_secret"] = secret

        # 3. Apply keyword overrides
        data.update(overrides)

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration:\n{e}") from e
