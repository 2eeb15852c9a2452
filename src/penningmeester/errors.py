"""
Error taxonomy for penningmeester.

Every error carries the process exit code the CLI uses for it and an
optional hint that is shown to the operator below the error message.
"""

from __future__ import annotations

ONLY_AUTH_HINT = "Run `penningmeester --only-auth` (as root, it binds port 443) to authorize first."


class PenningmeesterError(Exception):
    """Base class for all expected failures."""

    exit_code: int = 1
    hint: str | None = None

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        if hint is not None:
            self.hint = hint


class ConfigError(PenningmeesterError):
    """The configuration file is missing or invalid."""

    exit_code = 2


class AuthError(PenningmeesterError):
    """Base class for authorization and token lifecycle failures."""


class BindError(AuthError):
    """The callback listener could not start (permissions, port in use)."""

    exit_code = 3


class CertificateError(BindError):
    """The TLS certificate or key is missing, unreadable or unusable."""


class CallbackError(AuthError):
    """The authorization callback was invalid or the attempt failed."""

    exit_code = 5


class AuthorizationDeniedError(CallbackError):
    """The provider redirected back with an ``error`` parameter."""

    def __init__(self, error: str, description: str | None = None) -> None:
        self.error = error
        self.description = description
        reason = f"{error}: {description}" if description else error
        super().__init__(f"Authorization denied by provider ({reason})")


class AuthorizationTimeoutError(CallbackError):
    """No callback arrived within the configured window."""

    exit_code = 4


class TokenExchangeError(AuthError):
    """The token endpoint failed during a code or refresh exchange.

    ``rejected`` is true when the provider answered with a client error
    (400/401), which for a refresh grant means the refresh token is no
    longer usable. Transport failures and 5xx answers are not rejections.
    """

    exit_code = 6

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error = error

    @property
    def rejected(self) -> bool:
        return self.status_code in (400, 401)


class TokenStorageError(AuthError):
    """New tokens were issued but could not be written to the token file.

    A provider that rotates refresh tokens has invalidated the stored pair
    at this point, so a fresh authorization is needed.
    """

    exit_code = 9
    hint = ONLY_AUTH_HINT


class NotAuthorizedError(AuthError):
    """Normal mode found no stored token at all."""

    exit_code = 7
    hint = ONLY_AUTH_HINT


class ReauthorizationRequiredError(AuthError):
    """Normal mode holds a token that can no longer be refreshed."""

    exit_code = 8
    hint = ONLY_AUTH_HINT
