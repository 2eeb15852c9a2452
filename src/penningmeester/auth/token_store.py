"""
Durable token storage shared between AuthOnly and Normal runs.

A provider's tokens live in a single JSON file that is replaced atomically on
every write, so a reader in another process sees either the old or the new
record in full. The file is readable by its owner only.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from penningmeester.errors import TokenExchangeError

logger = logging.getLogger("penningmeester.auth.token_store")

_DEFAULT_EXPIRES_IN = 3600


@dataclass(frozen=True)
class TokenRecord:
    """The current access/refresh token pair of one provider."""

    access_token: str
    refresh_token: str
    expires_at: float
    scope: str = ""

    def is_expired(self, now: float, margin: float = 0.0) -> bool:
        """Whether the access token should no longer be used at ``now``.

        A token expiring exactly ``margin`` seconds from now counts as expired.
        """
        return now >= self.expires_at - margin

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenRecord:
        access = data["access_token"]
        refresh = data["refresh_token"]
        scope = data.get("scope", "")
        if not isinstance(access, str) or not isinstance(refresh, str) or not isinstance(scope, str):
            raise TypeError("token fields must be strings")
        return cls(
            access_token=access,
            refresh_token=refresh,
            expires_at=float(data["expires_at"]),
            scope=scope,
        )

    @classmethod
    def from_oauth_response(
        cls,
        data: dict[str, Any],
        *,
        now: float,
        previous: TokenRecord | None = None,
        default_scope: str = "",
    ) -> TokenRecord:
        """Parse a standard OAuth2 token response.

        Providers that do not rotate refresh tokens omit ``refresh_token`` on a
        refresh grant; the previous one stays valid then.
        """
        access = data.get("access_token")
        if not access or not isinstance(access, str):
            raise TokenExchangeError("Token response is missing access_token")

        refresh = data.get("refresh_token") or (previous.refresh_token if previous else "")
        if not refresh:
            raise TokenExchangeError("Token response is missing refresh_token")

        # Exact Online sends expires_in as a string
        try:
            expires_in = int(data.get("expires_in", _DEFAULT_EXPIRES_IN))
        except (TypeError, ValueError, OverflowError) as e:
            raise TokenExchangeError(f"Token response has an invalid expires_in: {e}") from e

        scope = data.get("scope") or (previous.scope if previous else default_scope)
        return cls(
            access_token=access,
            refresh_token=str(refresh),
            expires_at=now + expires_in,
            scope=str(scope),
        )


class TokenStore:
    """JSON file holding one :class:`TokenRecord`.

    Args:
        path: Location of the token file.
        owner: ``(uid, gid)`` to hand the file to after writing. Used when an
            AuthOnly run as root stores tokens for the unprivileged operator.
    """

    def __init__(self, path: Path, *, owner: tuple[int, int] | None = None) -> None:
        self.path = path
        self.owner = owner

    def load(self) -> TokenRecord | None:
        """Return the stored record, or None when there is no usable one."""
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Cannot read token file %s: %s", self.path, e)
            return None

        try:
            return TokenRecord.from_dict(json.loads(content))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Ignoring corrupt token file %s: %s", self.path, e)
            return None

    def save(self, record: TokenRecord) -> None:
        """Atomically replace the stored record.

        Raises:
            OSError: If the file cannot be written; the previous record is
                left untouched in that case.
        """
        self._ensure_directory()
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                os.fchmod(f.fileno(), 0o600)
                if self.owner is not None:
                    os.fchown(f.fileno(), *self.owner)
                json.dump(record.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
        _fsync_directory(self.path.parent)
        logger.debug("Saved token to %s", self.path)

    def delete(self) -> bool:
        """Delete the stored record.

        Returns:
            True if a record was deleted, False if none existed.
        """
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Deleted token file %s", self.path)
        return True

    def _ensure_directory(self) -> None:
        directory = self.path.parent
        if directory.exists():
            return
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        if self.owner is not None:
            os.chown(directory, *self.owner)


def _fsync_directory(path: Path) -> None:
    """Best-effort fsync on a directory after atomic replace."""
    try:
        fd = os.open(path, os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
