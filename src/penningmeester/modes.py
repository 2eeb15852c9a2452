"""Execution modes."""

from __future__ import annotations

from enum import Enum


class ExecutionMode(str, Enum):
    """What a process is allowed to do, fixed at startup.

    AUTH_ONLY may bind the privileged callback listener and stops after the
    authorizations; NORMAL runs business operations on stored tokens only.
    """

    AUTH_ONLY = "auth-only"
    NORMAL = "normal"

    @classmethod
    def from_flags(cls, only_auth: bool) -> ExecutionMode:
        return cls.AUTH_ONLY if only_auth else cls.NORMAL
