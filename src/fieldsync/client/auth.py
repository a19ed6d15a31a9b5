"""Bearer token acquisition.

Credential handling lives outside fieldsync; the transfer machinery only
needs something that returns a bearer token string.
"""

from __future__ import annotations

import os
from typing import Protocol

TOKEN_ENV_VAR = "FIELDSYNC_TOKEN"


class TokenError(Exception):
    """Raised when no bearer token can be obtained."""


class TokenProvider(Protocol):
    """Anything able to hand out a bearer token."""

    def get_token(self) -> str:
        """Return a bearer token, or raise TokenError."""
        ...


class StaticTokenProvider:
    """Token provider returning a fixed token (config file or environment)."""

    def __init__(self, token: str | None) -> None:
        self._token = token

    @classmethod
    def from_env(cls, fallback: str | None = None) -> StaticTokenProvider:
        """Prefer the FIELDSYNC_TOKEN environment variable over ``fallback``."""
        return cls(os.environ.get(TOKEN_ENV_VAR) or fallback)

    def get_token(self) -> str:
        if not self._token:
            raise TokenError(
                f"No auth token configured (set auth_token or {TOKEN_ENV_VAR})"
            )
        return self._token
