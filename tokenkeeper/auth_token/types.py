"""Shared types for the auth_token module."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class Claims:
    """Facts extracted from an access token payload.

    Attributes:
        user_id: Namespaced user identifier claim.
    """

    user_id: str


@dataclass(frozen=True)
class TokenState:
    """Immutable snapshot of the coordinator's authoritative token state.

    Exactly one of three shapes is valid: ``token`` set (authenticated),
    ``error`` set (failed round), or neither (unauthenticated). ``loading``
    is a transient pre-state and never accompanies a token or an error.

    Attributes:
        loading: Provider has not yet reported readiness.
        token: Opaque bearer token.
        claims: Decoded claims, present only alongside ``token``.
        error: Failure that ended the round.
    """

    loading: bool = False
    token: str | None = None
    claims: Claims | None = None
    error: BaseException | None = None

    def __post_init__(self) -> None:
        if self.token is not None and self.error is not None:
            raise ValueError("TokenState cannot carry both a token and an error")
        if self.loading and (self.token is not None or self.error is not None):
            raise ValueError("loading TokenState cannot carry a token or an error")
        if self.claims is not None and self.token is None:
            raise ValueError("claims require a token")

    @property
    def authenticated(self) -> bool:
        return self.token is not None

    @property
    def user_id(self) -> str | None:
        return self.claims.user_id if self.claims else None

    def describe(self) -> str:
        """Short label used in log lines."""
        if self.loading:
            return "loading"
        if self.error is not None:
            return f"error:{type(self.error).__name__}"
        if self.token is not None:
            return "authenticated"
        return "unauthenticated"


LOADING_STATE = TokenState(loading=True)
UNAUTHENTICATED_STATE = TokenState()

TokenListener = Callable[[TokenState], None]
