"""Credential provider contract and the silent-then-interactive fetch policy."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from ..errors.handling import log_error
from ..errors.internal import ConsentRequiredError, SilentAuthRequiredError


@runtime_checkable
class CredentialProvider(Protocol):
    """What the coordinator requires of an identity-provider client.

    ``fetch_silently`` signals that user interaction is needed by raising
    ``SilentAuthRequiredError`` or ``ConsentRequiredError``; any other
    exception is treated as a terminal failure for the round.
    """

    def is_ready(self) -> bool: ...

    def is_authenticated(self) -> bool: ...

    async def fetch_silently(self, refresh: bool) -> str: ...

    async def fetch_interactively(self, refresh: bool) -> str: ...


INTERACTIVE_FALLBACK_ERRORS = (SilentAuthRequiredError, ConsentRequiredError)


async def fetch_token(provider: CredentialProvider, refresh: bool) -> str:
    """Fetch a token silently, falling back to interactive acquisition.

    Args:
        provider: Identity-provider client.
        refresh: Bypass the provider's token cache.

    Returns:
        The bearer token.

    Raises:
        Exception: Whatever the provider raised, except the two fallback
            signals from the silent path.
    """
    try:
        return await provider.fetch_silently(refresh)
    except INTERACTIVE_FALLBACK_ERRORS as e:
        log_error(
            "Silent token fetch needs user interaction; falling back to interactive fetch",
            e,
            context={"refresh": refresh, "code": getattr(e, "code", None)},
            level=logging.WARNING,
        )
    return await provider.fetch_interactively(refresh)
