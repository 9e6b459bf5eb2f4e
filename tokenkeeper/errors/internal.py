"""Centralized internal error hierarchy.

These exceptions provide semantic categories for fallback and retry logic.
Only raise these inside application/network boundaries – never directly
surface raw aiohttp / JSON errors to the coordinator; wrap them instead.

Classes:
  InternalError            – Base for all internal errors.
  NetworkError             – Transient network/IO issues (safe to retry).
  OAuthError               – Authentication / authorization related failures.
  SilentAuthRequiredError  – Silent fetch impossible; interactive login needed.
  ConsentRequiredError     – User consent must be granted interactively.
  ParsingError             – Response parsing / schema validation issues.
  MalformedTokenError      – Access token lacks a decodable payload or claim.
  FetchTimeoutError        – Provider fetch exceeded the configured bound.
  ConfigError              – Invalid or missing configuration.
"""

from __future__ import annotations

from collections.abc import Mapping


class InternalError(Exception):
    """Base class for all internal application errors with metadata support.

    Attributes:
        data: Dictionary containing arbitrary structured context data.

    Args:
        message: Descriptive error message.
        data: Optional mapping of additional context data.
    """

    data: dict[str, object]

    def __init__(
        self, message: str, *, data: Mapping[str, object] | None = None
    ) -> None:
        super().__init__(message)
        # Copy into a plain dict to avoid unexpected mutations from caller.
        self.data = dict(data) if data else {}


class NetworkError(InternalError):
    """Exception raised for network or transport layer errors.

    This includes connection timeouts, resets and unexpected HTTP statuses
    from the identity provider that may be retried.
    """


class OAuthError(InternalError):
    """Exception raised for OAuth authentication or authorization failures.

    Args:
        message: Descriptive error message.
        code: OAuth ``error`` code reported by the provider, if any.
        data: Optional mapping of additional context data.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        data: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(message, data=data)
        self.code = code


class SilentAuthRequiredError(OAuthError):
    """Silent token acquisition is impossible without user interaction."""


class ConsentRequiredError(OAuthError):
    """The user must grant consent before a token can be issued."""


class ParsingError(InternalError):
    """Exception raised for response parsing or schema validation errors."""


class MalformedTokenError(ParsingError):
    """Access token payload cannot be decoded or lacks a required claim."""


class FetchTimeoutError(InternalError):
    """Provider fetch did not complete within the configured bound."""


class ConfigError(InternalError):
    """Configuration is missing or invalid."""


__all__ = [
    "InternalError",
    "NetworkError",
    "OAuthError",
    "SilentAuthRequiredError",
    "ConsentRequiredError",
    "ParsingError",
    "MalformedTokenError",
    "FetchTimeoutError",
    "ConfigError",
]
