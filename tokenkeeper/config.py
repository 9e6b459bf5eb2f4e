"""Identity provider configuration loaded from the environment."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors.internal import ConfigError

_TRUTHY = ("true", "1", "yes")
DEFAULT_SCOPE = "openid profile offline_access"


class ProviderConfig(BaseModel):
    """Settings for the OAuth2 identity provider and the coordinator.

    Attributes:
        domain: Identity provider host, e.g. ``tenant.us.auth0.com``; an
            explicit ``http(s)://`` prefix is kept.
        client_id: Public OAuth client id.
        audience: API audience requested for access tokens.
        scope: Space separated scopes; ``offline_access`` yields refresh tokens.
        cache_file: JSON file persisting the provider's token cache.
        static_token: Token published verbatim instead of contacting the provider.
    """

    model_config = ConfigDict(frozen=True)

    domain: str
    client_id: str
    audience: str
    scope: str = Field(default=DEFAULT_SCOPE)
    cache_file: str | None = None
    static_token: str | None = None

    @field_validator("domain", "client_id", "audience")
    @classmethod
    def validate_required(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("must not be empty")
        return stripped

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, v: str) -> str:
        """Drop trailing slashes so URLs can be joined with ``/oauth/...``."""
        domain = v.rstrip("/")
        if not domain or any(ch.isspace() for ch in domain):
            raise ValueError("must be a host name or base URL")
        return domain

    @field_validator("scope", mode="before")
    @classmethod
    def default_blank_scope(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return DEFAULT_SCOPE
        return v

    @field_validator("cache_file", "static_token", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def base_url(self) -> str:
        if self.domain.startswith(("http://", "https://")):
            return self.domain
        return f"https://{self.domain}"

    @property
    def token_url(self) -> str:
        return f"{self.base_url}/oauth/token"

    @property
    def device_code_url(self) -> str:
        return f"{self.base_url}/oauth/device/code"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ProviderConfig:
        """Validate ``data`` into a config.

        Raises:
            ConfigError: Listing every field that failed validation.
        """
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            invalid = [str(err["loc"][0]) for err in e.errors() if err["loc"]]
            raise ConfigError(
                f"Invalid identity provider settings: {', '.join(invalid)}",
                data={"invalid": invalid},
            ) from e

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ProviderConfig:
        """Build and validate a config from ``TOKENKEEPER_*`` variables.

        When ``TOKENKEEPER_E2E_TEST`` is truthy the client id comes from
        ``TOKENKEEPER_TEST_CLIENT_ID``, because end-to-end runs use a separate
        provider application.
        """
        env = os.environ if environ is None else environ
        client_id = env.get("TOKENKEEPER_CLIENT_ID", "")
        if env.get("TOKENKEEPER_E2E_TEST", "").lower() in _TRUTHY:
            client_id = env.get("TOKENKEEPER_TEST_CLIENT_ID", "")
            logging.info("🧪 End-to-end test mode: using test client id")
        return cls.from_dict(
            {
                "domain": env.get("TOKENKEEPER_DOMAIN", ""),
                "client_id": client_id,
                "audience": env.get("TOKENKEEPER_AUDIENCE", ""),
                "scope": env.get("TOKENKEEPER_SCOPE"),
                "cache_file": env.get("TOKENKEEPER_CACHE_FILE"),
                "static_token": env.get("TOKENKEEPER_STATIC_TOKEN"),
            }
        )
