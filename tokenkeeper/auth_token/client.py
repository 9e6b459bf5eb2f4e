"""OAuth2 identity provider client implementing the credential provider contract."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, cast

import aiohttp

from ..config import ProviderConfig
from ..constants import IDP_HTTP_TIMEOUT_SECONDS, TOKEN_REFRESH_MARGIN_SECONDS
from ..errors.handling import retry_network
from ..errors.internal import (
    ConsentRequiredError,
    NetworkError,
    OAuthError,
    ParsingError,
    SilentAuthRequiredError,
)
from ..utils import format_duration
from .device_flow import DeviceAuthorization, DeviceCodeFlow, log_device_prompt
from .token_cache import CachedToken, TokenCache

# OAuth error codes meaning "the user has to be involved".
SILENT_AUTH_REQUIRED_CODES = frozenset(
    {"login_required", "interaction_required", "invalid_grant", "mfa_required"}
)
CONSENT_REQUIRED_CODES = frozenset({"consent_required"})


def classify_oauth_error(status: int, payload: dict[str, Any]) -> OAuthError:
    """Turn a token endpoint error response into the matching exception."""
    code = str(payload.get("error", "unknown"))
    description = payload.get("error_description", "")
    message = f"Token endpoint rejected request (status={status}) error={code} {description}".strip()
    data = {"status": status}
    if code in CONSENT_REQUIRED_CODES:
        return ConsentRequiredError(message, code=code, data=data)
    if code in SILENT_AUTH_REQUIRED_CODES:
        return SilentAuthRequiredError(message, code=code, data=data)
    return OAuthError(message, code=code, data=data)


class OAuthTokenClient:
    """Client for silent (refresh token) and interactive (device flow) token fetches.

    The client starts in a loading phase; ``load`` reads the persisted cache,
    marks the client ready and invokes the registered ready callbacks, which is
    how the coordinator learns it can start its first round.
    """

    def __init__(
        self,
        config: ProviderConfig,
        http_session: aiohttp.ClientSession,
        *,
        cache: TokenCache | None = None,
        prompt: Callable[[DeviceAuthorization], None] = log_device_prompt,
        refresh_margin: float = TOKEN_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the client.

        Args:
            config: Identity provider settings.
            http_session: HTTP session for token endpoint requests.
            cache: Token cache; defaults to ``config.cache_file``.
            prompt: Presents device flow instructions to the user.
            refresh_margin: Cached access tokens closer than this to expiry
                are not served from the cache.
            clock: POSIX-seconds clock.
        """
        if http_session is None:
            raise TypeError("http_session cannot be None")
        self.config = config
        self.session = http_session
        self.cache = cache if cache is not None else TokenCache(config.cache_file)
        self.device_flow = DeviceCodeFlow(config, http_session, prompt)
        self.refresh_margin = refresh_margin
        self.clock = clock
        self.tokens = CachedToken()
        self._loading = True
        self._ready_callbacks: list[Callable[[], Any]] = []

    # --- readiness -----------------------------------------------------------

    def add_ready_callback(self, callback: Callable[[], Any]) -> None:
        """Register ``callback`` to run every time the client becomes ready."""
        self._ready_callbacks.append(callback)

    async def load(self) -> None:
        """Leave the loading phase after reading the token cache."""
        self._loading = True
        self.tokens = await self.cache.load()
        self._loading = False
        remaining = self._remaining_seconds()
        logging.info(
            f"📦 Identity provider client ready authenticated={self.is_authenticated()} cached_access_remaining={format_duration(remaining)}"
        )
        self._fire_ready()

    def is_ready(self) -> bool:
        return not self._loading

    def is_authenticated(self) -> bool:
        if self.tokens.refresh_token:
            return True
        remaining = self._remaining_seconds()
        return bool(self.tokens.access_token) and remaining is not None and remaining > 0

    async def logout(self) -> None:
        """Forget every cached token and notify listeners via readiness callbacks."""
        self.tokens = CachedToken()
        await self.cache.clear()
        logging.info("🚪 Identity provider cache cleared")
        self._fire_ready()

    # --- credential provider contract ----------------------------------------

    async def fetch_silently(self, refresh: bool) -> str:
        """Return a token without user interaction.

        Serves the cached access token unless ``refresh`` is set or it is
        within the refresh margin of expiry; otherwise redeems the refresh
        token.

        Raises:
            SilentAuthRequiredError: No refresh token, or the provider demands login.
            ConsentRequiredError: The provider demands consent.
            OAuthError: Any other provider rejection.
            NetworkError: Transport failures after retries.
        """
        if not refresh and self._cached_access_usable():
            logging.debug("📦 Serving cached access token")
            return cast(str, self.tokens.access_token)
        refresh_token = self.tokens.refresh_token
        if not refresh_token:
            raise SilentAuthRequiredError(
                "No refresh token cached; login required", code="login_required"
            )
        data = {
            "grant_type": "refresh_token",
            "client_id": self.config.client_id,
            "refresh_token": refresh_token,
            "audience": self.config.audience,
        }
        payload = await retry_network(
            lambda: self._token_request(data), context="silent token refresh"
        )
        return await self._store(payload)

    async def fetch_interactively(self, refresh: bool) -> str:
        """Acquire a token through the device authorization grant.

        ``refresh`` is accepted for contract symmetry; an interactive login
        always yields a freshly issued token.
        """
        logging.info(f"🙋 Interactive token fetch requested refresh={refresh}")
        payload = await self.device_flow.get_user_tokens()
        return await self._store(payload)

    # --- internals -----------------------------------------------------------

    async def _token_request(self, data: dict[str, str]) -> dict[str, Any]:
        """POST to the token endpoint and return the JSON body on success.

        Raises:
            OAuthError: (or subclass) on responses carrying an OAuth error and
                on a bare 401.
            NetworkError: On timeouts, transport errors and any other status.
            ParsingError: If a success response is not JSON.
        """
        timeout = aiohttp.ClientTimeout(total=IDP_HTTP_TIMEOUT_SECONDS)
        try:
            async with self.session.post(
                self.config.token_url, data=data, timeout=timeout
            ) as resp:
                if resp.status == 200:
                    try:
                        return cast(dict[str, Any], await resp.json())
                    except (aiohttp.ContentTypeError, ValueError) as e:
                        raise ParsingError(f"Token response is not JSON: {e}") from e
                if resp.status == 429 or resp.status >= 500:
                    raise NetworkError(
                        f"HTTP {resp.status} from token endpoint",
                        data={"status": resp.status},
                    )
                try:
                    body = cast(dict[str, Any], await resp.json())
                except (aiohttp.ContentTypeError, ValueError):
                    body = {}
                if isinstance(body, dict) and "error" in body:
                    raise classify_oauth_error(resp.status, body)
                if resp.status == 401:
                    raise OAuthError("Unauthorized at token endpoint", data={"status": 401})
                raise NetworkError(
                    f"Unexpected HTTP {resp.status} from token endpoint",
                    data={"status": resp.status},
                )
        except TimeoutError as e:
            raise NetworkError("Token endpoint timeout") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Network error at token endpoint: {e}") from e

    async def _store(self, payload: dict[str, Any]) -> str:
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ParsingError("Missing access_token in token response")
        expires_in = payload.get("expires_in")
        lifetime = float(expires_in) if isinstance(expires_in, int | float) else None
        expires_at = self.clock() + lifetime if lifetime is not None else None
        self.tokens = CachedToken(
            access_token=access_token,
            # Providers without rotation omit refresh_token; keep the old one.
            refresh_token=payload.get("refresh_token") or self.tokens.refresh_token,
            expires_at=expires_at,
        )
        await self.cache.save(self.tokens)
        logging.info(
            f"✅ Token issued (lifetime {format_duration(lifetime)}) rotated_refresh={'refresh_token' in payload}"
        )
        return access_token

    def _remaining_seconds(self) -> float | None:
        if self.tokens.expires_at is None:
            return None
        return self.tokens.expires_at - self.clock()

    def _cached_access_usable(self) -> bool:
        remaining = self._remaining_seconds()
        return (
            bool(self.tokens.access_token)
            and remaining is not None
            and remaining > self.refresh_margin
        )

    def _fire_ready(self) -> None:
        for callback in list(self._ready_callbacks):
            try:
                callback()
            except Exception as e:  # noqa: BLE001
                logging.warning(
                    f"⚠️ Ready callback failed type={type(e).__name__} error={str(e)}"
                )
