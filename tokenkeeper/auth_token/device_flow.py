"""Device Authorization Grant used as the interactive token path"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import aiohttp

from ..config import ProviderConfig
from ..constants import (
    DEVICE_FLOW_MAX_POLL_INTERVAL,
    DEVICE_FLOW_POLL_INTERVAL,
    IDP_HTTP_TIMEOUT_SECONDS,
)
from ..errors.internal import NetworkError, OAuthError, ParsingError
from ..utils import format_duration

DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"


@dataclass(frozen=True)
class DeviceAuthorization:
    """Instructions the user must follow to approve the login."""

    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int
    verification_uri_complete: str | None = None


def log_device_prompt(auth: DeviceAuthorization) -> None:
    """Default prompt: surface the verification URL and code in the log."""
    target = auth.verification_uri_complete or auth.verification_uri
    logging.warning(
        f"🔐 Open {target} and enter code {auth.user_code} (expires in {format_duration(auth.expires_in)})"
    )


class DeviceCodeFlow:
    """Handles the OAuth Device Authorization Grant against the identity provider"""

    def __init__(
        self,
        config: ProviderConfig,
        session: aiohttp.ClientSession,
        prompt: Callable[[DeviceAuthorization], None] = log_device_prompt,
    ):
        """Initialize the device code flow handler.

        Args:
            config: Identity provider settings.
            session: Shared HTTP session.
            prompt: Callable presenting the verification instructions.
        """
        self.config = config
        self.session = session
        self.prompt = prompt
        self.poll_interval = DEVICE_FLOW_POLL_INTERVAL
        self.timeout = aiohttp.ClientTimeout(total=IDP_HTTP_TIMEOUT_SECONDS)

    async def request_device_code(self) -> DeviceAuthorization:
        """Request a device code for the configured client and audience.

        Raises:
            OAuthError: If the provider rejects the request.
            NetworkError: On transport failures.
            ParsingError: If the response lacks required fields.
        """
        data = {
            "client_id": self.config.client_id,
            "audience": self.config.audience,
            "scope": self.config.scope,
        }
        try:
            async with self.session.post(
                self.config.device_code_url, data=data, timeout=self.timeout
            ) as response:
                result = cast(dict[str, Any], await response.json())
                if response.status != 200:
                    code = result.get("error", "unknown")
                    raise OAuthError(
                        f"Device code request rejected (status={response.status}) error={code}",
                        code=code,
                        data={"status": response.status},
                    )
        except TimeoutError as e:
            raise NetworkError("Device code request timeout") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Network error requesting device code: {e}") from e
        try:
            auth = DeviceAuthorization(
                device_code=result["device_code"],
                user_code=result["user_code"],
                verification_uri=result["verification_uri"],
                expires_in=int(result["expires_in"]),
                interval=int(result.get("interval", self.poll_interval)),
                verification_uri_complete=result.get("verification_uri_complete"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ParsingError(f"Malformed device code response: {e}") from e
        logging.info(
            f"🔑 Device code retrieved successfully client_id={self.config.client_id} interval={auth.interval}"
        )
        return auth

    async def poll_for_tokens(self, auth: DeviceAuthorization) -> dict[str, Any]:
        """Poll the token endpoint until the user approves, denies or the code expires.

        Returns:
            Token endpoint JSON on approval.

        Raises:
            OAuthError: On denial, expiry or an unknown provider error.
            NetworkError: On transport failures.
        """
        data = {
            "client_id": self.config.client_id,
            "device_code": auth.device_code,
            "grant_type": DEVICE_GRANT_TYPE,
        }
        self.poll_interval = max(auth.interval, 0)
        start_time = time.monotonic()
        poll_count = 0

        while time.monotonic() - start_time < auth.expires_in:
            poll_count += 1
            elapsed = int(time.monotonic() - start_time)
            try:
                async with self.session.post(
                    self.config.token_url, data=data, timeout=self.timeout
                ) as response:
                    result = cast(dict[str, Any], await response.json())
                    status = response.status
            except TimeoutError as e:
                raise NetworkError("Device token poll timeout") from e
            except aiohttp.ClientError as e:
                raise NetworkError(f"Network error polling for tokens: {e}") from e

            if status == 200:
                logging.info(
                    f"Authorized after {format_duration(elapsed)} (polls={poll_count}) client_id={self.config.client_id}"
                )
                return result
            if status in (400, 403):
                self._handle_polling_error(result, elapsed, poll_count)
            else:
                raise NetworkError(
                    f"Unexpected device token response status={status}",
                    data={"status": status},
                )
            await asyncio.sleep(self.poll_interval)

        raise OAuthError(
            f"Device code expired after {format_duration(auth.expires_in)}",
            code="expired_token",
        )

    def _handle_polling_error(
        self, result: dict[str, Any], elapsed: int, poll_count: int
    ) -> None:
        """Continue polling for pending/slow_down, raise for terminal errors.

        Raises:
            OAuthError: For ``expired_token``, ``access_denied`` and unknown errors.
        """
        error = result.get("error", "unknown")
        error_description = result.get("error_description", "")

        if error != "authorization_pending":
            logging.debug(f"🧪 Polling error details logged details={str(result)}")

        if error == "authorization_pending":
            if poll_count % 6 == 0:
                logging.info(
                    f"Waiting for authorization {format_duration(elapsed)} elapsed polls={poll_count}"
                )
            return

        if error == "slow_down":
            self.poll_interval = min(self.poll_interval + 5, DEVICE_FLOW_MAX_POLL_INTERVAL)
            logging.warning(
                f"Server requested slower polling interval={self.poll_interval}s elapsed={elapsed} polls={poll_count}"
            )
            return

        if error == "expired_token":
            raise OAuthError(
                f"Device code expired after {format_duration(elapsed)} polls={poll_count}",
                code=error,
            )

        if error == "access_denied":
            raise OAuthError(
                f"User denied access elapsed={elapsed} polls={poll_count}", code=error
            )

        raise OAuthError(
            f"Device flow error: {error} {error_description}".strip(), code=error
        )

    async def get_user_tokens(self) -> dict[str, Any]:
        """Complete the full device flow: request code, prompt user, poll.

        Returns:
            Token endpoint JSON containing at least ``access_token``.
        """
        logging.info(
            f"Starting device authorization client_id={self.config.client_id} audience={self.config.audience}"
        )
        auth = await self.request_device_code()
        self.prompt(auth)
        token_data = await self.poll_for_tokens(auth)
        if not token_data.get("access_token"):
            raise ParsingError("Missing access_token in device flow response")
        logging.info("Tokens obtained through device authorization")
        return token_data
