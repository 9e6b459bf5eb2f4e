"""
Configuration constants for tokenkeeper

This module contains all tunable constants used throughout the application.
Each constant can be overridden by setting an environment variable with the same name.
"""

import os


def _get_env_int(name: str, default: int) -> int:
    """Retrieve an integer value from an environment variable.

    Attempts to parse the environment variable as an integer. If the variable
    is not set or cannot be parsed, prints a warning and returns the default value.

    Args:
        name: The name of the environment variable to read.
        default: The default integer value to return if parsing fails.

    Returns:
        The parsed integer value from the environment, or the default if unavailable.
    """
    value = os.getenv(name)
    if value is not None:
        try:
            return int(value)
        except ValueError:
            print(
                f"Warning: Invalid integer value for {name}='{value}', using default {default}"
            )
    return default


def _get_env_float(name: str, default: float) -> float:
    """Retrieve a float value from an environment variable.

    Attempts to parse the environment variable as a float. If the variable
    is not set or cannot be parsed, prints a warning and returns the default value.

    Args:
        name: The name of the environment variable to read.
        default: The default float value to return if parsing fails.

    Returns:
        The parsed float value from the environment, or the default if unavailable.
    """
    value = os.getenv(name)
    if value is not None:
        try:
            return float(value)
        except ValueError:
            print(
                f"Warning: Invalid float value for {name}='{value}', using default {default}"
            )
    return default


# Token refresh scheduling
TOKEN_REFRESH_MARGIN_SECONDS = _get_env_int(
    "TOKEN_REFRESH_MARGIN_SECONDS", 60
)  # Refresh this many seconds before the token's exp claim
TOKEN_FETCH_TIMEOUT_SECONDS = _get_env_float(
    "TOKEN_FETCH_TIMEOUT_SECONDS", 0.0
)  # Upper bound on a single provider fetch (0 disables the bound)

# Claims consumed from the access token payload
TOKEN_USER_CLAIMS_NAMESPACE = os.getenv(
    "TOKEN_USER_CLAIMS_NAMESPACE", "https://hasura.io/jwt/claims"
)
TOKEN_USER_ID_CLAIM = os.getenv("TOKEN_USER_ID_CLAIM", "x-hasura-user-id")

# Identity provider HTTP behaviour
IDP_HTTP_TIMEOUT_SECONDS = _get_env_float(
    "IDP_HTTP_TIMEOUT_SECONDS", 30.0
)  # Total timeout for a single token endpoint request
IDP_HTTP_MAX_ATTEMPTS = _get_env_int(
    "IDP_HTTP_MAX_ATTEMPTS", 3
)  # Attempts for transient network failures (1 disables retry)
IDP_HTTP_RETRY_MAX_WAIT = _get_env_float(
    "IDP_HTTP_RETRY_MAX_WAIT", 10.0
)  # Cap for exponential backoff between attempts

# Device authorization (interactive) flow
DEVICE_FLOW_POLL_INTERVAL = _get_env_int(
    "DEVICE_FLOW_POLL_INTERVAL", 5
)  # Seconds between token endpoint polls
DEVICE_FLOW_MAX_POLL_INTERVAL = _get_env_int(
    "DEVICE_FLOW_MAX_POLL_INTERVAL", 10
)  # Upper bound when the server asks us to slow down

# Error aggregation
ERROR_ALERT_BURST_COUNT = _get_env_int(
    "ERROR_ALERT_BURST_COUNT", 5
)  # Errors of one category inside the window that raise a critical alert
ERROR_ALERT_WINDOW_SECONDS = _get_env_float(
    "ERROR_ALERT_WINDOW_SECONDS", 300.0
)  # Sliding window for burst detection
