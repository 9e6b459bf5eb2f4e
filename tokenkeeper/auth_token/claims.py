"""Unverified JWT payload decoding.

Signature verification is the resource server's job; the coordinator only
needs the expiry instant and the namespaced user id to schedule refreshes and
label state.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from ..constants import TOKEN_USER_CLAIMS_NAMESPACE, TOKEN_USER_ID_CLAIM
from ..errors.internal import MalformedTokenError
from .types import Claims


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def decode_payload(token: str) -> dict[str, Any]:
    """Return the JSON payload of a compact JWS without verifying it.

    Raises:
        MalformedTokenError: If the token is not three dot-separated segments
            or the payload is not a base64url-encoded JSON object.
    """
    if not isinstance(token, str):
        raise MalformedTokenError("Token is not a string")
    parts = token.split(".")
    if len(parts) != 3:
        raise MalformedTokenError(
            "Token is not a compact JWT", data={"segments": len(parts)}
        )
    try:
        payload = json.loads(_decode_segment(parts[1]))
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        raise MalformedTokenError(f"Token payload is not decodable: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedTokenError("Token payload is not a JSON object")
    return payload


def extract_expiry(token: str) -> float:
    """Return the ``exp`` claim as POSIX seconds.

    Raises:
        MalformedTokenError: If the claim is absent or not numeric.
    """
    exp = decode_payload(token).get("exp")
    # bool is an int subclass; a boolean exp is a data-contract violation
    if isinstance(exp, bool) or not isinstance(exp, int | float):
        raise MalformedTokenError("Token has no numeric exp claim", data={"exp": exp})
    return float(exp)


def extract_claims(
    token: str,
    namespace: str = TOKEN_USER_CLAIMS_NAMESPACE,
    user_id_claim: str = TOKEN_USER_ID_CLAIM,
) -> Claims:
    """Extract the namespaced user id from ``token``.

    Raises:
        MalformedTokenError: If the namespace object or user id claim is missing.
    """
    scoped = decode_payload(token).get(namespace)
    user_id = scoped.get(user_id_claim) if isinstance(scoped, dict) else None
    if not isinstance(user_id, str) or not user_id:
        raise MalformedTokenError(
            "Token has no user id claim",
            data={"namespace": namespace, "claim": user_id_claim},
        )
    return Claims(user_id=user_id)
