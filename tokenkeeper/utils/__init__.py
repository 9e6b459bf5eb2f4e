"""Utility functions package for tokenkeeper.

Exposed functions:
    format_duration: Formats time durations into human-readable strings.
    mask_token: Shortens a bearer token for log output.
"""

from .helpers import format_duration, mask_token

__all__ = ["format_duration", "mask_token"]
