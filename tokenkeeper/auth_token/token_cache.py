"""File-backed cache for the provider's tokens.

Blocking file IO runs inside ``run_in_executor`` so the event loop driving
the coordinator never stalls on disk.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError, field_validator

from ..errors.handling import log_error


class CachedToken(BaseModel):
    """Tokens held by the provider client between fetches.

    Attributes:
        access_token: Last issued access token, if any.
        refresh_token: Refresh token enabling silent renewal.
        expires_at: POSIX seconds at which ``access_token`` expires.
    """

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: float | None = None

    @field_validator("access_token", "refresh_token", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        return v or None

    @field_validator("expires_at", mode="before")
    @classmethod
    def numeric_expiry(cls, v: Any) -> Any:
        # bool is an int subclass and never a valid instant
        if isinstance(v, bool) or not isinstance(v, int | float):
            return None
        return float(v)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CachedToken:
        return cls.model_validate(raw)


class TokenCache:
    """Persist ``CachedToken`` as JSON; a ``None`` path keeps it in memory only."""

    def __init__(self, path: str | os.PathLike[str] | None = None) -> None:
        self.path = Path(path) if path else None
        self._lock = asyncio.Lock()

    async def load(self) -> CachedToken:
        if self.path is None:
            return CachedToken()
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._read)

    async def save(self, entry: CachedToken) -> None:
        if self.path is None:
            return
        async with self._lock:
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self._write, entry.model_dump())
            except OSError as e:
                # The in-memory cache stays authoritative; next save retries.
                log_error("Token cache write failed", e, context={"path": str(self.path)}, level=logging.WARNING)

    async def clear(self) -> None:
        if self.path is None:
            return
        async with self._lock:
            try:
                self.path.unlink(missing_ok=True)
            except OSError as e:
                log_error("Token cache removal failed", e, context={"path": str(self.path)}, level=logging.WARNING)

    def _read(self) -> CachedToken:
        assert self.path is not None
        try:
            with self.path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            logging.debug(f"📭 No token cache file path={self.path}")
            return CachedToken()
        except (OSError, ValueError) as e:
            log_error("Token cache unreadable; starting empty", e, context={"path": str(self.path)}, level=logging.WARNING)
            return CachedToken()
        if not isinstance(raw, dict):
            logging.warning(f"⚠️ Token cache has unexpected shape path={self.path}")
            return CachedToken()
        try:
            return CachedToken.from_dict(raw)
        except ValidationError as e:
            log_error("Token cache entry invalid; starting empty", e, context={"path": str(self.path)}, level=logging.WARNING)
            return CachedToken()

    def _write(self, payload: dict[str, Any]) -> None:
        assert self.path is not None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".tokencache-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except OSError:
            with suppress(FileNotFoundError):
                os.unlink(tmp)
            raise
