"""Single-resolution result shared by every ``get_token`` caller of a round."""

from __future__ import annotations

import asyncio
import logging
from typing import Generic, TypeVar

T = TypeVar("T")


class DeferredResult(Generic[T]):
    """Future resolved exactly once by its producer, awaited by many callers.

    Each instance is tagged with the session generation that created it so the
    coordinator can tell a live round from a superseded one without comparing
    object identity.
    """

    def __init__(self, generation: int) -> None:
        self.generation = generation
        self._future: asyncio.Future[T] = asyncio.get_running_loop().create_future()

    @property
    def resolved(self) -> bool:
        return self._future.done()

    def resolve(self, value: T) -> bool:
        """Resolve with ``value``; later calls are ignored.

        Returns:
            True if this call performed the resolution.
        """
        if self._future.done():
            logging.debug(
                f"🔁 Ignoring repeated resolution of deferred result generation={self.generation}"
            )
            return False
        self._future.set_result(value)
        return True

    def result(self) -> T:
        """Return the resolved value; raises ``asyncio.InvalidStateError`` if pending."""
        return self._future.result()

    async def wait(self) -> T:
        # shield: one caller's cancellation must not cancel the shared future
        return await asyncio.shield(self._future)

    def __await__(self):
        return self.wait().__await__()

    def __repr__(self) -> str:
        status = "resolved" if self.resolved else "pending"
        return f"DeferredResult(generation={self.generation}, {status})"
