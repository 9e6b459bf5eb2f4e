"""Proactive refresh timer for the coordinator's current token."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from ..constants import TOKEN_REFRESH_MARGIN_SECONDS
from ..utils import format_duration
from .claims import extract_expiry

if TYPE_CHECKING:
    from .coordinator import TokenCoordinator


def compute_refresh_delay(expiry: float, margin: float, now: float) -> float:
    """Seconds until ``margin`` seconds before ``expiry``, never negative."""
    return max(0.0, (expiry - margin) - now)


class RefreshScheduler:
    """Arms a single one-shot timer that forces a token refresh before expiry.

    Arming replaces any previously armed timer. The timer task detaches
    itself before calling back into the coordinator, so a ``cancel`` issued
    from inside that refresh (the coordinator resets its session) never
    cancels the running refresh.
    """

    def __init__(
        self,
        coordinator: TokenCoordinator,
        margin_seconds: float = TOKEN_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.coordinator = coordinator
        self.margin_seconds = margin_seconds
        self.clock = clock
        self.task: asyncio.Task[Any] | None = None
        self.delay: float | None = None
        # Timer task that already fired and is now running the refresh.
        self._firing: asyncio.Task[Any] | None = None

    @property
    def armed(self) -> bool:
        return self.task is not None and not self.task.done()

    def arm(self, token: str) -> float:
        """Schedule ``update(refresh=True)`` shortly before ``token`` expires.

        Returns:
            The delay in seconds until the refresh fires.

        Raises:
            MalformedTokenError: If the token has no decodable ``exp`` claim.
        """
        expiry = extract_expiry(token)
        delay = compute_refresh_delay(expiry, self.margin_seconds, self.clock())
        self.cancel()
        self.delay = delay
        self.task = asyncio.create_task(self._fire_after(delay))
        logging.info(
            f"⏰ Token refresh scheduled in {format_duration(delay)} delay_seconds={delay:.1f} margin={self.margin_seconds}"
        )
        return delay

    def cancel(self) -> None:
        """Cancel the armed timer, if any."""
        task = self.task
        self.task = None
        self.delay = None
        if task is None or task.done():
            return
        task.cancel()
        logging.debug("⏹️ Cancelled scheduled token refresh")

    async def _fire_after(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logging.debug("Token refresh timer cancelled before firing")
            raise
        current = asyncio.current_task()
        if self.task is not current:
            # Superseded between wake-up and now; the newer timer owns refresh.
            return
        self.task = None
        self.delay = None
        self._firing = current
        logging.info("🔄 Token refresh timer fired; forcing fresh token fetch")
        try:
            await self.coordinator.update(refresh=True)
        finally:
            if self._firing is current:
                self._firing = None

    async def shutdown(self) -> None:
        """Cancel the armed timer and any refresh it already started."""
        self.cancel()
        firing = self._firing
        self._firing = None
        if firing is None or firing.done() or firing is asyncio.current_task():
            return
        firing.cancel()
        try:
            await firing
        except asyncio.CancelledError:
            pass
