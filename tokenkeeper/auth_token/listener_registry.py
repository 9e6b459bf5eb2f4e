"""Listener registration and synchronous state fan-out."""

from __future__ import annotations

import itertools
import logging
from typing import TYPE_CHECKING

from ..errors.handling import log_error
from .types import TokenListener, TokenState

if TYPE_CHECKING:
    from .coordinator import TokenCoordinator


class ListenerRegistry:
    """Ordered set of token state listeners keyed by subscription handle.

    Listeners survive session resets; only explicit ``unsubscribe`` removes
    them. Delivery follows subscription order.
    """

    def __init__(self, coordinator: TokenCoordinator) -> None:
        self.coordinator = coordinator
        # dict preserves insertion order, which fixes delivery order.
        self._listeners: dict[int, TokenListener] = {}
        self._handles = itertools.count(1)

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: TokenListener) -> int:
        """Register ``listener`` and return its subscription handle.

        If the coordinator already holds a published state the listener is
        invoked with it before being added, so a late subscriber never misses
        the current token.
        """
        current = self.coordinator.current_state
        if current is not None and not current.loading:
            self._deliver(listener, current)
        handle = next(self._handles)
        self._listeners[handle] = listener
        logging.debug(f"👂 Listener subscribed handle={handle} total={len(self._listeners)}")
        return handle

    def unsubscribe(self, handle: int) -> bool:
        """Remove the listener behind ``handle``; returns False if already gone."""
        removed = self._listeners.pop(handle, None) is not None
        if removed:
            logging.debug(
                f"🔕 Listener unsubscribed handle={handle} total={len(self._listeners)}"
            )
        return removed

    def publish(self, state: TokenState) -> None:
        """Invoke every registered listener with ``state`` in subscription order."""
        # Snapshot so listeners may (un)subscribe during delivery.
        for listener in list(self._listeners.values()):
            self._deliver(listener, state)

    @staticmethod
    def _deliver(listener: TokenListener, state: TokenState) -> None:
        try:
            listener(state)
        except Exception as e:  # noqa: BLE001 - one listener must not starve the rest
            log_error(
                "Token listener raised during delivery",
                e,
                context={"listener": getattr(listener, "__qualname__", repr(listener)), "state": state.describe()},
                level=logging.WARNING,
            )
