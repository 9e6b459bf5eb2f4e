"""Token lifecycle coordinator."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from ..constants import (
    TOKEN_FETCH_TIMEOUT_SECONDS,
    TOKEN_REFRESH_MARGIN_SECONDS,
    TOKEN_USER_CLAIMS_NAMESPACE,
    TOKEN_USER_ID_CLAIM,
)
from ..errors.handling import log_error
from ..errors.internal import ConfigError, FetchTimeoutError
from ..utils import format_duration
from .claims import extract_claims, extract_expiry
from .deferred import DeferredResult
from .listener_registry import ListenerRegistry
from .provider import CredentialProvider, fetch_token
from .refresh_scheduler import RefreshScheduler
from .types import LOADING_STATE, UNAUTHENTICATED_STATE, TokenListener, TokenState


class TokenCoordinator:
    """Acquires, caches, distributes and proactively refreshes a bearer token.

    All session mutation happens on the event loop that runs the coordinator,
    which makes that loop the single owner of the session. Callers interact
    through ``get_token`` (awaitable), listeners, ``reset`` and
    ``notify_provider_ready``.

    Every session round is tagged with an integer generation. A fetch captures
    the round's ``DeferredResult`` when it starts and resolves exactly that
    one when it completes; it re-arms the refresh timer only if its generation
    is still the live one, so a fetch outlived by a ``reset`` cannot schedule
    refreshes for an abandoned session.
    """

    def __init__(
        self,
        provider: CredentialProvider | None = None,
        *,
        refresh_margin: float = TOKEN_REFRESH_MARGIN_SECONDS,
        fetch_timeout: float | None = TOKEN_FETCH_TIMEOUT_SECONDS or None,
        static_token: str | None = None,
        claims_namespace: str = TOKEN_USER_CLAIMS_NAMESPACE,
        user_id_claim: str = TOKEN_USER_ID_CLAIM,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Create a coordinator; must be called with a running event loop.

        Args:
            provider: Identity-provider client; may be attached later.
            refresh_margin: Seconds before ``exp`` at which to refresh.
            fetch_timeout: Optional bound on a single provider fetch.
            static_token: Fixed token published instead of contacting the
                provider (end-to-end test harnesses).
            claims_namespace: Claim holding the user id object.
            user_id_claim: Key of the user id inside ``claims_namespace``.
            clock: POSIX-seconds clock used for refresh scheduling.
        """
        self.provider = provider
        self.fetch_timeout = fetch_timeout
        self.static_token = static_token
        self.claims_namespace = claims_namespace
        self.user_id_claim = user_id_claim
        # Session
        self.current_state: TokenState = LOADING_STATE
        self.generation = 0
        self.pending: DeferredResult[TokenState] = DeferredResult(self.generation)
        self.fetch_in_flight = False
        # Composed components
        self.registry = ListenerRegistry(self)
        self.scheduler = RefreshScheduler(self, refresh_margin, clock)
        self._tasks: set[asyncio.Task[Any]] = set()
        self.running = False

    # --- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Hook into provider readiness and kick off the first round."""
        if self.running:
            return
        self.running = True
        add_ready_callback = getattr(self.provider, "add_ready_callback", None)
        if callable(add_ready_callback):
            add_ready_callback(self.notify_provider_ready)
        if self.provider is not None and self.provider.is_ready():
            self.notify_provider_ready()
        logging.debug("▶️ Started token coordinator")
        await asyncio.sleep(0)

    async def stop(self) -> None:
        """Cancel the refresh timer and any outstanding update rounds.

        The session is reset afterwards, so a later ``start`` runs a fresh
        round instead of waiting on a fetch that was cancelled here. Safe to
        call repeatedly and without a prior ``start``.
        """
        self.running = False
        await self.scheduler.shutdown()
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        if self.fetch_in_flight or self.pending.resolved:
            self.reset()
        logging.debug("⏹️ Stopped token coordinator")

    def attach_provider(self, provider: CredentialProvider | None) -> None:
        """Swap the identity-provider client; takes effect on the next update."""
        self.provider = provider

    # --- inbound API -------------------------------------------------------

    def subscribe(self, listener: TokenListener) -> int:
        return self.registry.subscribe(listener)

    def unsubscribe(self, handle: int) -> bool:
        return self.registry.unsubscribe(handle)

    def get_token(self) -> DeferredResult[TokenState]:
        """Return the current round's result; await it for a ``TokenState``.

        Never raises: failures are delivered as ``TokenState(error=...)``.
        """
        return self.pending

    def reset(self) -> None:
        """Start a new session round.

        Must be called before any flow that needs to bypass a cached or failed
        result, e.g. right before an interactive login. Listeners are kept and
        are not notified, because no new state exists yet.
        """
        self.scheduler.cancel()
        self.fetch_in_flight = False
        self.generation += 1
        self.pending = DeferredResult(self.generation)
        logging.debug(f"♻️ Token session reset generation={self.generation}")

    def notify_provider_ready(self) -> asyncio.Task[None]:
        """Signal that the provider left its loading phase.

        Schedules ``update(refresh=False)`` on the loop and returns the task.
        """
        return self._create_retained_task(self.update(refresh=False))

    async def login_interactively(self) -> TokenState:
        """Reset the session and acquire a token through the interactive path."""
        provider = self.provider
        if provider is None or not provider.is_ready():
            raise ConfigError("Identity provider is not ready for interactive login")
        self.reset()
        self.fetch_in_flight = True
        deferred = self.pending
        await self._complete_round(provider.fetch_interactively(True), deferred)
        return await deferred

    # --- session rounds ----------------------------------------------------

    async def update(self, refresh: bool) -> None:
        """Run one fetch round unless one is already running for this session.

        Args:
            refresh: Bypass the provider cache. A refresh always supersedes an
                in-flight round by resetting the session first.
        """
        provider = self.provider
        if provider is None or not provider.is_ready():
            logging.debug("⏳ Token update skipped: provider not ready")
            return

        if not provider.is_authenticated():
            logging.info("🔓 Provider reports no authenticated user")
            self._set_state(UNAUTHENTICATED_STATE, self.pending)
            return

        if self.fetch_in_flight:
            if not refresh:
                logging.debug(
                    f"🔂 Token fetch already requested generation={self.generation}"
                )
                return
            self.reset()

        self.fetch_in_flight = True
        deferred = self.pending

        if self.static_token:
            logging.info("🧪 Publishing configured static token")
            self._set_state(TokenState(token=self.static_token), deferred)
            return

        await self._complete_round(self._fetch(provider, refresh), deferred)

    async def _fetch(self, provider: CredentialProvider, refresh: bool) -> str:
        if not self.fetch_timeout:
            return await fetch_token(provider, refresh)
        try:
            return await asyncio.wait_for(
                fetch_token(provider, refresh), timeout=self.fetch_timeout
            )
        except TimeoutError as e:
            raise FetchTimeoutError(
                f"Token fetch exceeded {self.fetch_timeout}s",
                data={"refresh": refresh},
            ) from e

    async def _complete_round(
        self, fetch: Awaitable[str], deferred: DeferredResult[TokenState]
    ) -> None:
        try:
            token = await fetch
            claims = extract_claims(token, self.claims_namespace, self.user_id_claim)
            expiry = extract_expiry(token)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001 - every failure becomes published state
            log_error(
                "Token fetch round failed",
                e,
                context={"generation": deferred.generation},
            )
            self._set_state(TokenState(error=e), deferred)
            return

        self._set_state(TokenState(token=token, claims=claims), deferred)
        logging.info(
            f"🔑 Token acquired user_id={claims.user_id} valid_for={format_duration(max(0, expiry - self.scheduler.clock()))} generation={deferred.generation}"
        )
        if deferred.generation != self.generation:
            logging.info(
                f"🪦 Token round superseded; not scheduling refresh round={deferred.generation} live={self.generation}"
            )
            return
        self.scheduler.arm(token)

    def _set_state(
        self, state: TokenState, deferred: DeferredResult[TokenState]
    ) -> None:
        self.current_state = state
        self.registry.publish(state)
        deferred.resolve(state)

    def _create_retained_task(self, coro: Any) -> asyncio.Task[Any]:
        task: asyncio.Task[Any] = asyncio.create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc:
                log_error("Token update task failed", exc)

        task.add_done_callback(_done)
        return task
