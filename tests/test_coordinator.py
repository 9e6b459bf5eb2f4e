"""
Tests for TokenCoordinator session rounds, listeners and refresh scheduling.
"""

import asyncio
from unittest.mock import Mock

import pytest

from tests.fixtures.token_fixtures import NOW, USER_ID, FakeProvider, make_jwt
from tokenkeeper.auth_token.coordinator import TokenCoordinator
from tokenkeeper.auth_token.types import LOADING_STATE, UNAUTHENTICATED_STATE
from tokenkeeper.errors.internal import (
    ConfigError,
    ConsentRequiredError,
    FetchTimeoutError,
    MalformedTokenError,
    NetworkError,
    SilentAuthRequiredError,
)


def _held_fetch() -> asyncio.Future:
    return asyncio.get_running_loop().create_future()


class TestInitialState:
    @pytest.mark.asyncio
    async def test_starts_loading_with_pending_result(self, coordinator):
        assert coordinator.current_state is LOADING_STATE
        assert coordinator.generation == 0
        assert not coordinator.get_token().resolved
        assert not coordinator.scheduler.armed

    @pytest.mark.asyncio
    async def test_update_waits_for_provider_readiness(self, coordinator, provider):
        """Test nothing happens while the provider is still loading."""
        # Arrange
        provider.ready = False

        # Act
        await coordinator.update(refresh=False)

        # Assert
        assert provider.calls == []
        assert not coordinator.get_token().resolved
        assert coordinator.current_state is LOADING_STATE

    @pytest.mark.asyncio
    async def test_update_without_provider_is_noop(self, clock):
        coord = TokenCoordinator(None, clock=clock)

        await coord.update(refresh=True)

        assert not coord.get_token().resolved
        await coord.stop()


class TestUpdate:
    """Test class for the update round."""

    @pytest.mark.asyncio
    async def test_unauthenticated_resolves_empty_state(self, coordinator, provider):
        """Test an unauthenticated provider yields an empty state and no fetch."""
        # Arrange
        provider.authenticated = False
        listener = Mock()
        coordinator.subscribe(listener)

        # Act
        await coordinator.update(refresh=False)
        state = await coordinator.get_token()

        # Assert
        assert state == UNAUTHENTICATED_STATE
        assert state.token is None and state.error is None
        assert provider.calls == []
        listener.assert_called_once_with(UNAUTHENTICATED_STATE)
        assert not coordinator.scheduler.armed

    @pytest.mark.asyncio
    async def test_success_publishes_claims_and_arms_refresh(self, coordinator, provider):
        """Test a token expiring in 120s with a 60s margin refreshes in 60s."""
        # Arrange
        token = make_jwt(exp=NOW + 120)
        provider.silent = [token]
        listener = Mock()
        coordinator.subscribe(listener)

        # Act
        await coordinator.update(refresh=False)
        state = await coordinator.get_token()

        # Assert
        assert state.token == token
        assert state.user_id == USER_ID
        assert state.error is None
        listener.assert_called_once_with(state)
        assert coordinator.scheduler.armed
        assert coordinator.scheduler.delay == 60
        assert provider.calls == [("silent", False)]

    @pytest.mark.asyncio
    async def test_single_flight(self, coordinator, provider):
        """Test back-to-back updates during a fetch produce exactly one provider call."""
        # Arrange
        held = _held_fetch()
        provider.silent = [held]
        first = asyncio.create_task(coordinator.update(refresh=False))
        await asyncio.sleep(0)

        # Act
        await coordinator.update(refresh=False)
        held.set_result(make_jwt())
        await first

        # Assert
        assert provider.calls == [("silent", False)]
        assert (await coordinator.get_token()).authenticated

    @pytest.mark.asyncio
    async def test_completed_round_is_not_refetched(self, coordinator, provider):
        """Test a further non-refresh update reuses the resolved round."""
        # Arrange
        provider.silent = [make_jwt()]
        await coordinator.update(refresh=False)
        deferred = coordinator.get_token()

        # Act
        await coordinator.update(refresh=False)

        # Assert
        assert coordinator.get_token() is deferred
        assert provider.calls == [("silent", False)]

    @pytest.mark.asyncio
    async def test_consent_required_falls_back_to_interactive(self, coordinator, provider):
        """Test a consent-required silent failure is completed interactively."""
        # Arrange
        token = make_jwt()
        provider.silent = [ConsentRequiredError("consent", code="consent_required")]
        provider.interactive = [token]

        # Act
        await coordinator.update(refresh=False)
        state = await coordinator.get_token()

        # Assert
        assert state.token == token
        assert provider.calls == [("silent", False), ("interactive", False)]

    @pytest.mark.asyncio
    async def test_login_required_falls_back_with_refresh_flag(self, coordinator, provider):
        provider.silent = [SilentAuthRequiredError("login", code="login_required")]
        provider.interactive = [make_jwt()]

        await coordinator.update(refresh=True)

        assert provider.calls == [("silent", True), ("interactive", True)]

    @pytest.mark.asyncio
    async def test_other_errors_published_without_fallback(self, coordinator, provider):
        """Test a network failure is published as an error state."""
        # Arrange
        failure = NetworkError("idp unreachable")
        provider.silent = [failure]
        provider.interactive = [make_jwt()]

        # Act
        await coordinator.update(refresh=False)
        state = await coordinator.get_token()

        # Assert
        assert state.error is failure
        assert state.token is None
        assert provider.calls == [("silent", False)]
        assert not coordinator.scheduler.armed

    @pytest.mark.asyncio
    async def test_malformed_token_published_as_error(self, coordinator, provider):
        """Test a token without a decodable payload fails the round and arms nothing."""
        # Arrange
        provider.silent = ["not-a-jwt"]

        # Act
        await coordinator.update(refresh=False)
        state = await coordinator.get_token()

        # Assert
        assert isinstance(state.error, MalformedTokenError)
        assert not coordinator.scheduler.armed

    @pytest.mark.asyncio
    async def test_token_without_user_claim_is_error(self, coordinator, provider):
        provider.silent = [make_jwt(user_id=None)]

        await coordinator.update(refresh=False)

        assert isinstance(coordinator.current_state.error, MalformedTokenError)

    @pytest.mark.asyncio
    async def test_token_without_exp_is_error(self, coordinator, provider):
        provider.silent = [make_jwt(exp=None)]

        await coordinator.update(refresh=False)

        assert isinstance(coordinator.current_state.error, MalformedTokenError)
        assert not coordinator.scheduler.armed


class TestResetAndRounds:
    """Test class for session resets and round isolation."""

    @pytest.mark.asyncio
    async def test_reset_installs_pending_round(self, coordinator, provider):
        """Test get_token after reset returns an unresolved result."""
        # Arrange
        provider.silent = [make_jwt()]
        await coordinator.update(refresh=False)
        old = coordinator.get_token()

        # Act
        coordinator.reset()

        # Assert
        new = coordinator.get_token()
        assert new is not old
        assert old.resolved
        assert not new.resolved
        assert new.generation == old.generation + 1
        assert not coordinator.scheduler.armed
        assert not coordinator.fetch_in_flight

    @pytest.mark.asyncio
    async def test_reset_keeps_listeners_silent(self, coordinator, provider):
        provider.silent = [make_jwt()]
        listener = Mock()
        coordinator.subscribe(listener)
        await coordinator.update(refresh=False)
        listener.reset_mock()

        coordinator.reset()

        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_stale_round_isolation(self, coordinator, provider):
        """Test a fetch outlived by a reset resolves only its own round and arms nothing."""
        # Arrange
        held = _held_fetch()
        fresh = make_jwt(exp=NOW + 3600)
        provider.silent = [held, fresh]
        stale_task = asyncio.create_task(coordinator.update(refresh=False))
        await asyncio.sleep(0)
        stale_round = coordinator.get_token()

        coordinator.reset()
        await coordinator.update(refresh=False)
        live_round = coordinator.get_token()

        # Act
        stale = make_jwt(exp=NOW + 500)
        held.set_result(stale)
        await stale_task

        # Assert
        assert stale_round.result().token == stale
        assert live_round.result().token == fresh
        assert coordinator.scheduler.delay == 3540

    @pytest.mark.asyncio
    async def test_stale_completion_does_not_resolve_new_round(self, coordinator, provider):
        """Test the post-reset round stays pending when only the stale fetch finishes."""
        # Arrange
        held = _held_fetch()
        provider.silent = [held]
        stale_task = asyncio.create_task(coordinator.update(refresh=False))
        await asyncio.sleep(0)
        coordinator.reset()

        # Act
        held.set_result(make_jwt())
        await stale_task

        # Assert
        assert not coordinator.get_token().resolved
        assert not coordinator.scheduler.armed

    @pytest.mark.asyncio
    async def test_refresh_supersedes_in_flight_round(self, coordinator, provider):
        """Test update(refresh=True) during a fetch starts a new round."""
        # Arrange
        held = _held_fetch()
        refreshed = make_jwt(exp=NOW + 7200)
        provider.silent = [held, refreshed]
        first_task = asyncio.create_task(coordinator.update(refresh=False))
        await asyncio.sleep(0)
        first_round = coordinator.get_token()

        # Act
        await coordinator.update(refresh=True)
        second_round = coordinator.get_token()
        held.set_result(make_jwt(exp=NOW + 100))
        await first_task

        # Assert
        assert first_round is not second_round
        assert second_round.result().token == refreshed
        assert first_round.result().authenticated
        assert coordinator.generation == 1
        assert coordinator.scheduler.delay == 7140
        assert provider.calls == [("silent", False), ("silent", True)]

    @pytest.mark.asyncio
    async def test_at_most_one_resolution_per_round(self, coordinator, provider):
        """Test repeated unauthenticated rounds never re-resolve the same result."""
        # Arrange
        provider.authenticated = False
        await coordinator.update(refresh=False)
        deferred = coordinator.get_token()
        first = deferred.result()

        # Act
        provider.authenticated = True
        provider.silent = [make_jwt()]
        await coordinator.update(refresh=False)

        # Assert
        assert deferred.result() is first
        assert coordinator.current_state.authenticated

    @pytest.mark.asyncio
    async def test_timer_triggers_forced_refresh(self, coordinator, provider):
        """Test an elapsed refresh timer fetches with refresh=True in a new round."""
        # Arrange
        renewed = make_jwt(exp=NOW + 3600)
        provider.silent = [make_jwt(exp=NOW + 30), renewed]
        await coordinator.update(refresh=False)
        timer = coordinator.scheduler.task
        assert coordinator.scheduler.delay == 0

        # Act
        await timer

        # Assert
        assert provider.calls == [("silent", False), ("silent", True)]
        assert coordinator.generation == 1
        assert (await coordinator.get_token()).token == renewed
        assert coordinator.scheduler.delay == 3540


class TestListeners:
    @pytest.mark.asyncio
    async def test_replay_on_join(self, coordinator, provider):
        """Test a listener joining after a state exists receives it immediately."""
        # Arrange
        provider.silent = [make_jwt()]
        await coordinator.update(refresh=False)
        listener = Mock()

        # Act
        coordinator.subscribe(listener)

        # Assert
        listener.assert_called_once_with(coordinator.current_state)

    @pytest.mark.asyncio
    async def test_unsubscribed_listener_not_notified(self, coordinator, provider):
        provider.silent = [make_jwt()]
        listener = Mock()
        handle = coordinator.subscribe(listener)

        assert coordinator.unsubscribe(handle) is True
        await coordinator.update(refresh=False)

        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_fail_round(self, coordinator, provider):
        def broken(_state):
            raise RuntimeError("boom")

        provider.silent = [make_jwt()]
        coordinator.subscribe(broken)

        await coordinator.update(refresh=False)

        assert (await coordinator.get_token()).authenticated


class TestOptionalBehaviour:
    @pytest.mark.asyncio
    async def test_static_token_bypasses_provider(self, provider, clock):
        """Test a configured static token is published without fetching."""
        # Arrange
        coord = TokenCoordinator(provider, static_token="static-token", clock=clock)

        # Act
        await coord.update(refresh=False)
        state = await coord.get_token()

        # Assert
        assert state.token == "static-token"
        assert state.claims is None
        assert provider.calls == []
        assert not coord.scheduler.armed
        await coord.stop()

    @pytest.mark.asyncio
    async def test_fetch_timeout_publishes_timeout_error(self, provider, clock):
        """Test a fetch exceeding the configured bound fails the round."""
        # Arrange
        provider.silent = [_held_fetch()]
        coord = TokenCoordinator(provider, fetch_timeout=0.01, clock=clock)

        # Act
        await coord.update(refresh=False)
        state = await coord.get_token()

        # Assert
        assert isinstance(state.error, FetchTimeoutError)
        assert not coord.scheduler.armed
        await coord.stop()

    @pytest.mark.asyncio
    async def test_login_interactively(self, coordinator, provider):
        """Test interactive login resets the session and uses the interactive path."""
        # Arrange
        provider.silent = [NetworkError("offline")]
        await coordinator.update(refresh=False)
        failed_round = coordinator.get_token()
        token = make_jwt()
        provider.interactive = [token]

        # Act
        state = await coordinator.login_interactively()

        # Assert
        assert state.token == token
        assert failed_round.result().error is not None
        assert coordinator.get_token().result() is state
        assert provider.calls == [("silent", False), ("interactive", True)]
        assert coordinator.scheduler.armed

    @pytest.mark.asyncio
    async def test_login_interactively_requires_ready_provider(self, coordinator, provider):
        provider.ready = False

        with pytest.raises(ConfigError):
            await coordinator.login_interactively()

    @pytest.mark.asyncio
    async def test_attach_provider_takes_effect_on_next_update(self, clock):
        coord = TokenCoordinator(None, clock=clock)
        provider = FakeProvider(silent=[make_jwt()])

        coord.attach_provider(provider)
        await coord.update(refresh=False)

        assert coord.current_state.authenticated
        await coord.stop()


class TestLifecycle:
    """Test class for start, readiness notification and stop."""

    @pytest.mark.asyncio
    async def test_start_with_ready_provider_fetches(self, coordinator, provider):
        # Arrange
        provider.silent = [make_jwt()]

        # Act
        await coordinator.start()
        state = await coordinator.get_token()

        # Assert
        assert state.authenticated
        assert coordinator.running

    @pytest.mark.asyncio
    async def test_notify_provider_ready_runs_update(self, coordinator, provider):
        """Test readiness notification schedules a non-refresh update."""
        # Arrange
        provider.ready = False
        await coordinator.start()
        provider.ready = True
        provider.silent = [make_jwt()]

        # Act
        task = coordinator.notify_provider_ready()
        await task

        # Assert
        assert provider.calls == [("silent", False)]
        assert coordinator.current_state.authenticated

    @pytest.mark.asyncio
    async def test_start_registers_ready_callback(self, clock):
        """Test providers exposing add_ready_callback are hooked on start."""
        # Arrange
        provider = FakeProvider(ready=False)
        provider.add_ready_callback = Mock()
        coord = TokenCoordinator(provider, clock=clock)

        # Act
        await coord.start()

        # Assert
        provider.add_ready_callback.assert_called_once_with(coord.notify_provider_ready)
        await coord.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_outstanding_work(self, coordinator, provider):
        """Test stop cancels in-flight updates and the refresh timer."""
        # Arrange
        provider.silent = [_held_fetch()]
        task = coordinator.notify_provider_ready()
        await asyncio.sleep(0)

        # Act
        await coordinator.stop()
        await coordinator.stop()

        # Assert
        assert task.cancelled()
        assert not coordinator.scheduler.armed
        assert not coordinator.running
        assert not coordinator.fetch_in_flight

    @pytest.mark.asyncio
    async def test_restart_after_cancelled_fetch_runs_new_round(self, coordinator, provider):
        """Test a fetch cancelled by stop does not block the round after a restart."""
        # Arrange
        token = make_jwt()
        provider.silent = [_held_fetch(), token]
        await coordinator.start()
        await coordinator.stop()

        # Act
        await coordinator.start()
        state = await asyncio.wait_for(coordinator.get_token().wait(), timeout=1)

        # Assert
        assert state.token == token
        assert provider.calls == [("silent", False), ("silent", False)]
        assert coordinator.scheduler.armed

    @pytest.mark.asyncio
    async def test_restart_after_completed_round_rearms_refresh(self, coordinator, provider):
        """Test a restart fetches again so the refresh timer is armed anew."""
        # Arrange
        provider.silent = [make_jwt(), make_jwt(exp=NOW + 600)]
        await coordinator.start()
        await coordinator.get_token()
        await coordinator.stop()
        assert not coordinator.scheduler.armed

        # Act
        await coordinator.start()
        state = await coordinator.get_token()

        # Assert
        assert state.authenticated
        assert coordinator.scheduler.delay == 540
