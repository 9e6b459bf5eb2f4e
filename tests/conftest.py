from __future__ import annotations

import pytest
import pytest_asyncio

from tokenkeeper.auth_token.coordinator import TokenCoordinator
from tokenkeeper.config import ProviderConfig
from tokenkeeper.logging_config import error_aggregator

from tests.fixtures.token_fixtures import NOW, FakeProvider


@pytest.fixture(autouse=True)
def _reset_error_aggregator():
    yield
    error_aggregator.reset()


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        domain="idp.example",
        client_id="cid",
        audience="https://api.example",
    )


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest_asyncio.fixture
async def coordinator(provider, clock):
    coord = TokenCoordinator(provider, refresh_margin=60, fetch_timeout=None, clock=clock)
    yield coord
    await coord.stop()
