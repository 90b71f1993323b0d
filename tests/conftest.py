import pytest

from fakes import FakeChainClient, make_chain
from infra.metrics import METRICS


@pytest.fixture
def fake_client() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def chain():
    return make_chain()


@pytest.fixture(autouse=True)
def _reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()
