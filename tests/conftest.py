from decimal import Decimal

import pytest

from fakes import ESCROW_AGENT, OWNER, FakeChain
from paytrail.core.config import Config
from paytrail.core.types import ServiceListing
from paytrail.escrow.manager import SessionManager
from paytrail.ledger.store import LedgerStore
from paytrail.reputation.engine import ReputationEngine
from paytrail.storage.memory import InMemoryStorage


@pytest.fixture
def config() -> Config:
    return Config(
        rpc_urls=("http://rpc.test",),
        start_block=1,
        max_blocks_per_run=100,
        escrow_agent_address=ESCROW_AGENT,
    )


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def store(storage) -> LedgerStore:
    return LedgerStore(storage)


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain(head=10)


@pytest.fixture
def service() -> ServiceListing:
    return ServiceListing(
        service_id="svc-translate",
        name="Translator",
        owner_address=OWNER,
        price_per_call=Decimal("0.01"),
        endpoint_url="http://translate.test",
        category="language",
    )


@pytest.fixture
def reputation(store) -> ReputationEngine:
    return ReputationEngine(store)


@pytest.fixture
def sessions(store, config) -> SessionManager:
    return SessionManager(store, config)
