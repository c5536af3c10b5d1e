"""
Shared fixtures: a frozen clock and a ProtectService wired to in-memory
collaborators.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from protect.config import ProtectConfig
from protect.core import InMemoryAdjudicationClient, InMemoryLedgerClient, ProtectService
from protect.db.store import InMemoryRecordStore

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store(clock):
    return InMemoryRecordStore(clock=clock)


@pytest.fixture
def ledger():
    return InMemoryLedgerClient()


@pytest.fixture
def adjudication():
    return InMemoryAdjudicationClient()


@pytest.fixture
def config():
    return ProtectConfig()


@pytest.fixture
def service(store, ledger, adjudication, config, clock):
    return ProtectService(
        store=store,
        ledger=ledger,
        adjudication=adjudication,
        config=config,
        clock=clock,
    )


@pytest.fixture
def pricing_context():
    return {
        "asset_valuation_micros": 100_000_000,
        "security_level": "VERIFIED",
        "last_verified_service_days": 30,
        "transit_damage_history": False,
    }


@pytest.fixture
def quote_request():
    return {
        "asset_id": "asset-7f3a",
        "coverage_type": "ALL_RISK",
        "term_days": 365,
    }


@pytest.fixture
def quote(service, pricing_context, quote_request):
    return service.rate_quote(pricing_context, quote_request)


@pytest.fixture
def policy(service, quote):
    """ACTIVE policy bound to anchor-1."""
    return service.bind_policy({
        "quote_id": str(quote.id),
        "owner_id": "owner-42",
        "anchor_id": "anchor-1",
    })


@pytest.fixture
def client(service):
    from protect.main import create_app

    with TestClient(create_app(service)) as test_client:
        yield test_client
