"""Shared fixtures: a pinned clock, an in-memory store and an engine on top."""

from datetime import date
from decimal import Decimal

import pytest

from liquidity.audit import AuditLogger
from liquidity.clock import FixedClock
from liquidity.engine import ReconciliationEngine
from liquidity.queries import ForecastQueries
from liquidity.recurrence import OccurrenceGenerator
from liquidity.services.storage import InMemoryStore


@pytest.fixture
def clock():
    return FixedClock(date(2024, 1, 1))


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def engine(store, clock):
    return ReconciliationEngine(
        store=store,
        clock=clock,
        generator=OccurrenceGenerator(max_iterations=1000),
        audit_logger=AuditLogger(store.audit),
        horizon_months=12,
    )


@pytest.fixture
def queries(store):
    return ForecastQueries(store)


@pytest.fixture
def template_data():
    """Factory for valid template input; keyword overrides replace fields."""
    def make(**overrides):
        data = {
            "type": "payment",
            "amount": Decimal("100.00"),
            "currency": "EUR",
            "frequency": "monthly",
            "start_date": date(2024, 1, 1),
            "company_id": "company-1",
            "payee": "Landlord",
        }
        data.update(overrides)
        return data
    return make
