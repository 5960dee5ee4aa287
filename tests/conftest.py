# -*- coding: utf-8 -*-
"""
Pytest Configuration and Fixtures
=================================

Shared fixtures for the metering/billing test suite.
"""

import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

# Set test environment
os.environ["TESTING"] = "1"

from meterflow.events import EventBus
from meterflow.storage import MemoryStore, SqlStore
from meterflow.billing.meters import MeterRegistry
from meterflow.billing.metering import UsageMeteringService
from meterflow.billing.aggregation import UsageAggregatorService
from meterflow.billing.metered_billing import MeteredBillingService


class FakeClock:
    """Controllable replacement for datetime.now"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FlakyStore(MemoryStore):
    """MemoryStore whose reads/writes can be switched to fail"""

    def __init__(self):
        super().__init__()
        self.fail_reads = False
        self.fail_writes = False
        self.write_calls = 0

    async def items(self, prefix):
        if self.fail_reads:
            raise ConnectionError("store unavailable")
        return await super().items(prefix)

    async def put_many(self, items):
        self.write_calls += 1
        if self.fail_writes:
            raise ConnectionError("store unavailable")
        await super().put_many(items)


# =============================================================================
# INFRASTRUCTURE FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    """Clock fixed at 2024-06-15 10:30 (a Saturday)"""
    return FakeClock(datetime(2024, 6, 15, 10, 30))


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def registry():
    return MeterRegistry.default()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def flaky_store():
    return FlakyStore()


@pytest_asyncio.fixture
async def sql_store():
    """SqlStore over an in-memory SQLite database"""
    store = SqlStore(url="sqlite+aiosqlite:///:memory:")
    await store.init()
    yield store
    await store.close()


# =============================================================================
# SERVICE FIXTURES
# =============================================================================

@pytest.fixture
def metering(bus, registry, clock):
    return UsageMeteringService(bus, registry=registry, clock=clock, buffer_size=1000)


@pytest.fixture
def aggregator(bus, registry, clock):
    return UsageAggregatorService(bus, registry=registry, clock=clock)


@pytest.fixture
def billing(aggregator, bus, clock):
    return MeteredBillingService(aggregator, bus, clock=clock)
