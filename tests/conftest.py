"""
Pytest configuration for photoledger tests.
Points the data directory at a temp dir and keeps storage in memory.
"""

import os
import tempfile

# Must be set before any photoledger imports
_test_data_dir = tempfile.mkdtemp(prefix="photoledger_test_")
os.environ.setdefault("PHOTOLEDGER_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("PHOTOLEDGER_STORAGE_BACKEND", "memory")
os.environ.setdefault("PHOTOLEDGER_LOG_DIRECTORY", os.path.join(_test_data_dir, "logs"))

from datetime import datetime, timedelta, timezone

import pytest

from photoledger.core.errors.registry import error_registry
from photoledger.services.credit_ledger import CreditLedger
from photoledger.services.ledger_store import MemoryLedgerStore
from photoledger.services.subscription_machine import SubscriptionStateMachine

error_registry.load()

T0 = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock; every call returns the same instant until advanced."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger_store():
    return MemoryLedgerStore()


@pytest.fixture
def ledger(ledger_store, clock):
    return CreditLedger(ledger_store, clock=clock)


@pytest.fixture
def subscriptions(ledger, ledger_store, clock):
    return SubscriptionStateMachine(ledger, ledger_store, clock=clock, rollover_on_active_renewal=False)
