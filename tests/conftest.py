"""
Shared fixtures for ledger tests.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from reading_credits.core.costs import DEFAULT_COST_TABLE
from reading_credits.core.quota import QuotaResetPolicy
from reading_credits.core.transactor import LedgerTransactor
from reading_credits.storage.ports import ProcedureBalancePort
from reading_credits.storage.repository import initialize_schema


class FixedClock:
    """Clock that only moves when told to."""
    
    def __init__(self, start: datetime):
        self.now = start
    
    def __call__(self) -> datetime:
        return self.now
    
    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def db_path():
    """Path to an initialized ledger database in a temporary directory."""
    temp_dir = tempfile.mkdtemp()
    path = os.path.join(temp_dir, "test.db")
    initialize_schema(path)
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def primary(db_path):
    return ProcedureBalancePort(db_path, reset_policy=QuotaResetPolicy())


@pytest.fixture
def transactor(primary, clock):
    return LedgerTransactor(DEFAULT_COST_TABLE, primary, clock=clock)
