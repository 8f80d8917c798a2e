"""
Data models for storage layer.

Defines the account row, ledger entries and the typed results that
leave the storage boundary.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class EntryKind(Enum):
    """Kind of state change recorded in the ledger."""
    DEBIT = "debit"
    CREDIT = "credit"
    ADJUSTMENT = "adjustment"


class Consistency(Enum):
    """Guarantee under which a balance change was applied."""
    ATOMIC = "atomic"            # linearizable, single storage transaction
    BEST_EFFORT = "best_effort"  # read-then-write, admits a narrow race


@dataclass(frozen=True)
class Account:
    """Credit-bearing account, one per user.
    
    ``daily_quota`` and ``monthly_quota`` set to None mean no periodic
    allotment for that period.
    """
    user_id: str
    carry_balance: int = 0
    daily_quota: Optional[int] = None
    monthly_quota: Optional[int] = None
    next_reset_at: Optional[datetime] = None
    plan: str = "prepaid"
    updated_at: Optional[datetime] = None
    
    def __post_init__(self):
        """Validate the non-negative invariants."""
        if self.carry_balance < 0:
            raise ValueError("carry_balance cannot be negative")
        if self.daily_quota is not None and self.daily_quota < 0:
            raise ValueError("daily_quota cannot be negative")
        if self.monthly_quota is not None and self.monthly_quota < 0:
            raise ValueError("monthly_quota cannot be negative")


@dataclass(frozen=True)
class Balance:
    """Usable balance resolved from one of the storage shapes."""
    account_id: str
    amount: int
    source: str
    plan: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of one applied balance change.
    
    Append-only: once written, entries are never modified.
    """
    timestamp: datetime
    account_id: str
    kind: EntryKind
    delta: int
    resulting_balance: int
    feature_key: Optional[str] = None
    note: Optional[str] = None
    consistency: Consistency = Consistency.ATOMIC


@dataclass(frozen=True)
class DebitResult:
    """Outcome of a debit attempt.
    
    A denial is an ordinary outcome: ``granted`` is False, ``reason`` is
    ``INSUFFICIENT_FUNDS`` and ``new_balance`` is the unchanged balance.
    """
    granted: bool
    new_balance: int
    cost: int
    feature_key: str
    reason: Optional[str] = None
    consistency: Consistency = Consistency.ATOMIC
    replenished: int = 0


@dataclass(frozen=True)
class CreditResult:
    """Outcome of an unconditional credit."""
    new_balance: int
    old_balance: int
    applied_delta: int
