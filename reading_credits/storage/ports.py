"""
Balance ports.

A port is the single entry point through which the ledger changes a
balance. ``ProcedureBalancePort`` is the primary, linearizable adapter.
``LegacyBalancePort`` is a best-effort fallback: it reads the balance,
re-verifies it against the cost and writes the new absolute value in a
separate statement. Two concurrent debits on the same account can both
pass that check, so its results carry ``Consistency.BEST_EFFORT``.
"""

import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Sequence, TypeVar

from reading_credits.core.errors import StorageUnavailable
from reading_credits.core.quota import QuotaResetPolicy

from .db import DEFAULT_BUSY_TIMEOUT, DEFAULT_DB_PATH, get_connection
from .legacy import fetch_latest_legacy_row, pick_balance, write_legacy_balance
from .models import Account, Consistency, CreditResult, DebitResult, EntryKind, LedgerEntry
from .procedures import (
    INSUFFICIENT_FUNDS,
    credit_procedure,
    debit_procedure,
    set_quota_procedure,
)
from .repository import insert_ledger_entry, select_account, write_account

log = logging.getLogger(__name__)

T = TypeVar("T")


class BalancePort(ABC):
    """Balance contract shared by every storage adapter.
    
    Every method raises ``StorageUnavailable`` when the adapter cannot
    reach its storage or does not support the operation.
    """
    consistency = Consistency.ATOMIC
    
    @abstractmethod
    def debit(
        self,
        account_id: str,
        feature_key: str,
        cost: int,
        now: datetime
    ) -> DebitResult:
        """Check ``balance >= cost`` and decrement, or deny unchanged."""
    
    @abstractmethod
    def credit(
        self,
        account_id: str,
        amount: int,
        now: datetime,
        kind: EntryKind = EntryKind.CREDIT,
        note: Optional[str] = None,
        feature_key: Optional[str] = None
    ) -> CreditResult:
        """Add a signed amount, clamped so the balance stays non-negative."""
    
    @abstractmethod
    def set_quota(self, account_id: str, changes: Dict[str, Any], now: datetime) -> Account:
        """Edit quota/plan fields under the balance lock."""
    
    @abstractmethod
    def get_account(self, account_id: str) -> Optional[Account]:
        """Read the account row without creating it."""


class ProcedureBalancePort(BalancePort):
    """Primary adapter backed by the transactional procedures."""
    consistency = Consistency.ATOMIC
    
    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        reset_policy: Optional[QuotaResetPolicy] = None,
        retries: int = 3,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
        legacy_buckets: Sequence[str] = ()
    ):
        """Initialize the port.
        
        Args:
            db_path: Path to SQLite database file
            reset_policy: Quota reset policy applied inside each write
            retries: Attempts per call for transient errors
            busy_timeout: Seconds to wait on a locked database
            legacy_buckets: Legacy buckets whose newest row seeds the
                balance of an account created on first write
        """
        self.db_path = db_path
        self.reset_policy = reset_policy or QuotaResetPolicy()
        self.retries = max(int(retries), 1)
        self.busy_timeout = busy_timeout
        self.legacy_buckets = tuple(legacy_buckets)
    
    def _call(self, fn: Callable[[sqlite3.Connection], T], *, op: str, **ctx: Any) -> T:
        """Run a procedure on a fresh connection, retrying transient failures.
        
        Only ``OperationalError`` (locked database, I/O hiccups) is retried.
        A rolled-back attempt leaves no trace, so retrying is safe.
        """
        last_exc: Optional[BaseException] = None
        for attempt in range(1, self.retries + 1):
            try:
                conn = get_connection(self.db_path, self.busy_timeout)
                try:
                    result = fn(conn)
                finally:
                    conn.close()
                if attempt > 1:
                    log.info("ledger.db.retry_ok op=%s attempt=%s ctx=%s", op, attempt, ctx)
                return result
            except sqlite3.OperationalError as exc:
                last_exc = exc
                if attempt == self.retries:
                    break
                log.warning(
                    "ledger.db.retry op=%s attempt=%s error=%s ctx=%s", op, attempt, exc, ctx
                )
                time.sleep(min(0.2 * attempt, 1.0))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.DatabaseError as exc:
                raise StorageUnavailable(f"ledger {op} failed: {exc}") from exc
        raise StorageUnavailable(f"ledger {op} failed after {self.retries} attempts: {last_exc}") from last_exc
    
    def debit(
        self,
        account_id: str,
        feature_key: str,
        cost: int,
        now: datetime
    ) -> DebitResult:
        return self._call(
            lambda conn: debit_procedure(
                conn, account_id, feature_key, cost, now, self.reset_policy,
                legacy_buckets=self.legacy_buckets
            ),
            op="debit",
            user=account_id,
            feature=feature_key,
            cost=cost
        )
    
    def credit(
        self,
        account_id: str,
        amount: int,
        now: datetime,
        kind: EntryKind = EntryKind.CREDIT,
        note: Optional[str] = None,
        feature_key: Optional[str] = None
    ) -> CreditResult:
        return self._call(
            lambda conn: credit_procedure(
                conn, account_id, amount, now, self.reset_policy,
                kind=kind, note=note, feature_key=feature_key,
                legacy_buckets=self.legacy_buckets
            ),
            op="credit",
            user=account_id,
            amount=amount
        )
    
    def set_quota(self, account_id: str, changes: Dict[str, Any], now: datetime) -> Account:
        return self._call(
            lambda conn: set_quota_procedure(
                conn, account_id, changes, now, self.reset_policy,
                legacy_buckets=self.legacy_buckets
            ),
            op="set_quota",
            user=account_id
        )
    
    def get_account(self, account_id: str) -> Optional[Account]:
        return self._call(
            lambda conn: select_account(conn, account_id),
            op="get_account",
            user=account_id
        )


class LegacyBalancePort(BalancePort):
    """Best-effort read-then-write debit adapter.
    
    Writes ``credit_accounts.carry_balance`` when the account row exists,
    otherwise the balance column of the newest legacy ``credits`` row.
    Never creates rows. Only debits are supported.
    """
    consistency = Consistency.BEST_EFFORT
    
    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        buckets: Sequence[str] = (),
        reset_policy: Optional[QuotaResetPolicy] = None,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT
    ):
        self.db_path = db_path
        self.buckets = tuple(buckets)
        self.reset_policy = reset_policy or QuotaResetPolicy()
        self.busy_timeout = busy_timeout
    
    def _run(self, fn: Callable[[sqlite3.Connection], T], op: str) -> T:
        try:
            conn = get_connection(self.db_path, self.busy_timeout)
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"legacy {op} failed: {exc}") from exc
        try:
            return fn(conn)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"legacy {op} failed: {exc}") from exc
        finally:
            conn.close()
    
    def debit(
        self,
        account_id: str,
        feature_key: str,
        cost: int,
        now: datetime
    ) -> DebitResult:
        def operation(conn: sqlite3.Connection) -> DebitResult:
            account = select_account(conn, account_id)
            if account is not None:
                return self._debit_account(conn, account, feature_key, cost, now)
            return self._debit_legacy_row(conn, account_id, feature_key, cost, now)
        
        return self._run(operation, "debit")
    
    def credit(
        self,
        account_id: str,
        amount: int,
        now: datetime,
        kind: EntryKind = EntryKind.CREDIT,
        note: Optional[str] = None,
        feature_key: Optional[str] = None
    ) -> CreditResult:
        raise StorageUnavailable("credits require the atomic ledger port")
    
    def set_quota(self, account_id: str, changes: Dict[str, Any], now: datetime) -> Account:
        raise StorageUnavailable("quota edits require the atomic ledger port")
    
    def get_account(self, account_id: str) -> Optional[Account]:
        return self._run(lambda conn: select_account(conn, account_id), "get_account")
    
    def _denied(self, balance: int, feature_key: str, cost: int, replenished: int = 0) -> DebitResult:
        return DebitResult(
            granted=False,
            new_balance=balance,
            cost=cost,
            feature_key=feature_key,
            reason=INSUFFICIENT_FUNDS,
            consistency=self.consistency,
            replenished=replenished
        )
    
    def _debit_account(self, conn, account, feature_key, cost, now) -> DebitResult:
        outcome = self.reset_policy.apply_if_due(account, now)
        current = outcome.account
        if current.carry_balance < cost:
            if outcome.applied:
                write_account(conn, current)
            return self._denied(current.carry_balance, feature_key, cost, outcome.replenished)
        
        new_balance = current.carry_balance - cost
        write_account(conn, replace(current, carry_balance=new_balance, updated_at=now))
        insert_ledger_entry(conn, LedgerEntry(
            timestamp=now,
            account_id=account.user_id,
            kind=EntryKind.DEBIT,
            delta=-cost,
            resulting_balance=new_balance,
            feature_key=feature_key,
            consistency=self.consistency
        ))
        return DebitResult(
            granted=True,
            new_balance=new_balance,
            cost=cost,
            feature_key=feature_key,
            consistency=self.consistency,
            replenished=outcome.replenished
        )
    
    def _debit_legacy_row(self, conn, account_id, feature_key, cost, now) -> DebitResult:
        row = fetch_latest_legacy_row(conn, account_id, self.buckets)
        picked = pick_balance(row) if row else None
        if picked is None:
            return self._denied(0, feature_key, cost)
        
        column, balance = picked
        balance = max(balance, 0)
        if balance < cost:
            return self._denied(balance, feature_key, cost)
        
        new_balance = balance - cost
        try:
            write_legacy_balance(conn, row, column, new_balance)
        except ValueError as exc:
            raise StorageUnavailable(str(exc)) from exc
        insert_ledger_entry(conn, LedgerEntry(
            timestamp=now,
            account_id=account_id,
            kind=EntryKind.DEBIT,
            delta=-cost,
            resulting_balance=new_balance,
            feature_key=feature_key,
            note=f"legacy {row['bucket']}",
            consistency=self.consistency
        ))
        log.warning(
            "ledger.legacy.debit user=%s feature=%s cost=%s column=%s new=%s",
            account_id, feature_key, cost, column, new_balance
        )
        return DebitResult(
            granted=True,
            new_balance=new_balance,
            cost=cost,
            feature_key=feature_key,
            consistency=self.consistency
        )
