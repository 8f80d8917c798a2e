"""
Server-side balance procedures.

Each procedure runs as one ``BEGIN IMMEDIATE`` transaction on a single
connection, so every read-check-write on ``credit_accounts`` is
serialized against every other writer of the same database. These are
the only functions that change ``carry_balance`` atomically.
"""

import sqlite3
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Sequence, TypeVar

from reading_credits.core.quota import QuotaResetPolicy, ResetOutcome

from .legacy import read_legacy_balance
from .models import Account, CreditResult, DebitResult, EntryKind, LedgerEntry
from .repository import ensure_account, insert_ledger_entry, select_account, to_iso, write_account

T = TypeVar("T")

INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
QUOTA_FIELDS = ("daily_quota", "monthly_quota", "plan")


def run_in_transaction(conn: sqlite3.Connection, fn: Callable[[sqlite3.Connection], T]) -> T:
    """Run ``fn`` inside an immediate write transaction.
    
    The reserved lock is taken before the first read, so no other writer
    can interleave between the read and the write inside ``fn``.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        result = fn(conn)
        conn.commit()
        return result
    except Exception:
        conn.rollback()
        raise


def open_account(
    conn: sqlite3.Connection,
    account_id: str,
    now: datetime,
    legacy_buckets: Sequence[str] = ()
) -> Account:
    """Read the account row, creating it on first use.
    
    A new row opens with the balance of the newest legacy ``credits`` row
    in ``legacy_buckets``, so a balance the read path reports stays
    spendable once the account moves to ``credit_accounts``.
    """
    account = select_account(conn, account_id)
    if account is not None:
        return account
    legacy = read_legacy_balance(conn, account_id, legacy_buckets)
    opening = legacy.amount if legacy else 0
    account = ensure_account(conn, account_id, carry_balance=opening)
    if opening:
        insert_ledger_entry(conn, LedgerEntry(
            timestamp=now,
            account_id=account_id,
            kind=EntryKind.CREDIT,
            delta=opening,
            resulting_balance=account.carry_balance,
            note="opening balance from legacy credits"
        ))
    return account


def _apply_reset(
    conn: sqlite3.Connection,
    account: Account,
    policy: QuotaResetPolicy,
    now: datetime
) -> ResetOutcome:
    outcome = policy.apply_if_due(account, now)
    if not outcome.applied:
        return outcome
    write_account(conn, outcome.account)
    if outcome.replenished:
        insert_ledger_entry(conn, LedgerEntry(
            timestamp=now,
            account_id=account.user_id,
            kind=EntryKind.CREDIT,
            delta=outcome.replenished,
            resulting_balance=outcome.account.carry_balance,
            note=f"quota reset ({outcome.period.value})"
        ))
    return outcome


def debit_procedure(
    conn: sqlite3.Connection,
    account_id: str,
    feature_key: str,
    cost: int,
    now: datetime,
    policy: QuotaResetPolicy,
    legacy_buckets: Sequence[str] = ()
) -> DebitResult:
    """Apply any due quota reset, then check and decrement the balance.
    
    A denial commits the reset (if one fired) and leaves the balance
    otherwise unchanged.
    """
    def operation(conn: sqlite3.Connection) -> DebitResult:
        account = open_account(conn, account_id, now, legacy_buckets)
        outcome = _apply_reset(conn, account, policy, now)
        balance = outcome.account.carry_balance
        
        if balance < cost:
            return DebitResult(
                granted=False,
                new_balance=balance,
                cost=cost,
                feature_key=feature_key,
                reason=INSUFFICIENT_FUNDS,
                replenished=outcome.replenished
            )
        
        cursor = conn.execute("""
            UPDATE credit_accounts
               SET carry_balance = carry_balance - ?,
                   updated_at = ?
             WHERE user_id = ? AND carry_balance >= ?
        """, (cost, to_iso(now), account_id, cost))
        if cursor.rowcount != 1:
            return DebitResult(
                granted=False,
                new_balance=balance,
                cost=cost,
                feature_key=feature_key,
                reason=INSUFFICIENT_FUNDS,
                replenished=outcome.replenished
            )
        
        new_balance = balance - cost
        if cost:
            insert_ledger_entry(conn, LedgerEntry(
                timestamp=now,
                account_id=account_id,
                kind=EntryKind.DEBIT,
                delta=-cost,
                resulting_balance=new_balance,
                feature_key=feature_key
            ))
        return DebitResult(
            granted=True,
            new_balance=new_balance,
            cost=cost,
            feature_key=feature_key,
            replenished=outcome.replenished
        )
    
    return run_in_transaction(conn, operation)


def credit_procedure(
    conn: sqlite3.Connection,
    account_id: str,
    amount: int,
    now: datetime,
    policy: QuotaResetPolicy,
    kind: EntryKind = EntryKind.CREDIT,
    note: Optional[str] = None,
    feature_key: Optional[str] = None,
    legacy_buckets: Sequence[str] = ()
) -> CreditResult:
    """Add a signed amount to the balance, never going below zero.
    
    A due quota reset is applied first so the credit lands on top of the
    replenished balance.
    """
    def operation(conn: sqlite3.Connection) -> CreditResult:
        account = open_account(conn, account_id, now, legacy_buckets)
        outcome = _apply_reset(conn, account, policy, now)
        old_balance = outcome.account.carry_balance
        new_balance = max(old_balance + amount, 0)
        applied_delta = new_balance - old_balance
        
        write_account(conn, replace(outcome.account, carry_balance=new_balance, updated_at=now))
        insert_ledger_entry(conn, LedgerEntry(
            timestamp=now,
            account_id=account_id,
            kind=kind,
            delta=applied_delta,
            resulting_balance=new_balance,
            feature_key=feature_key,
            note=note
        ))
        return CreditResult(
            new_balance=new_balance,
            old_balance=old_balance,
            applied_delta=applied_delta
        )
    
    return run_in_transaction(conn, operation)


def set_quota_procedure(
    conn: sqlite3.Connection,
    account_id: str,
    changes: Dict[str, Any],
    now: datetime,
    policy: QuotaResetPolicy,
    legacy_buckets: Sequence[str] = ()
) -> Account:
    """Update quota and plan fields under the same lock as balance writes.
    
    The balance is not touched; the next reset is computed from the new
    quota values.
    """
    unknown = set(changes) - set(QUOTA_FIELDS)
    if unknown:
        raise ValueError(f"Unknown account fields: {unknown}")
    
    def operation(conn: sqlite3.Connection) -> Account:
        account = open_account(conn, account_id, now, legacy_buckets)
        updated = policy.reschedule(replace(account, updated_at=now, **changes), now)
        write_account(conn, updated)
        return updated
    
    return run_in_transaction(conn, operation)
