"""
Repository pattern for data access.

Handles schema creation, account rows and the append-only ledger.
Functions taking a ``conn`` run inside the caller's transaction; the
others open and close their own connection.
"""

import sqlite3
from datetime import datetime, timezone
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import Account, Consistency, EntryKind, LedgerEntry

ACCOUNT_COLUMNS = (
    "user_id, carry_balance, daily_quota, monthly_quota, "
    "next_reset_at, plan, updated_at"
)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger tables and views if they don't exist.
    
    ``credit_accounts`` is the primary ledger row, ``credits`` is the
    legacy balance table kept for backward-compatible reads and
    ``ledger_event`` is the append-only audit trail.
    
    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS credit_accounts (
                user_id TEXT PRIMARY KEY,
                carry_balance INTEGER NOT NULL DEFAULT 0 CHECK (carry_balance >= 0),
                daily_quota INTEGER CHECK (daily_quota IS NULL OR daily_quota >= 0),
                monthly_quota INTEGER CHECK (monthly_quota IS NULL OR monthly_quota >= 0),
                next_reset_at TEXT,
                plan TEXT NOT NULL DEFAULT 'prepaid',
                updated_at TEXT
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS credits (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                bucket TEXT NOT NULL,
                remaining_total INTEGER,
                remaining INTEGER,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_credits_user_created_at
                ON credits(user_id, created_at DESC)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS ledger_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                account_id TEXT NOT NULL,
                kind TEXT NOT NULL CHECK (kind IN ('debit', 'credit', 'adjustment')),
                delta INTEGER NOT NULL,
                feature_key TEXT,
                note TEXT,
                resulting_balance INTEGER NOT NULL,
                consistency TEXT NOT NULL DEFAULT 'atomic'
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_ledger_event_account
                ON ledger_event(account_id, id DESC)
        """)
        conn.execute("""
            CREATE VIEW IF NOT EXISTS v_credit_balance AS
                SELECT user_id, carry_balance, plan, updated_at
                  FROM credit_accounts
        """)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def row_to_account(row: sqlite3.Row) -> Account:
    """Build an Account from a ``credit_accounts`` row."""
    return Account(
        user_id=row["user_id"],
        carry_balance=int(row["carry_balance"]),
        daily_quota=row["daily_quota"],
        monthly_quota=row["monthly_quota"],
        next_reset_at=from_iso(row["next_reset_at"]),
        plan=row["plan"],
        updated_at=from_iso(row["updated_at"])
    )


def select_account(conn: sqlite3.Connection, user_id: str) -> Optional[Account]:
    """Read one account row, or None when it doesn't exist."""
    row = conn.execute(
        f"SELECT {ACCOUNT_COLUMNS} FROM credit_accounts WHERE user_id = ?",
        (user_id,)
    ).fetchone()
    return row_to_account(row) if row else None


def ensure_account(conn: sqlite3.Connection, user_id: str, carry_balance: int = 0) -> Account:
    """Read an account row, lazily creating it.

    ``carry_balance`` is only used when the row does not exist yet.
    """
    conn.execute(
        "INSERT OR IGNORE INTO credit_accounts (user_id, carry_balance, updated_at) VALUES (?, ?, ?)",
        (user_id, carry_balance, to_iso(utcnow()))
    )
    account = select_account(conn, user_id)
    if account is None:
        raise sqlite3.DatabaseError(f"credit account {user_id} vanished after insert")
    return account


def write_account(conn: sqlite3.Connection, account: Account) -> None:
    """Overwrite every mutable field of an account row."""
    conn.execute("""
        UPDATE credit_accounts
           SET carry_balance = ?,
               daily_quota = ?,
               monthly_quota = ?,
               next_reset_at = ?,
               plan = ?,
               updated_at = ?
         WHERE user_id = ?
    """, (
        account.carry_balance,
        account.daily_quota,
        account.monthly_quota,
        to_iso(account.next_reset_at),
        account.plan,
        to_iso(account.updated_at or utcnow()),
        account.user_id
    ))


def insert_ledger_entry(conn: sqlite3.Connection, entry: LedgerEntry) -> None:
    """Append a ledger entry. No UPDATE or DELETE is ever issued on this table."""
    conn.execute("""
        INSERT INTO ledger_event
        (timestamp, account_id, kind, delta, feature_key, note,
         resulting_balance, consistency)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        to_iso(entry.timestamp),
        entry.account_id,
        entry.kind.value,
        entry.delta,
        entry.feature_key,
        entry.note,
        entry.resulting_balance,
        entry.consistency.value
    ))


def insert_legacy_credit(
    user_id: str,
    remaining_total: Optional[int],
    bucket: str = "tarot",
    remaining: Optional[int] = None,
    created_at: Optional[datetime] = None,
    db_path: str = DEFAULT_DB_PATH
) -> None:
    """Insert a row into the legacy ``credits`` table.
    
    Only used to seed data that predates ``credit_accounts``.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO credits (user_id, bucket, remaining_total, remaining, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (user_id, bucket, remaining_total, remaining, to_iso(created_at or utcnow())))
    finally:
        conn.close()


class LedgerRepository:
    """Read-only access to accounts and ledger history.
    
    Writes go through the balance ports; this class never mutates rows.
    """
    
    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.
        
        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
    
    def get_account(self, user_id: str) -> Optional[Account]:
        """Get an account row without creating it."""
        conn = get_connection(self.db_path)
        try:
            return select_account(conn, user_id)
        finally:
            conn.close()
    
    def list_accounts(self, limit: int = 100) -> List[Account]:
        """Get account rows ordered by user id."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {ACCOUNT_COLUMNS} FROM credit_accounts ORDER BY user_id LIMIT ?",
                (limit,)
            ).fetchall()
            return [row_to_account(row) for row in rows]
        finally:
            conn.close()

    def get_history(
        self,
        account_id: str,
        kind: Optional[EntryKind] = None,
        limit: int = 50
    ) -> List[LedgerEntry]:
        """Get recent ledger entries for an account.
        
        Args:
            account_id: Account to read
            kind: Optional filter on entry kind
            limit: Maximum number of entries to return
            
        Returns:
            Ledger entries ordered newest first
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT timestamp, account_id, kind, delta, feature_key, note,
                       resulting_balance, consistency
                FROM ledger_event
                WHERE account_id = ?
            """
            params: list = [account_id]
            if kind is not None:
                query += " AND kind = ?"
                params.append(kind.value)
            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)
            
            entries = []
            for row in conn.execute(query, params).fetchall():
                entries.append(LedgerEntry(
                    timestamp=from_iso(row["timestamp"]),
                    account_id=row["account_id"],
                    kind=EntryKind(row["kind"]),
                    delta=row["delta"],
                    resulting_balance=row["resulting_balance"],
                    feature_key=row["feature_key"],
                    note=row["note"],
                    consistency=Consistency(row["consistency"])
                ))
            return entries
        finally:
            conn.close()
