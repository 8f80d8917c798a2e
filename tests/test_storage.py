"""
Unit tests for storage layer.

Tests schema creation, account rows, the append-only ledger, legacy
balance normalisation and balance resolution.
"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest

from reading_credits.core.errors import StorageUnavailable
from reading_credits.core.reader import BalanceReader
from reading_credits.storage.db import get_connection
from reading_credits.storage.legacy import coerce_balance, pick_balance, write_legacy_balance
from reading_credits.storage.models import Account, Consistency, EntryKind, LedgerEntry
from reading_credits.storage.ports import ProcedureBalancePort
from reading_credits.storage.procedures import open_account, run_in_transaction
from reading_credits.storage.repository import (
    LedgerRepository,
    ensure_account,
    initialize_schema,
    insert_ledger_entry,
    insert_legacy_credit,
    write_account
)

LEGACY_BUCKETS = ("tarot_3", "tarot")


class TestStorageSchema:
    """Test database schema creation and structure."""
    
    def test_schema_creation(self):
        """Verify tables and view are created."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            
            conn = get_connection(db_path)
            try:
                names = {
                    row[0] for row in conn.execute(
                        "SELECT name FROM sqlite_master WHERE type IN ('table', 'view')"
                    )
                }
                assert {"credit_accounts", "credits", "ledger_event", "v_credit_balance"} <= names
                
                columns = [col[1] for col in conn.execute("PRAGMA table_info(credit_accounts)")]
                assert columns == [
                    'user_id', 'carry_balance', 'daily_quota', 'monthly_quota',
                    'next_reset_at', 'plan', 'updated_at'
                ]
            finally:
                conn.close()
    
    def test_schema_creation_is_idempotent(self, db_path):
        initialize_schema(db_path)
        initialize_schema(db_path)
    
    def test_negative_balance_rejected_by_storage(self, db_path):
        conn = get_connection(db_path)
        try:
            ensure_account(conn, "u1")
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("UPDATE credit_accounts SET carry_balance = -1 WHERE user_id = 'u1'")
        finally:
            conn.close()


class TestAccountRows:
    """Test account row helpers."""
    
    def test_ensure_account_creates_default_row(self, db_path):
        conn = get_connection(db_path)
        try:
            account = ensure_account(conn, "u1")
        finally:
            conn.close()
        
        assert account.carry_balance == 0
        assert account.daily_quota is None
        assert account.monthly_quota is None
        assert account.next_reset_at is None
        assert account.plan == "prepaid"
    
    def test_write_account_round_trip(self, db_path):
        reset_at = datetime(2024, 2, 1, tzinfo=timezone.utc)
        conn = get_connection(db_path)
        try:
            ensure_account(conn, "u1")
            write_account(conn, Account(
                user_id="u1", carry_balance=9, daily_quota=10,
                next_reset_at=reset_at, plan="daily"
            ))
        finally:
            conn.close()
        
        account = LedgerRepository(db_path).get_account("u1")
        assert account.carry_balance == 9
        assert account.daily_quota == 10
        assert account.next_reset_at == reset_at
        assert account.plan == "daily"
    
    def test_opening_balance_only_used_on_create(self, db_path):
        conn = get_connection(db_path)
        try:
            first = ensure_account(conn, "u1", carry_balance=4)
            second = ensure_account(conn, "u1", carry_balance=9)
        finally:
            conn.close()
        
        assert first.carry_balance == 4
        assert second.carry_balance == 4
    
    def test_open_account_seeds_from_legacy_row(self, db_path):
        insert_legacy_credit("old", remaining_total=6, bucket="tarot", db_path=db_path)
        now = datetime(2024, 1, 15, tzinfo=timezone.utc)
        conn = get_connection(db_path)
        try:
            account = run_in_transaction(
                conn, lambda c: open_account(c, "old", now, LEGACY_BUCKETS)
            )
        finally:
            conn.close()
        
        assert account.carry_balance == 6
        entry = LedgerRepository(db_path).get_history("old")[0]
        assert entry.delta == 6
        assert entry.kind == EntryKind.CREDIT
    
    def test_list_accounts_ordered_by_id(self, db_path):
        conn = get_connection(db_path)
        try:
            for user_id in ("carol", "alice", "bob"):
                ensure_account(conn, user_id)
        finally:
            conn.close()
        
        repository = LedgerRepository(db_path)
        assert [a.user_id for a in repository.list_accounts()] == ["alice", "bob", "carol"]
        assert len(repository.list_accounts(limit=2)) == 2
    
    def test_get_account_does_not_create(self, db_path):
        assert LedgerRepository(db_path).get_account("missing") is None
    
    def test_account_model_rejects_negative_balance(self):
        with pytest.raises(ValueError, match="carry_balance cannot be negative"):
            Account(user_id="u1", carry_balance=-1)


class TestLedgerHistory:
    """Test the append-only ledger."""
    
    def test_history_newest_first(self, db_path):
        conn = get_connection(db_path)
        try:
            for delta, balance in ((5, 5), (-1, 4), (-1, 3)):
                insert_ledger_entry(conn, LedgerEntry(
                    timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
                    account_id="u1",
                    kind=EntryKind.CREDIT if delta > 0 else EntryKind.DEBIT,
                    delta=delta,
                    resulting_balance=balance,
                    feature_key=None if delta > 0 else "threeCards"
                ))
        finally:
            conn.close()
        
        history = LedgerRepository(db_path).get_history("u1")
        assert [e.resulting_balance for e in history] == [3, 4, 5]
        assert history[0].kind == EntryKind.DEBIT
        assert history[0].consistency == Consistency.ATOMIC
        assert history[-1].kind == EntryKind.CREDIT
    
    def test_history_filters(self, db_path):
        conn = get_connection(db_path)
        try:
            for i, kind in enumerate((EntryKind.CREDIT, EntryKind.DEBIT, EntryKind.ADJUSTMENT)):
                insert_ledger_entry(conn, LedgerEntry(
                    timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
                    account_id="u1", kind=kind, delta=1, resulting_balance=i
                ))
        finally:
            conn.close()
        
        repository = LedgerRepository(db_path)
        assert len(repository.get_history("u1", kind=EntryKind.DEBIT)) == 1
        assert len(repository.get_history("u1", limit=2)) == 2
        assert repository.get_history("u2") == []


class TestLegacyNormalisation:
    """Test balance field normalisation for the legacy schema."""
    
    def test_coerce_balance(self):
        assert coerce_balance(7) == 7
        assert coerce_balance(7.0) == 7
        assert coerce_balance(" 3 ") == 3
        assert coerce_balance(None) is None
        assert coerce_balance(True) is None
        assert coerce_balance("abc") is None
        assert coerce_balance(float("nan")) is None
        assert coerce_balance(float("inf")) is None
    
    def test_pick_balance_order(self):
        assert pick_balance({"carry_balance": 4, "balance": 9}) == ("carry_balance", 4)
        assert pick_balance({"remaining_total": None, "remaining": 6}) == ("remaining", 6)
        assert pick_balance({"credit": "2"}) == ("credit", 2)
    
    def test_pick_balance_nothing_numeric(self):
        assert pick_balance({"balance": "n/a", "bucket": "tarot"}) is None
        assert pick_balance({}) is None
    
    def test_only_balance_columns_are_writable(self):
        conn = Mock()
        with pytest.raises(ValueError, match="not writable"):
            write_legacy_balance(conn, {"id": 1}, "credit", 3)
        conn.execute.assert_not_called()


class TestBalanceReader:
    """Test balance resolution order and degradation."""
    
    def test_absent_account_is_zero(self, db_path):
        balance = BalanceReader(db_path, LEGACY_BUCKETS).resolve("nobody")
        assert balance.amount == 0
        assert balance.source == "none"
    
    def test_primary_row_wins(self, db_path):
        conn = get_connection(db_path)
        try:
            ensure_account(conn, "u1")
            conn.execute("UPDATE credit_accounts SET carry_balance = 8 WHERE user_id = 'u1'")
        finally:
            conn.close()
        insert_legacy_credit("u1", remaining_total=50, db_path=db_path)
        
        balance = BalanceReader(db_path, LEGACY_BUCKETS).resolve("u1")
        assert balance.amount == 8
        assert balance.source == "credit_accounts"
        assert balance.plan == "prepaid"
    
    def test_view_used_when_primary_source_fails(self, db_path):
        conn = get_connection(db_path)
        try:
            ensure_account(conn, "u1")
            conn.execute("UPDATE credit_accounts SET carry_balance = 6 WHERE user_id = 'u1'")
        finally:
            conn.close()
        
        reader = BalanceReader(db_path, LEGACY_BUCKETS)
        with patch.object(
            BalanceReader, "_from_account_row",
            side_effect=sqlite3.OperationalError("disk I/O error")
        ):
            balance = reader.resolve("u1")
        
        assert balance.amount == 6
        assert balance.source == "v_credit_balance"
    
    def test_legacy_latest_row(self, db_path):
        insert_legacy_credit(
            "u1", remaining_total=2, bucket="tarot",
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc), db_path=db_path
        )
        insert_legacy_credit(
            "u1", remaining_total=None, remaining=5, bucket="tarot_3",
            created_at=datetime(2024, 1, 2, tzinfo=timezone.utc), db_path=db_path
        )
        
        balance = BalanceReader(db_path, LEGACY_BUCKETS).resolve("u1")
        assert balance.amount == 5
        assert balance.source == "credits_fallback"
    
    def test_legacy_ignores_other_buckets(self, db_path):
        insert_legacy_credit("u1", remaining_total=40, bucket="palm", db_path=db_path)
        assert BalanceReader(db_path, LEGACY_BUCKETS).get_balance("u1") == 0
    
    def test_missing_schema_degrades_to_zero(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            reader = BalanceReader(os.path.join(temp_dir, "empty.db"), LEGACY_BUCKETS)
            balance = reader.resolve("u1")
        assert balance.amount == 0
        assert balance.source == "none"
    
    def test_unreachable_storage_degrades_to_zero(self):
        reader = BalanceReader("/nonexistent/dir/ledger.db", LEGACY_BUCKETS)
        balance = reader.resolve("u1")
        assert balance.amount == 0
        assert balance.source == "unavailable"


class TestProcedurePortRetries:
    """Test transient failure handling of the primary port."""
    
    @patch("reading_credits.storage.ports.time.sleep")
    def test_retries_operational_errors(self, mock_sleep, db_path):
        port = ProcedureBalancePort(db_path, retries=3)
        fn = Mock(side_effect=[
            sqlite3.OperationalError("database is locked"),
            sqlite3.OperationalError("database is locked"),
            "ok"
        ])
        
        assert port._call(fn, op="test") == "ok"
        assert fn.call_count == 3
        assert mock_sleep.call_count == 2
    
    @patch("reading_credits.storage.ports.time.sleep")
    def test_exhausted_retries_raise_storage_unavailable(self, mock_sleep, db_path):
        port = ProcedureBalancePort(db_path, retries=2)
        fn = Mock(side_effect=sqlite3.OperationalError("database is locked"))
        
        with pytest.raises(StorageUnavailable):
            port._call(fn, op="test")
        assert fn.call_count == 2
    
    def test_database_error_is_not_retried(self, db_path):
        port = ProcedureBalancePort(db_path, retries=3)
        fn = Mock(side_effect=sqlite3.DatabaseError("file is not a database"))
        
        with pytest.raises(StorageUnavailable):
            port._call(fn, op="test")
        assert fn.call_count == 1
    
    def test_transaction_rolled_back_on_error(self, db_path):
        port = ProcedureBalancePort(db_path)
        
        def failing(conn):
            def operation(conn):
                ensure_account(conn, "u1")
                raise RuntimeError("boom")
            return run_in_transaction(conn, operation)
        
        with pytest.raises(RuntimeError):
            port._call(failing, op="test")
        assert LedgerRepository(db_path).get_account("u1") is None
