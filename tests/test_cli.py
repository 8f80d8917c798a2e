"""
Tests for the CLI interface.
"""
import os
import shutil
import tempfile
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from reading_credits.cli.main import app, EXIT_CODE_DENIED, EXIT_CODE_FAIL, EXIT_CODE_PASS
from reading_credits.core.errors import LedgerUnavailable
from reading_credits.storage.repository import insert_legacy_credit

runner = CliRunner()


@pytest.fixture
def db():
    """Path to a fresh ledger database."""
    temp_dir = tempfile.mkdtemp()
    path = os.path.join(temp_dir, "cli.db")
    result = runner.invoke(app, ["--db", path, "init"])
    assert result.exit_code == EXIT_CODE_PASS
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)


class TestCLI:
    """Test CLI commands."""
    
    def test_init(self, db):
        assert os.path.exists(db)
    
    def test_costs(self):
        result = runner.invoke(app, ["costs"])
        
        assert result.exit_code == EXIT_CODE_PASS
        assert "classic10" in result.output
        assert "threeCards" in result.output
    
    def test_balance_of_unknown_account(self, db):
        result = runner.invoke(app, ["--db", db, "balance", "u1"])
        
        assert result.exit_code == EXIT_CODE_PASS
        assert "Balance for u1: 0" in result.output
    
    def test_topup_then_debit(self, db):
        result = runner.invoke(app, ["--db", db, "topup", "u1", "7", "--note", "promo"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "New balance for u1: 7" in result.output
        
        result = runner.invoke(app, ["--db", db, "debit", "u1", "classic10"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "New balance: 2" in result.output
        
        result = runner.invoke(app, ["--db", db, "balance", "u1"])
        assert "Balance for u1: 2" in result.output
    
    def test_negative_topup(self, db):
        runner.invoke(app, ["--db", db, "topup", "u1", "7"])
        result = runner.invoke(app, ["--db", db, "topup", "u1", "--", "-3"])
        
        assert result.exit_code == EXIT_CODE_PASS
        assert "New balance for u1: 4" in result.output
    
    def test_zero_topup_fails(self, db):
        result = runner.invoke(app, ["--db", db, "topup", "u1", "0"])
        
        assert result.exit_code == EXIT_CODE_FAIL
        assert "INVALID_PAYLOAD" in result.output
    
    def test_insufficient_funds_exit_code(self, db):
        result = runner.invoke(app, ["--db", db, "debit", "u1", "classic10"])
        
        assert result.exit_code == EXIT_CODE_DENIED
        assert "INSUFFICIENT_FUNDS" in result.output
    
    def test_unknown_feature(self, db):
        result = runner.invoke(app, ["--db", db, "debit", "u1", "not_a_real_feature"])
        
        assert result.exit_code == EXIT_CODE_FAIL
        assert "INVALID_MODE" in result.output
    
    def test_quota(self, db):
        result = runner.invoke(app, ["--db", db, "quota", "u1", "--daily", "10"])
        
        assert result.exit_code == EXIT_CODE_PASS
        assert "Daily quota: 10" in result.output
        assert "Monthly quota: none" in result.output
        
        result = runner.invoke(app, ["--db", db, "debit", "u1", "classic10"])
        assert "New balance: 5" in result.output
    
    def test_quota_requires_a_field(self, db):
        result = runner.invoke(app, ["--db", db, "quota", "u1"])
        
        assert result.exit_code == EXIT_CODE_FAIL
        assert "nothing to update" in result.output
    
    def test_quota_set_and_clear_conflict(self, db):
        result = runner.invoke(app, ["--db", db, "quota", "u1", "--daily", "5", "--clear-daily"])
        
        assert result.exit_code == EXIT_CODE_FAIL
        assert "cannot be set and cleared" in result.output
        
        result = runner.invoke(app, ["--db", db, "account", "u1"])
        assert "No credit account for u1" in result.output
    
    def test_account_details(self, db):
        runner.invoke(app, ["--db", db, "quota", "u1", "--monthly", "30"])
        runner.invoke(app, ["--db", db, "debit", "u1", "classic10"])
        result = runner.invoke(app, ["--db", db, "account", "u1"])
        
        assert result.exit_code == EXIT_CODE_PASS
        assert "Balance for u1: 25" in result.output
        assert "Plan: prepaid" in result.output
        assert "Daily quota: none" in result.output
        assert "Monthly quota: 30" in result.output
        assert "Next reset: -" not in result.output
    
    def test_account_legacy_only(self, db):
        insert_legacy_credit("old", remaining_total=3, bucket="tarot_3", db_path=db)
        result = runner.invoke(app, ["--db", db, "account", "old"])
        
        assert result.exit_code == EXIT_CODE_PASS
        assert "Balance for old: 3" in result.output
        assert "No credit account for old" in result.output
    
    def test_legacy_balance_spendable(self, db):
        insert_legacy_credit("old", remaining_total=3, bucket="tarot_3", db_path=db)
        result = runner.invoke(app, ["--db", db, "debit", "old", "threeCards"])
        
        assert result.exit_code == EXIT_CODE_PASS
        assert "New balance: 2" in result.output
    
    def test_accounts_list(self, db):
        runner.invoke(app, ["--db", db, "topup", "alice", "4"])
        runner.invoke(app, ["--db", db, "topup", "bob", "9"])
        result = runner.invoke(app, ["--db", db, "accounts"])
        
        assert result.exit_code == EXIT_CODE_PASS
        assert "alice" in result.output
        assert "bob" in result.output
        assert "9" in result.output
    
    def test_accounts_empty(self, db):
        result = runner.invoke(app, ["--db", db, "accounts"])
        
        assert result.exit_code == EXIT_CODE_PASS
        assert "No credit accounts" in result.output
    
    def test_history(self, db):
        runner.invoke(app, ["--db", db, "topup", "u1", "5"])
        runner.invoke(app, ["--db", db, "debit", "u1", "threeCards"])
        result = runner.invoke(app, ["--db", db, "history", "u1"])
        
        assert result.exit_code == EXIT_CODE_PASS
        assert "adjustment" in result.output
        assert "debit" in result.output
        assert "-1" in result.output
    
    def test_history_empty(self, db):
        result = runner.invoke(app, ["--db", db, "history", "u1"])
        assert "No ledger entries" in result.output
    
    def test_ledger_unavailable(self):
        with patch('reading_credits.cli.main.build_service') as mock_build:
            mock_build.return_value.debit.side_effect = LedgerUnavailable("down")
            result = runner.invoke(app, ["debit", "u1", "threeCards"])
        
        assert result.exit_code == EXIT_CODE_FAIL
        assert "LEDGER_UNAVAILABLE" in result.output
    
    def test_config_file(self, db):
        fd, path = tempfile.mkstemp(suffix=".yaml")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"features:\n  palm: 2\nledger:\n  database: {db}\n")
        try:
            runner.invoke(app, ["--config", path, "topup", "u1", "3"])
            result = runner.invoke(app, ["--config", path, "debit", "u1", "palm"])
        finally:
            os.unlink(path)
        
        assert result.exit_code == EXIT_CODE_PASS
        assert "New balance: 1" in result.output
