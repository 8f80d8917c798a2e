"""
Credit service.

Wires the ledger components together and exposes the operations the
surrounding application calls: balance reads, debits, refunds and the
admin adjustments.
"""

from typing import Dict, List, Optional

from reading_credits.config.loader import CreditsConfig, FallbackMode, default_config
from reading_credits.storage.models import Account, Balance, CreditResult, DebitResult, LedgerEntry
from reading_credits.storage.ports import LegacyBalancePort, ProcedureBalancePort
from reading_credits.storage.repository import LedgerRepository, initialize_schema

from .admin import UNSET, AdminAdjustment
from .costs import FeatureCostTable
from .quota import QuotaResetPolicy
from .reader import BalanceReader
from .transactor import LedgerTransactor


class CreditService:
    """Facade over reader, transactor and admin adjustment."""
    
    def __init__(self, config: CreditsConfig, transactor: Optional[LedgerTransactor] = None):
        """Build the ledger from configuration.
        
        Args:
            config: Validated configuration
            transactor: Optional prebuilt transactor (tests inject ports)
        """
        self.config = config
        ledger = config.ledger
        self.costs = FeatureCostTable(dict(config.features))
        self.reader = BalanceReader(
            ledger.database,
            legacy_buckets=config.legacy.buckets,
            busy_timeout=ledger.busy_timeout
        )
        self.repository = LedgerRepository(ledger.database)
        
        if transactor is None:
            policy = QuotaResetPolicy()
            primary = ProcedureBalancePort(
                ledger.database,
                reset_policy=policy,
                retries=ledger.retries,
                busy_timeout=ledger.busy_timeout,
                legacy_buckets=config.legacy.buckets
            )
            fallback = None
            if ledger.fallback == FallbackMode.LEGACY:
                fallback = LegacyBalancePort(
                    ledger.database,
                    buckets=config.legacy.buckets,
                    reset_policy=policy,
                    busy_timeout=ledger.busy_timeout
                )
            transactor = LedgerTransactor(self.costs, primary, fallback)
        self.transactor = transactor
        self.admin = AdminAdjustment(self.transactor)
    
    def initialize(self) -> None:
        """Create the schema if needed."""
        initialize_schema(self.config.ledger.database)
    
    def get_balance(self, account_id: str) -> Balance:
        return self.reader.resolve(account_id)
    
    def debit(self, account_id: str, feature_key: str) -> DebitResult:
        return self.transactor.try_debit(account_id, feature_key)
    
    def refund(self, account_id: str, feature_key: str, note: Optional[str] = None) -> CreditResult:
        return self.transactor.refund(account_id, feature_key, note)
    
    def top_up(self, account_id: str, signed_amount: int, note: Optional[str] = None) -> int:
        return self.admin.top_up(account_id, signed_amount, note)
    
    def set_quota(self, account_id: str, daily_quota=UNSET, monthly_quota=UNSET, plan=UNSET) -> Account:
        return self.admin.set_quota(account_id, daily_quota, monthly_quota, plan)
    
    def get_account(self, account_id: str) -> Optional[Account]:
        """Quota, plan and reset details of an account, or None if it has no row."""
        return self.repository.get_account(account_id)
    
    def list_balances(self, limit: int = 100) -> List[Balance]:
        """Balances of every account row, ordered by account id."""
        return [
            Balance(
                account_id=account.user_id,
                amount=account.carry_balance,
                source="credit_accounts",
                plan=account.plan,
                updated_at=account.updated_at
            )
            for account in self.repository.list_accounts(limit=limit)
        ]
    
    def history(self, account_id: str, limit: int = 50) -> List[LedgerEntry]:
        return self.repository.get_history(account_id, limit=limit)
    
    def cost_table(self) -> Dict[str, int]:
        return self.costs.as_dict()


# Global service instance
_default_service: Optional[CreditService] = None


def get_service(config: Optional[CreditsConfig] = None) -> CreditService:
    """Get a service instance.
    
    Returns a process-wide CreditService, built on first use from
    ``config`` or the default configuration.
    """
    global _default_service
    if _default_service is None:
        _default_service = CreditService(config or default_config())
    return _default_service


def reset_service() -> None:
    """Drop the process-wide instance."""
    global _default_service
    _default_service = None
