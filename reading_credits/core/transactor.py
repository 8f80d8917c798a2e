"""
Ledger transactor.

The only component allowed to change a balance. Debits go through the
primary atomic port; if that port's storage is unavailable the
transactor may retry the debit once on a weaker fallback port, and the
result says so. Credits never fall back.

Enforcement order for a debit:
1. Feature cost lookup - unknown features fail before storage is touched
2. Quota reset - applied inside the storage transaction
3. Balance check and decrement - same transaction
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .costs import FeatureCostTable
from .errors import LedgerUnavailable, StorageUnavailable
from reading_credits.storage.models import Account, CreditResult, DebitResult, EntryKind
from reading_credits.storage.ports import BalancePort
from reading_credits.storage.repository import utcnow

log = logging.getLogger(__name__)


def _require_account_id(account_id: str) -> None:
    if not isinstance(account_id, str) or not account_id.strip():
        raise ValueError("account_id is required and cannot be empty")


class LedgerTransactor:
    """Atomic debit/credit engine over the balance ports."""
    
    def __init__(
        self,
        costs: FeatureCostTable,
        primary: BalancePort,
        fallback: Optional[BalancePort] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """Initialize the transactor.
        
        Args:
            costs: Feature cost table
            primary: Linearizable port used for every write
            fallback: Optional weaker port used only for debits when the
                primary port's storage is unavailable
            clock: Source of the current time (aware UTC)
        """
        self.costs = costs
        self.primary = primary
        self.fallback = fallback
        self.clock = clock
    
    def try_debit(self, account_id: str, feature_key: str) -> DebitResult:
        """Charge one use of a feature if the balance covers it.
        
        Args:
            account_id: Account to charge
            feature_key: Priced feature being used
            
        Returns:
            DebitResult; ``granted`` False means insufficient funds and
            the balance is unchanged
            
        Raises:
            InvalidFeature: If the feature has no configured cost
            LedgerUnavailable: If no permitted path could apply the debit
        """
        _require_account_id(account_id)
        cost = self.costs.cost_of(feature_key)
        now = self.clock()
        
        try:
            result = self.primary.debit(account_id, feature_key, cost, now)
        except StorageUnavailable as exc:
            result = self._debit_via_fallback(account_id, feature_key, cost, now, exc)
        
        if result.replenished:
            log.info(
                "ledger quota_reset user=%s replenished=%s",
                account_id, result.replenished
            )
        if result.granted:
            log.info(
                "ledger debit user=%s feature=%s cost=%s new=%s consistency=%s",
                account_id, feature_key, cost, result.new_balance, result.consistency.value
            )
        else:
            log.info(
                "ledger debit_denied user=%s feature=%s cost=%s balance=%s",
                account_id, feature_key, cost, result.new_balance
            )
        return result
    
    def _debit_via_fallback(
        self,
        account_id: str,
        feature_key: str,
        cost: int,
        now: datetime,
        cause: StorageUnavailable
    ) -> DebitResult:
        if self.fallback is None:
            log.error("ledger.debit.unavailable user=%s error=%s", account_id, cause)
            raise LedgerUnavailable(f"debit for {account_id} could not be applied: {cause}") from cause
        
        log.warning(
            "ledger.debit.fallback user=%s feature=%s port=%s error=%s",
            account_id, feature_key, type(self.fallback).__name__, cause
        )
        try:
            return self.fallback.debit(account_id, feature_key, cost, now)
        except StorageUnavailable as exc:
            log.error("ledger.debit.fallback_failed user=%s error=%s", account_id, exc)
            raise LedgerUnavailable(f"debit for {account_id} could not be applied: {exc}") from exc
    
    def credit(
        self,
        account_id: str,
        amount: int,
        note: Optional[str] = None,
        kind: EntryKind = EntryKind.CREDIT,
        feature_key: Optional[str] = None
    ) -> CreditResult:
        """Add a signed amount to the balance.
        
        Negative amounts are clamped so the balance ends at zero at
        worst. Always succeeds unless storage is unreachable.
        
        Raises:
            LedgerUnavailable: If the primary port cannot be reached
        """
        _require_account_id(account_id)
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise ValueError("amount must be an integer")
        
        try:
            result = self.primary.credit(
                account_id, amount, self.clock(),
                kind=kind, note=note, feature_key=feature_key
            )
        except StorageUnavailable as exc:
            log.error("ledger.credit.unavailable user=%s amount=%s error=%s", account_id, amount, exc)
            raise LedgerUnavailable(f"credit for {account_id} could not be applied: {exc}") from exc
        
        log.info(
            "ledger %s user=%s amount=%s applied=%s old=%s new=%s note=%s",
            kind.value, account_id, amount, result.applied_delta,
            result.old_balance, result.new_balance, note
        )
        return result
    
    def refund(self, account_id: str, feature_key: str, note: Optional[str] = None) -> CreditResult:
        """Compensating credit of one feature use, for a failed downstream step."""
        cost = self.costs.cost_of(feature_key)
        return self.credit(
            account_id,
            cost,
            note=note or f"refund {feature_key}",
            kind=EntryKind.CREDIT,
            feature_key=feature_key
        )
    
    def update_account(self, account_id: str, changes: Dict[str, Any]) -> Account:
        """Apply quota/plan edits through the same lock as balance writes.
        
        Raises:
            LedgerUnavailable: If the primary port cannot be reached
        """
        _require_account_id(account_id)
        try:
            account = self.primary.set_quota(account_id, changes, self.clock())
        except StorageUnavailable as exc:
            log.error("ledger.quota.unavailable user=%s error=%s", account_id, exc)
            raise LedgerUnavailable(f"quota update for {account_id} could not be applied: {exc}") from exc
        log.info("ledger quota user=%s changes=%s next_reset_at=%s", account_id, changes, account.next_reset_at)
        return account
