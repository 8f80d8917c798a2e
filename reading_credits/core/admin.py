"""
Administrative balance and quota adjustments.

Callers must already have verified that the requester is an
administrator; nothing here checks authorization.
"""

from typing import Any, Dict, Optional

from .errors import InvalidAdjustment
from .transactor import LedgerTransactor
from reading_credits.storage.models import Account, EntryKind


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Marks a field the caller did not ask to change; None clears a quota
UNSET: Any = _Unset()


def _validate_quota(name: str, value: Any) -> None:
    if value is None:
        return
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise InvalidAdjustment(f"{name} must be a non-negative integer or None")


class AdminAdjustment:
    """Top-ups, deductions and quota edits on behalf of an administrator."""
    
    def __init__(self, transactor: LedgerTransactor):
        self.transactor = transactor
    
    def top_up(self, account_id: str, signed_amount: int, note: Optional[str] = None) -> int:
        """Credit or deduct credits manually.
        
        Deductions larger than the balance leave it at zero.
        
        Args:
            account_id: Account to adjust
            signed_amount: Non-zero integer, negative to deduct
            note: Free-text reason recorded in the ledger
            
        Returns:
            New balance
            
        Raises:
            InvalidAdjustment: If the amount is not a non-zero integer
        """
        if not account_id or not str(account_id).strip():
            raise InvalidAdjustment("account_id is required")
        if not isinstance(signed_amount, int) or isinstance(signed_amount, bool) or signed_amount == 0:
            raise InvalidAdjustment("amount must be a non-zero integer")
        
        result = self.transactor.credit(
            account_id,
            signed_amount,
            note=note,
            kind=EntryKind.ADJUSTMENT
        )
        return result.new_balance
    
    def set_quota(
        self,
        account_id: str,
        daily_quota: Any = UNSET,
        monthly_quota: Any = UNSET,
        plan: Any = UNSET
    ) -> Account:
        """Edit an account's quotas and plan label.
        
        Fields left as UNSET are unchanged; passing None for a quota
        removes it. At least one quota must be given.
        
        Returns:
            The updated account
            
        Raises:
            InvalidAdjustment: If nothing is to be updated or a value is invalid
        """
        if not account_id or not str(account_id).strip():
            raise InvalidAdjustment("account_id is required")
        if daily_quota is UNSET and monthly_quota is UNSET:
            raise InvalidAdjustment("nothing to update: include daily_quota or monthly_quota")
        
        changes: Dict[str, Any] = {}
        if daily_quota is not UNSET:
            _validate_quota("daily_quota", daily_quota)
            changes["daily_quota"] = daily_quota
        if monthly_quota is not UNSET:
            _validate_quota("monthly_quota", monthly_quota)
            changes["monthly_quota"] = monthly_quota
        if plan is not UNSET:
            if not isinstance(plan, str) or not plan.strip():
                raise InvalidAdjustment("plan must be a non-empty string")
            changes["plan"] = plan
        
        return self.transactor.update_account(account_id, changes)
