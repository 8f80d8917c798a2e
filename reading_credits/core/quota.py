"""
Quota replenishment.

Periodic allotments are applied lazily when an account is touched, not
by a background job. Replenishment tops the carry balance up to the
quota; unused credit above the quota is kept, and credit below it is
not accumulated across periods.
"""

import calendar
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from reading_credits.storage.models import Account


class ResetPeriod(Enum):
    """Which quota fired."""
    DAILY = "daily"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class ResetOutcome:
    """Result of checking an account for a due reset."""
    account: Account
    applied: bool
    replenished: int = 0
    period: Optional[ResetPeriod] = None


def add_months(moment: datetime, months: int) -> datetime:
    """Shift a datetime by whole months, clamping the day to the month end."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class QuotaResetPolicy:
    """Top-up-to-quota replenishment rule.
    
    When both quotas are set the daily quota governs the reset and the
    monthly quota is informational.
    """
    
    def is_due(self, account: Account, now: datetime) -> bool:
        """Whether a reset boundary has passed for this account."""
        return account.next_reset_at is not None and account.next_reset_at <= now
    
    def apply_if_due(self, account: Account, now: datetime) -> ResetOutcome:
        """Apply the reset if ``next_reset_at`` has passed.
        
        Must run inside the same storage transaction as the balance
        check that follows it, so that two concurrent callers cannot both
        observe the same due boundary.
        
        Args:
            account: Account as currently stored
            now: Current time (aware UTC)
            
        Returns:
            ResetOutcome carrying the possibly-updated account
        """
        if not self.is_due(account, now):
            return ResetOutcome(account=account, applied=False)
        
        if account.daily_quota is not None:
            quota = account.daily_quota
            period = ResetPeriod.DAILY
            next_reset_at = now + timedelta(days=1)
        elif account.monthly_quota is not None:
            quota = account.monthly_quota
            period = ResetPeriod.MONTHLY
            next_reset_at = add_months(now, 1)
        else:
            # Boundary left over from a removed quota
            updated = replace(account, next_reset_at=None, updated_at=now)
            return ResetOutcome(account=updated, applied=True)
        
        new_balance = max(account.carry_balance, quota)
        updated = replace(
            account,
            carry_balance=new_balance,
            next_reset_at=next_reset_at,
            updated_at=now
        )
        return ResetOutcome(
            account=updated,
            applied=True,
            replenished=new_balance - account.carry_balance,
            period=period
        )
    
    def reschedule(self, account: Account, now: datetime) -> Account:
        """Align ``next_reset_at`` with the account's quotas after an edit.
        
        A newly configured quota becomes due immediately; removing every
        quota clears the boundary.
        """
        if account.daily_quota is None and account.monthly_quota is None:
            return replace(account, next_reset_at=None)
        if account.next_reset_at is None:
            return replace(account, next_reset_at=now)
        return account
