"""
Balance read path.

Resolves the current usable balance across the storage shapes an
account may live in. Absence resolves to zero, and so does a storage
failure: the read path never breaks the caller.
"""

import logging
import sqlite3
from typing import Callable, List, Optional, Sequence, Tuple

from reading_credits.storage.db import DEFAULT_BUSY_TIMEOUT, DEFAULT_DB_PATH, get_connection
from reading_credits.storage.legacy import coerce_balance, read_legacy_balance
from reading_credits.storage.models import Balance
from reading_credits.storage.repository import from_iso, select_account

log = logging.getLogger(__name__)

BalanceSource = Callable[[sqlite3.Connection, str], Optional[Balance]]


class BalanceReader:
    """Read-only balance resolution.
    
    Resolution order: the primary ``credit_accounts`` row, then the
    ``v_credit_balance`` view, then the newest legacy ``credits`` row,
    else zero. Each source is tried independently; a failing source is
    logged and skipped.
    """
    
    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        legacy_buckets: Sequence[str] = (),
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT
    ):
        self.db_path = db_path
        self.legacy_buckets = tuple(legacy_buckets)
        self.busy_timeout = busy_timeout
    
    def _sources(self) -> List[Tuple[str, BalanceSource]]:
        return [
            ("credit_accounts", self._from_account_row),
            ("v_credit_balance", self._from_view),
            ("credits", lambda conn, user_id: read_legacy_balance(conn, user_id, self.legacy_buckets)),
        ]
    
    @staticmethod
    def _from_account_row(conn: sqlite3.Connection, user_id: str) -> Optional[Balance]:
        account = select_account(conn, user_id)
        if account is None:
            return None
        return Balance(
            account_id=user_id,
            amount=account.carry_balance,
            source="credit_accounts",
            plan=account.plan,
            updated_at=account.updated_at
        )
    
    @staticmethod
    def _from_view(conn: sqlite3.Connection, user_id: str) -> Optional[Balance]:
        """Balance from the ``v_credit_balance`` projection.
        
        The view selects from ``credit_accounts``, so it holds no rows the
        primary source lacks. It is only consulted when the direct table
        query raises.
        """
        row = conn.execute(
            "SELECT carry_balance, plan, updated_at FROM v_credit_balance WHERE user_id = ?",
            (user_id,)
        ).fetchone()
        if row is None:
            return None
        amount = coerce_balance(row["carry_balance"])
        if amount is None:
            return None
        return Balance(
            account_id=user_id,
            amount=max(amount, 0),
            source="v_credit_balance",
            plan=row["plan"],
            updated_at=from_iso(row["updated_at"])
        )
    
    def resolve(self, account_id: str) -> Balance:
        """Resolve the usable balance with the source it came from.
        
        Args:
            account_id: Account to read
            
        Returns:
            Balance; ``source`` is ``"none"`` when nothing was found and
            ``"unavailable"`` when storage could not be reached at all
        """
        try:
            conn = get_connection(self.db_path, self.busy_timeout)
        except sqlite3.Error as exc:
            log.error("ledger.read.unavailable user=%s error=%s", account_id, exc)
            return Balance(account_id=account_id, amount=0, source="unavailable")
        
        try:
            for name, source in self._sources():
                try:
                    balance = source(conn, account_id)
                except sqlite3.Error as exc:
                    log.warning(
                        "ledger.read.source_failed user=%s source=%s error=%s",
                        account_id, name, exc
                    )
                    continue
                if balance is not None:
                    return balance
        finally:
            conn.close()
        
        return Balance(account_id=account_id, amount=0, source="none")
    
    def get_balance(self, account_id: str) -> int:
        """Current usable balance, never negative and never raising."""
        return self.resolve(account_id).amount
