"""
Legacy balance schema.

Older rows keep the balance in the ``credits`` table under one of
several column names. All field-name normalisation for that schema is
confined to this module; everything above it sees a typed ``Balance``.
"""

import math
import sqlite3
from typing import Any, Mapping, Optional, Sequence, Tuple

from .models import Balance
from .repository import from_iso

# Names the balance has appeared under, most specific first
LEGACY_BALANCE_FIELDS = ("carry_balance", "remaining_total", "remaining", "balance", "credit")

# Columns of the legacy table that may be written back
WRITABLE_LEGACY_COLUMNS = ("remaining_total", "remaining")


def coerce_balance(value: Any) -> Optional[int]:
    """Return ``value`` as an int balance, or None if it isn't numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return int(number) if math.isfinite(number) else None
    return None


def pick_balance(row: Mapping[str, Any]) -> Optional[Tuple[str, int]]:
    """Find the first numeric balance field in a row.
    
    Returns:
        ``(field_name, value)`` or None when no field holds a number
    """
    for name in LEGACY_BALANCE_FIELDS:
        if name in row:
            value = coerce_balance(row[name])
            if value is not None:
                return name, value
    return None


def fetch_latest_legacy_row(
    conn: sqlite3.Connection,
    user_id: str,
    buckets: Sequence[str]
) -> Optional[dict]:
    """Most recent legacy credits row in one of the given buckets."""
    if not buckets:
        return None
    placeholders = ", ".join("?" for _ in buckets)
    row = conn.execute(f"""
        SELECT id, user_id, bucket, remaining_total, remaining, created_at
          FROM credits
         WHERE user_id = ? AND bucket IN ({placeholders})
         ORDER BY created_at DESC, id DESC
         LIMIT 1
    """, (user_id, *buckets)).fetchone()
    return dict(row) if row else None


def read_legacy_balance(
    conn: sqlite3.Connection,
    user_id: str,
    buckets: Sequence[str]
) -> Optional[Balance]:
    """Balance from the legacy table, or None when there is no usable row."""
    row = fetch_latest_legacy_row(conn, user_id, buckets)
    if row is None:
        return None
    picked = pick_balance(row)
    if picked is None:
        return None
    return Balance(
        account_id=user_id,
        amount=max(picked[1], 0),
        source="credits_fallback",
        updated_at=from_iso(row.get("created_at"))
    )


def write_legacy_balance(
    conn: sqlite3.Connection,
    row: Mapping[str, Any],
    column: str,
    value: int
) -> None:
    """Overwrite the balance column of one legacy row.
    
    Raises:
        ValueError: If ``column`` is not a writable balance column
    """
    if column not in WRITABLE_LEGACY_COLUMNS:
        raise ValueError(f"legacy column {column!r} is not writable")
    conn.execute(f"UPDATE credits SET {column} = ? WHERE id = ?", (value, row["id"]))
