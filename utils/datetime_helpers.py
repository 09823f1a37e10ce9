"""
Datetime helpers for the reconciliation tables.

Every timestamp column is DateTime(timezone=False) holding UTC, so all writes
go through get_naive_utc_now().
"""

from datetime import datetime, timezone


def get_naive_utc_now() -> datetime:
    """Current UTC time without tzinfo, for reconciliation table fields"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
