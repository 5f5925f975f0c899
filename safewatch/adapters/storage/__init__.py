"""
Storage adapters for SafeWatch.
"""

from .sqlite_store import SQLiteSafetyStore
from .sqlite_idem import SQLiteIdemStore, update_key

__all__ = ["SQLiteSafetyStore", "SQLiteIdemStore", "update_key"]
