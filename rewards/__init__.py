"""
Survey rewards platform

This package provides:
- Identity store with bcrypt password hashes
- Read-only survey catalog seeded with demo surveys
- Append-only ledger of attempt credits and payouts
- Signed bearer tokens for the HTTP API
"""

from .models import (
    EntryKind,
    LedgerEntry,
    Survey,
    User,
    UserBalance,
)
from .service import IdentityStore, LedgerService, SurveyCatalog

__all__ = [
    "EntryKind",
    "LedgerEntry",
    "Survey",
    "User",
    "UserBalance",
    "IdentityStore",
    "LedgerService",
    "SurveyCatalog",
]
