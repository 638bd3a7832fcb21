"""
Multi-currency Virtual Credit Ledger

This module provides:
- Per-user accounts in any number of configured currencies
- Atomic credit, debit and transfer with optimistic concurrency
- Immutable, version-chained transaction history
- Idempotent grants: daily check-in, post rewards, shop purchases, refunds
- Read-only balance, history and aggregate views
"""

from .config import LedgerSettings
from .errors import LedgerError
from .models import (
    Account,
    Currency,
    RelatedEntity,
    Transaction,
    TransactionType,
)
from .service import LedgerService, build_service

__all__ = [
    "Account",
    "Currency",
    "LedgerError",
    "LedgerService",
    "LedgerSettings",
    "RelatedEntity",
    "Transaction",
    "TransactionType",
    "build_service",
]
