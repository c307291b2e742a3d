"""
Rider cash ledger for a food-delivery marketplace.

This module provides:
- A per-rider COD ledger with idempotent delivery postings
- FIFO settlement of cash handed over by riders
- Settlement status (active / overdue / blocked) derived from exposure
- A daily delivery bonus credited exactly once per rider per day
- Fleet-wide read models for admin dashboards
"""

from .bonus import BonusTracker
from .events import NotificationPublisher
from .ingest import OrderCompletionIngestor, compute_split
from .models import (
    LedgerTransaction,
    RiderLedgerAccount,
    SettlementBatch,
    SettlementStatus,
    TransactionStatus,
)
from .queries import AdminQueryService
from .service import LedgerService
from .storage import InMemoryStorage

__all__ = [
    "AdminQueryService",
    "BonusTracker",
    "InMemoryStorage",
    "LedgerService",
    "LedgerTransaction",
    "NotificationPublisher",
    "OrderCompletionIngestor",
    "RiderLedgerAccount",
    "SettlementBatch",
    "SettlementStatus",
    "TransactionStatus",
    "compute_split",
]
