"""
In-memory storage for rider ledgers.

Writers hold a per-rider lock and commit through a UnitOfWork. A rider's
account, transaction log and settlement batches live in one RiderState that
a commit replaces in a single assignment, so readers can take a reference
without locking and always see one complete commit.
"""

import itertools
import threading
from datetime import date
from typing import NamedTuple, Optional
from uuid import UUID

from .errors import ConcurrentMutationConflict
from .models import (
    BonusProgress,
    LedgerTransaction,
    RiderLedgerAccount,
    SettlementBatch,
)


class RiderState(NamedTuple):
    account: RiderLedgerAccount
    transactions: tuple[LedgerTransaction, ...] = ()
    batches: tuple[SettlementBatch, ...] = ()


class InMemoryStorage:
    def __init__(self):
        self.riders: dict[str, RiderState] = {}
        self.bonus_progress: dict[tuple[str, date], BonusProgress] = {}
        self.idempotency_index: dict[tuple[str, str], UUID] = {}
        self.bonus_orders: dict[tuple[str, str], date] = {}
        self.version = 0
        self._sequence = itertools.count(1)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def rider_lock(self, rider_id: str) -> threading.Lock:
        lock = self._locks.get(rider_id)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(rider_id, threading.Lock())
        return lock

    def state(self, rider_id: str) -> Optional[RiderState]:
        return self.riders.get(rider_id)

    def account(self, rider_id: str) -> Optional[RiderLedgerAccount]:
        state = self.riders.get(rider_id)
        return state.account if state else None

    def states(self) -> list[RiderState]:
        return list(self.riders.values())

    def rider_ids(self) -> list[str]:
        return list(self.riders.keys())

    def begin(self, rider_id: str) -> "UnitOfWork":
        return UnitOfWork(self, rider_id)

    def commit(self, uow: "UnitOfWork") -> RiderLedgerAccount:
        rider_id = uow.rider_id
        current = self.riders.get(rider_id)
        current_version = current.account.version if current else 0
        if current_version != uow.expected_version:
            raise ConcurrentMutationConflict(
                f"Account {rider_id} moved from version {uow.expected_version} to {current_version}"
            )

        account = uow.account.model_copy(update={"version": current_version + 1})
        batches = current.batches if current else ()
        if uow.batch is not None:
            batches = batches + (uow.batch,)

        for order_id, tx_id in uow.index_entries.items():
            self.idempotency_index[(rider_id, order_id)] = tx_id
        if uow.bonus is not None:
            self.bonus_progress[(rider_id, uow.bonus.date)] = uow.bonus
            self.bonus_orders[(rider_id, uow.bonus_order)] = uow.bonus.date

        self.riders[rider_id] = RiderState(account, tuple(uow.transactions), batches)
        self.version = next(self._sequence)
        return account


class UnitOfWork:
    """Working copy of one rider's state, applied by InMemoryStorage.commit."""

    def __init__(self, storage: InMemoryStorage, rider_id: str):
        state = storage.state(rider_id)
        self.storage = storage
        self.rider_id = rider_id
        self.account: Optional[RiderLedgerAccount] = state.account if state else None
        self.expected_version = self.account.version if self.account else 0
        self.transactions: list[LedgerTransaction] = list(state.transactions) if state else []
        self.index_entries: dict[str, UUID] = {}
        self.batch: Optional[SettlementBatch] = None
        self.bonus: Optional[BonusProgress] = None
        self.bonus_order: Optional[str] = None
        self.dirty = False

    def set_account(self, account: RiderLedgerAccount) -> None:
        self.account = account
        self.dirty = True

    def record_batch(self, batch: SettlementBatch) -> None:
        self.batch = batch
        self.dirty = True

    def record_bonus(self, progress: BonusProgress, order_id: str) -> None:
        self.bonus = progress
        self.bonus_order = order_id
        self.dirty = True

    def append_transaction(self, tx: LedgerTransaction) -> None:
        self.transactions.append(tx)
        self.dirty = True
        if tx.order_id is not None:
            self.index_entries[tx.order_id] = tx.id

    def replace_transaction(self, tx: LedgerTransaction) -> None:
        for i, existing in enumerate(self.transactions):
            if existing.id == tx.id:
                self.transactions[i] = tx
                self.dirty = True
                return
        raise KeyError(tx.id)

    def find_order(self, order_id: str) -> Optional[LedgerTransaction]:
        tx_id = self.index_entries.get(order_id) or self.storage.idempotency_index.get(
            (self.rider_id, order_id)
        )
        if tx_id is None:
            return None
        for tx in self.transactions:
            if tx.id == tx_id:
                return tx
        return None

    def bonus_for(self, on_date: date) -> Optional[BonusProgress]:
        if self.bonus is not None and self.bonus.date == on_date:
            return self.bonus
        return self.storage.bonus_progress.get((self.rider_id, on_date))

    def bonus_counted(self, order_id: str) -> bool:
        return self.bonus_order == order_id or (self.rider_id, order_id) in self.storage.bonus_orders
