import logging
from datetime import datetime
from typing import Any, Callable, Optional, TypeVar
from uuid import NAMESPACE_URL, UUID, uuid4, uuid5

from .config import Settings, get_settings
from .errors import (
    ConcurrentMutationConflict,
    DuplicateEvent,
    InsufficientBalance,
    InvalidAmount,
    InvalidSplit,
    RiderBlocked,
    RiderNotFound,
)
from .models import (
    BlockResult,
    EventName,
    LedgerTransaction,
    PostingResult,
    RiderLedgerAccount,
    SettlementBatch,
    SettlementResult,
    SettlementStatus,
    SweepResult,
    TransactionKind,
    TransactionStatus,
    utcnow,
)
from .status import SettlementStateMachine
from .storage import InMemoryStorage, UnitOfWork

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSACTION_NAMESPACE = uuid5(NAMESPACE_URL, "rider-ledger/transactions")


def transaction_id_for(rider_id: str, order_id: str) -> UUID:
    return uuid5(TRANSACTION_NAMESPACE, f"{rider_id}:{order_id}")


def validate_split(cod_collected: int, rider_earning: int, admin_net: int) -> None:
    if cod_collected < 0 or rider_earning < 0 or admin_net < 0:
        raise InvalidSplit(
            f"Split figures must be non-negative "
            f"(cod={cod_collected}, earning={rider_earning}, net={admin_net})"
        )
    if cod_collected == 0:
        if admin_net != 0:
            raise InvalidSplit("A delivery without cash cannot owe the platform a net amount")
    elif cod_collected != rider_earning + admin_net:
        raise InvalidSplit(
            f"Cash collected {cod_collected} != rider earning {rider_earning} + admin net {admin_net}"
        )


class LedgerService:
    """
    Per-rider cash ledger.

    Every mutation goes through run_atomic: it holds the rider's lock, builds a
    unit of work, re-evaluates the settlement status and commits against the
    account version it read.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        publisher=None,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.state_machine = SettlementStateMachine(self.settings)
        self.publisher = publisher

    def run_atomic(
        self, rider_id: str, work: Callable[[UnitOfWork, datetime], T]
    ) -> tuple[T, Optional[RiderLedgerAccount]]:
        attempts = max(1, self.settings.COMMIT_RETRIES)
        lock = self.storage.rider_lock(rider_id)
        for attempt in range(1, attempts + 1):
            with lock:
                uow = self.storage.begin(rider_id)
                now = self.clock()
                result = work(uow, now)
                if not uow.dirty:
                    return result, uow.account

                account = self.state_machine.apply(uow.account, now)
                uow.set_account(account.model_copy(update={"updated_at": now}))
                try:
                    return result, self.storage.commit(uow)
                except ConcurrentMutationConflict as e:
                    logger.warning(f"[LEDGER] Commit conflict for rider {rider_id} (attempt {attempt}/{attempts}): {e}")
                    if attempt == attempts:
                        raise
        raise ConcurrentMutationConflict(f"Could not commit rider {rider_id}")

    def get_account(self, rider_id: str) -> RiderLedgerAccount:
        account = self.storage.account(rider_id)
        if account is None:
            raise RiderNotFound(f"Rider {rider_id} has no ledger account")
        return account

    def post_delivery(
        self,
        rider_id: str,
        order_id: str,
        cod_collected: int,
        rider_earning: int,
        admin_net: int,
        strict: bool = False,
    ) -> PostingResult:
        validate_split(cod_collected, rider_earning, admin_net)

        def work(uow: UnitOfWork, now: datetime):
            account = uow.account
            if account is not None and account.is_blocked:
                raise RiderBlocked(f"Rider {rider_id} is blocked and cannot take deliveries")

            existing = uow.find_order(order_id)
            if existing is not None:
                if (existing.cod_collected, existing.rider_earning, existing.admin_net) != (
                    cod_collected, rider_earning, admin_net
                ):
                    logger.warning(
                        f"[LEDGER] Replay of order {order_id} for rider {rider_id} with different figures; "
                        f"keeping the original posting"
                    )
                if strict:
                    raise DuplicateEvent(f"Order {order_id} already posted for rider {rider_id}")
                return existing, False

            if account is None:
                account = RiderLedgerAccount(rider_id=rider_id, created_at=now, updated_at=now)
            tx = LedgerTransaction(
                id=transaction_id_for(rider_id, order_id),
                rider_id=rider_id,
                order_id=order_id,
                kind=TransactionKind.DELIVERY,
                cod_collected=cod_collected,
                rider_earning=rider_earning,
                admin_net=admin_net,
                created_at=now,
            )
            uow.append_transaction(tx)
            uow.set_account(account.model_copy(update={
                "cod_balance": account.cod_balance + cod_collected,
                "earnings_balance": account.earnings_balance + rider_earning,
            }))
            return tx, True

        (tx, created), account = self.run_atomic(rider_id, work)
        if created:
            logger.info(
                f"[LEDGER] Posted order {order_id} for rider {rider_id} | "
                f"cod={cod_collected} earning={rider_earning} net={admin_net} | "
                f"cod_balance={account.cod_balance}"
            )
        return PostingResult(transaction=tx, account=account, created=created)

    def settle(
        self,
        rider_id: str,
        amount_collected: int,
        earnings_paid: int = 0,
        settled_by: Optional[str] = None,
    ) -> SettlementResult:
        if amount_collected < 0 or earnings_paid < 0:
            raise InvalidAmount(
                f"Settlement amounts must be non-negative "
                f"(collected={amount_collected}, paid={earnings_paid})"
            )

        def work(uow: UnitOfWork, now: datetime):
            account = uow.account
            if account is None:
                raise RiderNotFound(f"Rider {rider_id} has no ledger account")
            if amount_collected > account.cod_balance:
                raise InsufficientBalance(
                    f"Cannot collect {amount_collected}; rider {rider_id} holds {account.cod_balance}"
                )
            if earnings_paid > account.earnings_balance:
                raise InsufficientBalance(
                    f"Cannot pay {earnings_paid}; rider {rider_id} is owed {account.earnings_balance}"
                )

            batch_id = uuid4()
            touched = self._apply_fifo(uow, amount_collected, batch_id, now)
            batch = SettlementBatch(
                id=batch_id,
                rider_id=rider_id,
                amount_collected=amount_collected,
                earnings_paid=earnings_paid,
                settled_at=now,
                settled_by=settled_by,
                transaction_ids=[tx.id for tx in touched],
            )
            uow.record_batch(batch)
            update = {
                "cod_balance": account.cod_balance - amount_collected,
                "earnings_balance": account.earnings_balance - earnings_paid,
            }
            # A payout alone does not restart the grace period.
            if amount_collected > 0:
                update["last_settlement_date"] = now
            uow.set_account(account.model_copy(update=update))
            return batch, [tx for tx in touched if tx.status == TransactionStatus.SETTLED]

        (batch, settled), account = self.run_atomic(rider_id, work)
        logger.info(
            f"[LEDGER] Settled rider {rider_id} | collected={amount_collected} paid={earnings_paid} "
            f"| {len(settled)} transactions settled | by={settled_by or '-'} | cod_balance={account.cod_balance}"
        )
        self._publish(EventName.STATS_UPDATED, rider_id, {
            "reason": "settlement",
            "cod_balance": account.cod_balance,
            "earnings_balance": account.earnings_balance,
            "settlement_status": account.settlement_status.value,
        })
        return SettlementResult(batch=batch, account=account, settled_transactions=settled)

    def _apply_fifo(
        self, uow: UnitOfWork, amount: int, batch_id: UUID, now: datetime
    ) -> list[LedgerTransaction]:
        """Walk pending deliveries oldest first and apply the collected cash."""
        remaining = amount
        touched = []
        for tx in list(uow.transactions):
            if tx.kind != TransactionKind.DELIVERY or tx.status != TransactionStatus.PENDING:
                continue
            outstanding = tx.outstanding()
            if outstanding <= remaining:
                updated = tx.model_copy(update={
                    "settled_amount": tx.cod_collected,
                    "status": TransactionStatus.SETTLED,
                    "settled_at": now,
                    "batch_id": batch_id,
                })
                remaining -= outstanding
            elif remaining > 0:
                # Partial cover: the row stays pending with the remainder outstanding.
                updated = tx.model_copy(update={"settled_amount": tx.settled_amount + remaining})
                remaining = 0
            else:
                break
            uow.replace_transaction(updated)
            touched.append(updated)
        return touched

    def set_blocked(
        self,
        rider_id: str,
        blocked: bool,
        performed_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> BlockResult:
        def work(uow: UnitOfWork, now: datetime):
            existing = uow.account
            account = existing or RiderLedgerAccount(rider_id=rider_id, created_at=now, updated_at=now)
            previous = account.settlement_status
            if blocked:
                updated = self.state_machine.block(account, reason)
            else:
                updated = self.state_machine.unblock(account, now)
            if updated is not account or existing is None:
                uow.set_account(updated)
            return previous

        previous, account = self.run_atomic(rider_id, work)
        if account.settlement_status == previous:
            message = f"Rider already {previous.value}"
        else:
            message = f"Rider moved from {previous.value} to {account.settlement_status.value}"
        logger.info(f"[LEDGER] set_blocked({blocked}) on rider {rider_id} by {performed_by or '-'}: {message}")

        if account.settlement_status != previous:
            self._publish(EventName.STATS_UPDATED, rider_id, {
                "reason": "blocked" if blocked else "unblocked",
                "settlement_status": account.settlement_status.value,
                "performed_by": performed_by,
            })
        return BlockResult(account=account, previous_status=previous, message=message)

    def sweep(self) -> SweepResult:
        """Re-evaluate every account against the clock (grace periods expire without writes)."""
        changed: dict[str, SettlementStatus] = {}
        rider_ids = self.storage.rider_ids()

        def work(uow: UnitOfWork, now: datetime):
            updated = self.state_machine.apply(uow.account, now)
            if updated is not uow.account:
                uow.set_account(updated)
                return True
            return False

        for rider_id in rider_ids:
            moved, account = self.run_atomic(rider_id, work)
            if moved:
                changed[rider_id] = account.settlement_status

        if changed:
            self._publish(EventName.STATS_UPDATED, None, {
                "reason": "sweep",
                "changed": {rider_id: status.value for rider_id, status in changed.items()},
            })
        return SweepResult(evaluated=len(rider_ids), changed=changed)

    def _publish(self, name: EventName, rider_id: Optional[str], payload: dict[str, Any]) -> None:
        if self.publisher is not None:
            self.publisher.publish(name, rider_id, payload)
