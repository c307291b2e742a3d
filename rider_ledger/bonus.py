"""
Daily delivery bonus.

One BonusProgress per rider per calendar date. The increment, the crossing
check and the earnings credit run inside a single ledger commit, so under any
interleaving exactly one delivery observes the target being reached.
"""

import logging
from datetime import date, datetime
from typing import Optional
from uuid import NAMESPACE_URL, uuid5

from .models import (
    BonusProgress,
    BonusResult,
    LedgerTransaction,
    RiderLedgerAccount,
    TransactionKind,
    TransactionStatus,
)
from .service import LedgerService
from .storage import UnitOfWork

logger = logging.getLogger(__name__)

BONUS_NAMESPACE = uuid5(NAMESPACE_URL, "rider-ledger/bonus")


class BonusTracker:
    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.settings = ledger.settings

    def new_progress(self, rider_id: str, on_date: date) -> BonusProgress:
        return BonusProgress(
            rider_id=rider_id,
            date=on_date,
            target_deliveries=self.settings.BONUS_TARGET_DELIVERIES,
            bonus_amount=self.settings.BONUS_AMOUNT,
        )

    def progress(self, rider_id: str, on_date: date) -> Optional[BonusProgress]:
        return self.ledger.storage.bonus_progress.get((rider_id, on_date))

    def increment(self, rider_id: str, order_id: str, on_date: date) -> BonusResult:
        def work(uow: UnitOfWork, now: datetime):
            current = uow.bonus_for(on_date) or self.new_progress(rider_id, on_date)
            if uow.bonus_counted(order_id):
                return current, False, False

            count = current.daily_delivery_count + 1
            update = {"daily_delivery_count": count}
            credited = False
            if count >= current.target_deliveries and not current.is_bonus_achieved:
                update["is_bonus_achieved"] = True
                update["bonus_credited_at"] = now
                self._credit(uow, current, now)
                credited = True

            progress = current.model_copy(update=update)
            uow.record_bonus(progress, order_id)
            if uow.account is None:
                uow.set_account(RiderLedgerAccount(rider_id=rider_id, created_at=now, updated_at=now))
            return progress, True, credited

        (progress, counted, credited), _ = self.ledger.run_atomic(rider_id, work)
        if credited:
            logger.info(
                f"[BONUS] Rider {rider_id} reached {progress.target_deliveries} deliveries on "
                f"{on_date.isoformat()}; credited {progress.bonus_amount}"
            )
        elif not counted:
            logger.debug(f"[BONUS] Order {order_id} already counted for rider {rider_id}")
        return BonusResult(progress=progress, counted=counted, credited=credited)

    def _credit(self, uow: UnitOfWork, progress: BonusProgress, now: datetime) -> None:
        account = uow.account or RiderLedgerAccount(rider_id=progress.rider_id, created_at=now, updated_at=now)
        uow.append_transaction(LedgerTransaction(
            id=uuid5(BONUS_NAMESPACE, f"{progress.rider_id}:{progress.date.isoformat()}"),
            rider_id=progress.rider_id,
            kind=TransactionKind.BONUS,
            cod_collected=0,
            rider_earning=progress.bonus_amount,
            admin_net=0,
            status=TransactionStatus.SETTLED,
            created_at=now,
            settled_at=now,
        ))
        uow.set_account(account.model_copy(update={
            "earnings_balance": account.earnings_balance + progress.bonus_amount,
        }))
