"""
Settlement status rules.

The balance-driven axis (active <-> overdue) is derived on every commit.
Blocking is an admin decision and is never entered or left automatically.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .config import Settings
from .models import RiderLedgerAccount, SettlementStatus

logger = logging.getLogger(__name__)


class SettlementStateMachine:
    def __init__(self, settings: Settings):
        self.settings = settings

    def is_over_threshold(self, account: RiderLedgerAccount) -> bool:
        return account.cod_balance > self.settings.OVERDUE_THRESHOLD

    def grace_expired(self, account: RiderLedgerAccount, now: datetime) -> bool:
        if account.cod_balance <= 0:
            return False
        since = account.last_settlement_date or account.created_at
        return now - since > timedelta(days=self.settings.SETTLEMENT_GRACE_DAYS)

    def evaluate(self, account: RiderLedgerAccount, now: datetime) -> SettlementStatus:
        if account.settlement_status == SettlementStatus.BLOCKED:
            return SettlementStatus.BLOCKED
        if self.is_over_threshold(account) or self.grace_expired(account, now):
            return SettlementStatus.OVERDUE
        return SettlementStatus.ACTIVE

    def apply(self, account: RiderLedgerAccount, now: datetime) -> RiderLedgerAccount:
        status = self.evaluate(account, now)
        if status == account.settlement_status:
            return account
        logger.info(
            f"[STATUS] Rider {account.rider_id}: {account.settlement_status.value} -> {status.value} "
            f"(cod_balance={account.cod_balance})"
        )
        return account.model_copy(update={"settlement_status": status})

    def block(self, account: RiderLedgerAccount, reason: Optional[str] = None) -> RiderLedgerAccount:
        if account.settlement_status == SettlementStatus.BLOCKED:
            return account
        logger.warning(f"[STATUS] Rider {account.rider_id} blocked by admin. Reason: {reason or '-'}")
        return account.model_copy(update={"settlement_status": SettlementStatus.BLOCKED})

    def unblock(self, account: RiderLedgerAccount, now: datetime) -> RiderLedgerAccount:
        if account.settlement_status != SettlementStatus.BLOCKED:
            return account
        logger.info(f"[STATUS] Rider {account.rider_id} unblocked by admin")
        # Lands on active, then the balance rule decides in the same commit.
        return self.apply(
            account.model_copy(update={"settlement_status": SettlementStatus.ACTIVE}),
            now,
        )

    def can_accept_orders(self, account: Optional[RiderLedgerAccount]) -> bool:
        return account is None or account.settlement_status != SettlementStatus.BLOCKED
