"""
Read side for admin dashboards.

Nothing here takes a rider lock. Each rider's state is swapped whole on
commit, so every read works on one commit and may trail the latest write
slightly.
"""

from datetime import date
from typing import Optional

from .config import Settings
from .errors import RiderNotFound
from .models import (
    BonusProgress,
    BonusStatus,
    FleetTotals,
    LedgerHistoryResponse,
    LedgerTransaction,
    PendingBreakdown,
    PendingTransactionView,
    ReconciliationReport,
    RiderLedgerAccount,
    RiderSummary,
    SettlementBatch,
    SettlementStatus,
    TransactionKind,
    TransactionStatus,
)
from .storage import InMemoryStorage, RiderState


def _pending_deliveries(transactions) -> list[LedgerTransaction]:
    return [
        tx for tx in transactions
        if tx.kind == TransactionKind.DELIVERY and tx.status == TransactionStatus.PENDING
    ]


def _admin_share(tx: LedgerTransaction) -> int:
    return min(tx.admin_net, tx.outstanding())


class AdminQueryService:
    def __init__(self, storage: InMemoryStorage, settings: Settings):
        self.storage = storage
        self.settings = settings
        self._fleet_cache: Optional[FleetTotals] = None

    def _snapshot(self, rider_id: str) -> RiderState:
        state = self.storage.state(rider_id)
        if state is None:
            raise RiderNotFound(f"Rider {rider_id} has no ledger account")
        return state

    def _summary(self, account: RiderLedgerAccount) -> RiderSummary:
        return RiderSummary(
            rider_id=account.rider_id,
            cod_balance=account.cod_balance,
            earnings_balance=account.earnings_balance,
            settlement_status=account.settlement_status,
            last_settlement_date=account.last_settlement_date,
            over_threshold=account.cod_balance > self.settings.OVERDUE_THRESHOLD,
        )

    def rider_summary(self, rider_id: str) -> RiderSummary:
        return self._summary(self._snapshot(rider_id).account)

    def list_riders(self, status: Optional[SettlementStatus] = None) -> list[RiderSummary]:
        accounts = [state.account for state in self.storage.states()]
        if status is not None:
            accounts = [a for a in accounts if a.settlement_status == status]
        accounts.sort(key=lambda a: (-a.cod_balance, a.rider_id))
        return [self._summary(a) for a in accounts]

    def fleet_totals(self) -> FleetTotals:
        version = self.storage.version
        cached = self._fleet_cache
        if cached is not None and cached.as_of_version == version:
            return cached

        states = self.storage.states()
        accounts = [state.account for state in states]
        counts = {status: 0 for status in SettlementStatus}
        for account in accounts:
            counts[account.settlement_status] += 1

        admin_net_outstanding = sum(
            _admin_share(tx)
            for state in states
            for tx in _pending_deliveries(state.transactions)
        )
        totals = FleetTotals(
            total_riders=len(accounts),
            cash_in_field=sum(a.cod_balance for a in accounts),
            pending_payouts=sum(a.earnings_balance for a in accounts),
            admin_net_outstanding=admin_net_outstanding,
            active_count=counts[SettlementStatus.ACTIVE],
            overdue_count=counts[SettlementStatus.OVERDUE],
            blocked_count=counts[SettlementStatus.BLOCKED],
            currency=self.settings.CURRENCY,
            as_of_version=version,
        )
        self._fleet_cache = totals
        return totals

    def pending_breakdown(self, rider_id: str) -> PendingBreakdown:
        _, transactions, _ = self._snapshot(rider_id)
        views = [
            PendingTransactionView(
                transaction_id=tx.id,
                order_id=tx.order_id,
                collected=tx.cod_collected,
                fee=tx.rider_earning,
                net=tx.admin_net,
                outstanding=tx.outstanding(),
                created_at=tx.created_at,
            )
            for tx in _pending_deliveries(transactions)
        ]
        return PendingBreakdown(
            rider_id=rider_id,
            transactions=views,
            total_collected=sum(v.collected for v in views),
            total_fee=sum(v.fee for v in views),
            total_net=sum(v.net for v in views),
            total_outstanding=sum(v.outstanding for v in views),
        )

    def transaction_history(self, rider_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        _, transactions, _ = self._snapshot(rider_id)
        entries = list(reversed(transactions))
        return LedgerHistoryResponse(
            rider_id=rider_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
        )

    def settlement_history(self, rider_id: str) -> list[SettlementBatch]:
        _, _, batches = self._snapshot(rider_id)
        return list(reversed(batches))

    def bonus_status(self, rider_id: str, on_date: date) -> BonusStatus:
        current = self.storage.bonus_progress.get((rider_id, on_date))
        if current is None:
            current = BonusProgress(
                rider_id=rider_id,
                date=on_date,
                target_deliveries=self.settings.BONUS_TARGET_DELIVERIES,
                bonus_amount=self.settings.BONUS_AMOUNT,
            )
        history = sorted(
            (
                p for (r, _), p in list(self.storage.bonus_progress.items())
                if r == rider_id and p.is_bonus_achieved
            ),
            key=lambda p: p.date,
            reverse=True,
        )
        return BonusStatus(
            rider_id=rider_id,
            current=current,
            history=history[: self.settings.BONUS_HISTORY_LIMIT],
        )

    def daily_bonus_board(self, on_date: date) -> list[BonusProgress]:
        board = [p for (_, d), p in list(self.storage.bonus_progress.items()) if d == on_date]
        board.sort(key=lambda p: (-p.daily_delivery_count, p.rider_id))
        return board

    def reconcile(self, rider_id: str) -> ReconciliationReport:
        """Replay the log and compare it with the cached balances."""
        account, transactions, batches = self._snapshot(rider_id)
        replayed_cod = sum(tx.outstanding() for tx in transactions if tx.kind == TransactionKind.DELIVERY)
        replayed_earnings = sum(tx.rider_earning for tx in transactions) - sum(
            b.earnings_paid for b in batches
        )
        return ReconciliationReport(
            rider_id=rider_id,
            cached_cod_balance=account.cod_balance,
            replayed_cod_balance=replayed_cod,
            cached_earnings_balance=account.earnings_balance,
            replayed_earnings_balance=replayed_earnings,
            consistent=(
                account.cod_balance == replayed_cod
                and account.earnings_balance == replayed_earnings
            ),
        )
