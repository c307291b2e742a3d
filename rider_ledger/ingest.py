import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

from .bonus import BonusTracker
from .errors import InvalidSplit, RiderBlocked
from .events import NotificationPublisher
from .models import DeliverySplit, EventName, IngestResult
from .service import LedgerService

logger = logging.getLogger(__name__)


def compute_split(
    order_total: int,
    commission_rate: Union[Decimal, float, str],
    is_cod: bool,
    delivery_fee: int,
) -> DeliverySplit:
    """
    Split a delivered order into the rider leg.

    The commission is owed by the restaurant leg and is only reported here.
    On COD the rider holds the whole order total; everything above the
    delivery fee is owed back to the platform.
    """
    try:
        rate = Decimal(str(commission_rate))
    except InvalidOperation:
        raise InvalidSplit(f"Commission rate {commission_rate!r} is not a number")
    if not rate.is_finite():
        raise InvalidSplit(f"Commission rate must be finite, got {rate}")
    if order_total < 0:
        raise InvalidSplit(f"Order total must be non-negative, got {order_total}")
    if delivery_fee < 0:
        raise InvalidSplit(f"Delivery fee must be non-negative, got {delivery_fee}")
    if rate < 0 or rate > 1:
        raise InvalidSplit(f"Commission rate must be between 0 and 1, got {rate}")

    commission = int((Decimal(order_total) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if is_cod:
        cod_collected = order_total
        admin_net = order_total - delivery_fee
        if admin_net < 0:
            raise InvalidSplit(f"COD total {order_total} is below the delivery fee {delivery_fee}")
    else:
        cod_collected = 0
        admin_net = 0

    return DeliverySplit(
        order_total=order_total,
        commission_rate=rate,
        commission_amount=commission,
        cod_collected=cod_collected,
        rider_earning=delivery_fee,
        admin_net=admin_net,
    )


class OrderCompletionIngestor:
    """Single entry point for "order delivered" events, which arrive at least once."""

    def __init__(
        self,
        ledger: LedgerService,
        bonus: BonusTracker,
        publisher: Optional[NotificationPublisher] = None,
    ):
        self.ledger = ledger
        self.bonus = bonus
        self.publisher = publisher

    def on_order_delivered(
        self,
        order_id: str,
        rider_id: str,
        order_total: int,
        commission_rate: Optional[Union[Decimal, float, str]],
        is_cod: bool,
        delivery_fee: Optional[int] = None,
        delivered_on: Optional[date] = None,
    ) -> IngestResult:
        settings = self.ledger.settings
        if not self.ledger.state_machine.can_accept_orders(self.ledger.storage.account(rider_id)):
            logger.warning(f"[INGEST] Refused order {order_id}: rider {rider_id} is blocked")
            raise RiderBlocked(f"Rider {rider_id} is blocked; reassign order {order_id}")

        split = compute_split(
            order_total,
            settings.DEFAULT_COMMISSION_RATE if commission_rate is None else commission_rate,
            is_cod,
            settings.DEFAULT_DELIVERY_FEE if delivery_fee is None else delivery_fee,
        )

        posting = self.ledger.post_delivery(
            rider_id, order_id, split.cod_collected, split.rider_earning, split.admin_net
        )
        on_date = delivered_on or self.ledger.clock().date()
        bonus = self.bonus.increment(rider_id, order_id, on_date)

        result = IngestResult(
            order_id=order_id,
            rider_id=rider_id,
            split=split,
            posting=posting,
            bonus=bonus,
            duplicate=not posting.created and not bonus.counted,
        )
        if result.duplicate:
            logger.info(f"[INGEST] Order {order_id} for rider {rider_id} already applied")
        else:
            self._announce(result)
        return result

    def _announce(self, result: IngestResult) -> None:
        if self.publisher is None:
            return
        rider_id = result.rider_id
        posting = result.posting
        progress = result.bonus.progress

        if posting.created:
            self.publisher.publish(EventName.ORDER_UPDATED, rider_id, {
                "order_id": result.order_id,
                "transaction_id": str(posting.transaction.id),
                "cod_collected": posting.transaction.cod_collected,
                "rider_earning": posting.transaction.rider_earning,
                "admin_net": posting.transaction.admin_net,
            })
        if result.bonus.counted:
            self.publisher.publish(EventName.BONUS_PROGRESS_UPDATED, rider_id, {
                "date": progress.date.isoformat(),
                "daily_delivery_count": progress.daily_delivery_count,
                "target_deliveries": progress.target_deliveries,
                "is_bonus_achieved": progress.is_bonus_achieved,
            })
        if result.bonus.credited:
            self.publisher.publish(EventName.BONUS_ACHIEVED, rider_id, {
                "bonus_amount": progress.bonus_amount,
                "total_deliveries": progress.daily_delivery_count,
            })

        account = self.ledger.storage.account(rider_id)
        if account is not None:
            self.publisher.publish(EventName.STATS_UPDATED, rider_id, {
                "reason": "delivery",
                "cod_balance": account.cod_balance,
                "earnings_balance": account.earnings_balance,
                "settlement_status": account.settlement_status.value,
            })
