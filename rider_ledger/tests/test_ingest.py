"""
Tests for turning "order delivered" events into ledger postings.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from rider_ledger.bonus import BonusTracker
from rider_ledger.config import Settings
from rider_ledger.errors import InvalidSplit, RiderBlocked
from rider_ledger.events import NotificationPublisher
from rider_ledger.ingest import OrderCompletionIngestor, compute_split
from rider_ledger.models import EventName
from rider_ledger.service import LedgerService


RIDER_ID = "rider-007"
NOW = datetime(2026, 7, 1, 18, 45, tzinfo=timezone.utc)


def make_ingestor(**overrides):
    publisher = NotificationPublisher()
    ledger = LedgerService(settings=Settings(**overrides), clock=lambda: NOW, publisher=publisher)
    tracker = BonusTracker(ledger)
    return OrderCompletionIngestor(ledger, tracker, publisher), publisher


class TestComputeSplit:
    """Tests for the order split."""

    def test_cod_split(self):
        split = compute_split(1850, "0.10", True, 150)

        assert split.commission_amount == 185
        assert split.cod_collected == 1850
        assert split.rider_earning == 150
        assert split.admin_net == 1700

    def test_commission_rounds_half_up(self):
        split = compute_split(1005, Decimal("0.10"), True, 150)

        assert split.commission_amount == 101

    def test_prepaid_split(self):
        split = compute_split(1850, "0.10", False, 150)

        assert split.cod_collected == 0
        assert split.admin_net == 0
        assert split.rider_earning == 150

    def test_cod_below_fee_rejected(self):
        with pytest.raises(InvalidSplit):
            compute_split(100, "0.10", True, 150)

    def test_malformed_rate_rejected(self):
        with pytest.raises(InvalidSplit):
            compute_split(1000, "abc", True, 150)

    def test_non_finite_rate_rejected(self):
        with pytest.raises(InvalidSplit):
            compute_split(1000, "NaN", True, 150)

    def test_rate_out_of_range_rejected(self):
        with pytest.raises(InvalidSplit):
            compute_split(1000, "1.5", True, 150)


class TestOrderDelivered:
    """Tests for the ingest entry point."""

    def test_defaults_applied(self):
        ingestor, _ = make_ingestor(DEFAULT_DELIVERY_FEE=150)

        result = ingestor.on_order_delivered("ORD-1", RIDER_ID, 1000, None, True)

        assert result.split.rider_earning == 150
        assert result.split.commission_rate == Decimal("0.10")
        assert result.posting.account.cod_balance == 1000
        assert result.bonus.progress.daily_delivery_count == 1
        assert result.bonus.progress.date == NOW.date()
        assert result.duplicate is False

    def test_delivered_on_selects_bonus_day(self):
        ingestor, _ = make_ingestor()

        result = ingestor.on_order_delivered(
            "ORD-1", RIDER_ID, 1000, "0.10", True, delivered_on=date(2026, 6, 30)
        )

        assert result.bonus.progress.date == date(2026, 6, 30)

    def test_replay_is_duplicate(self):
        ingestor, _ = make_ingestor()
        ingestor.on_order_delivered("ORD-1", RIDER_ID, 1000, "0.10", True, delivery_fee=200)

        replay = ingestor.on_order_delivered("ORD-1", RIDER_ID, 1000, "0.10", True, delivery_fee=200)

        assert replay.duplicate is True
        assert replay.posting.created is False
        assert replay.bonus.counted is False
        assert replay.posting.account.cod_balance == 1000
        assert replay.posting.account.earnings_balance == 200

    def test_blocked_rider_refused(self):
        ingestor, _ = make_ingestor()
        ingestor.ledger.set_blocked(RIDER_ID, True)

        with pytest.raises(RiderBlocked):
            ingestor.on_order_delivered("ORD-1", RIDER_ID, 1000, "0.10", True)

        assert ingestor.bonus.progress(RIDER_ID, NOW.date()) is None
        assert ingestor.ledger.get_account(RIDER_ID).cod_balance == 0

    def test_invalid_split_writes_nothing(self):
        ingestor, _ = make_ingestor()

        with pytest.raises(InvalidSplit):
            ingestor.on_order_delivered("ORD-1", RIDER_ID, 100, "0.10", True, delivery_fee=150)

        assert ingestor.ledger.storage.account(RIDER_ID) is None


class TestIngestEvents:
    """Tests for the notifications sent after a delivery."""

    def test_events_in_order(self):
        ingestor, publisher = make_ingestor(BONUS_TARGET_DELIVERIES=1, BONUS_AMOUNT=300)
        subscription = publisher.subscribe()

        ingestor.on_order_delivered("ORD-1", RIDER_ID, 1000, "0.10", True)

        events = subscription.drain()
        assert [e.name for e in events] == [
            EventName.ORDER_UPDATED,
            EventName.BONUS_PROGRESS_UPDATED,
            EventName.BONUS_ACHIEVED,
            EventName.STATS_UPDATED,
        ]
        assert all(e.rider_id == RIDER_ID for e in events)
        assert events[2].payload["bonus_amount"] == 300
        assert events[3].payload["earnings_balance"] == 150 + 300

    def test_replay_publishes_nothing(self):
        ingestor, publisher = make_ingestor()
        ingestor.on_order_delivered("ORD-1", RIDER_ID, 1000, "0.10", True)
        subscription = publisher.subscribe()

        ingestor.on_order_delivered("ORD-1", RIDER_ID, 1000, "0.10", True)

        assert subscription.drain() == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
