"""
Unit Tests for the Ledger Service

Tests cover:
1. Delivery postings and idempotency
2. Split validation
3. Settlement and FIFO clearing
4. Commit conflicts and retries
5. Concurrent postings on one rider
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from rider_ledger.errors import (
    ConcurrentMutationConflict,
    DuplicateEvent,
    InsufficientBalance,
    InvalidAmount,
    InvalidSplit,
    RiderBlocked,
    RiderNotFound,
)
from rider_ledger.models import TransactionStatus
from rider_ledger.service import LedgerService, transaction_id_for


# Test constants
RIDER_ID = "rider-001"
NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def fixed_clock():
    return NOW


def post(service, order_id, cod, earning=150, rider_id=RIDER_ID):
    return service.post_delivery(rider_id, order_id, cod, earning, cod - earning if cod else 0)


class TestPostDelivery:
    """Tests for recording delivered orders."""

    def test_cod_delivery_increases_balances(self):
        """A COD delivery adds the cash and the rider's fee."""
        service = LedgerService(clock=fixed_clock)

        result = service.post_delivery(RIDER_ID, "ORD-1", 1000, 150, 850)

        assert result.created is True
        assert result.account.cod_balance == 1000
        assert result.account.earnings_balance == 150
        assert result.transaction.status == TransactionStatus.PENDING
        assert result.transaction.id == transaction_id_for(RIDER_ID, "ORD-1")

    def test_non_cod_delivery_only_earns(self):
        """Prepaid orders leave the cash balance alone."""
        service = LedgerService(clock=fixed_clock)

        result = service.post_delivery(RIDER_ID, "ORD-1", 0, 150, 0)

        assert result.account.cod_balance == 0
        assert result.account.earnings_balance == 150

    def test_replay_returns_existing_transaction(self):
        """Posting the same order twice changes nothing the second time."""
        service = LedgerService(clock=fixed_clock)

        first = post(service, "ORD-1", 500)
        second = post(service, "ORD-1", 500)

        assert second.created is False
        assert second.transaction.id == first.transaction.id
        assert second.account.cod_balance == 500
        assert len(service.storage.state(RIDER_ID).transactions) == 1

    def test_replay_with_different_figures_keeps_original(self):
        """A replay carrying other amounts is still absorbed."""
        service = LedgerService(clock=fixed_clock)

        post(service, "ORD-1", 500)
        replay = post(service, "ORD-1", 900)

        assert replay.created is False
        assert replay.transaction.cod_collected == 500
        assert service.get_account(RIDER_ID).cod_balance == 500

    def test_strict_replay_raises(self):
        """Strict callers can treat a replay as an error."""
        service = LedgerService(clock=fixed_clock)
        service.post_delivery(RIDER_ID, "ORD-1", 500, 150, 350)

        with pytest.raises(DuplicateEvent):
            service.post_delivery(RIDER_ID, "ORD-1", 500, 150, 350, strict=True)

    def test_blocked_rider_cannot_post(self):
        """A blocked rider's delivery fails without touching balances."""
        service = LedgerService(clock=fixed_clock)
        service.set_blocked(RIDER_ID, True, performed_by="admin")

        with pytest.raises(RiderBlocked):
            post(service, "ORD-1", 500)

        account = service.get_account(RIDER_ID)
        assert account.cod_balance == 0
        assert account.earnings_balance == 0
        assert service.storage.state(RIDER_ID).transactions == ()

    def test_unknown_rider_has_no_account(self):
        """Accounts only exist once something was posted."""
        service = LedgerService()

        with pytest.raises(RiderNotFound):
            service.get_account("nobody")


class TestSplitValidation:
    """Tests for rejecting figures that do not add up."""

    def test_cod_split_must_balance(self):
        service = LedgerService(clock=fixed_clock)

        with pytest.raises(InvalidSplit):
            service.post_delivery(RIDER_ID, "ORD-1", 500, 150, 300)

        assert service.storage.account(RIDER_ID) is None

    def test_negative_figures_rejected(self):
        service = LedgerService(clock=fixed_clock)

        with pytest.raises(InvalidSplit):
            service.post_delivery(RIDER_ID, "ORD-1", -100, 0, -100)

    def test_non_cod_cannot_owe_platform(self):
        service = LedgerService(clock=fixed_clock)

        with pytest.raises(InvalidSplit):
            service.post_delivery(RIDER_ID, "ORD-1", 0, 150, 50)


class TestSettlement:
    """Tests for cash handover and FIFO clearing."""

    def test_full_settlement_scenario(self):
        """Three COD deliveries then a full settlement clear everything."""
        service = LedgerService(clock=fixed_clock)
        post(service, "ORD-1", 500)
        post(service, "ORD-2", 800)
        post(service, "ORD-3", 300)
        assert service.get_account(RIDER_ID).cod_balance == 1600

        result = service.settle(RIDER_ID, 1600, earnings_paid=0, settled_by="admin-7")

        assert result.account.cod_balance == 0
        assert result.account.last_settlement_date == NOW
        assert len(result.settled_transactions) == 3
        assert all(tx.status == TransactionStatus.SETTLED for tx in result.settled_transactions)
        assert all(tx.batch_id == result.batch.id for tx in result.settled_transactions)
        assert result.batch.settled_by == "admin-7"

    def test_partial_settlement_keeps_remainder_pending(self):
        """Cash that does not cover a delivery is applied to it without settling it."""
        service = LedgerService(clock=fixed_clock)
        first = post(service, "ORD-1", 500).transaction
        second = post(service, "ORD-2", 800).transaction

        result = service.settle(RIDER_ID, 700)

        assert result.account.cod_balance == 600
        assert [tx.id for tx in result.settled_transactions] == [first.id]
        assert result.batch.transaction_ids == [first.id, second.id]

        stored = {tx.id: tx for tx in service.storage.state(RIDER_ID).transactions}
        assert stored[second.id].status == TransactionStatus.PENDING
        assert stored[second.id].settled_amount == 200
        assert stored[second.id].outstanding() == 600

    def test_settle_more_than_held_fails(self):
        """Overcollection is rejected and the balance is unchanged."""
        service = LedgerService(clock=fixed_clock)
        post(service, "ORD-1", 500)

        with pytest.raises(InsufficientBalance):
            service.settle(RIDER_ID, 501)

        account = service.get_account(RIDER_ID)
        assert account.cod_balance == 500
        assert account.last_settlement_date is None
        assert service.storage.state(RIDER_ID).batches == ()

    def test_negative_amount_rejected(self):
        service = LedgerService(clock=fixed_clock)
        post(service, "ORD-1", 500)

        with pytest.raises(InvalidAmount):
            service.settle(RIDER_ID, -1)

    def test_earnings_payout_reduces_earnings(self):
        """Paying the rider out draws down the earnings balance."""
        service = LedgerService(clock=fixed_clock)
        post(service, "ORD-1", 500)

        result = service.settle(RIDER_ID, 500, earnings_paid=150)

        assert result.account.earnings_balance == 0
        assert result.batch.earnings_paid == 150

    def test_earnings_overpayment_fails(self):
        service = LedgerService(clock=fixed_clock)
        post(service, "ORD-1", 500)

        with pytest.raises(InsufficientBalance):
            service.settle(RIDER_ID, 0, earnings_paid=151)

    def test_zero_cash_delivery_settles_when_reached(self):
        """Prepaid deliveries are cleared by any settlement that reaches them."""
        service = LedgerService(clock=fixed_clock)
        service.post_delivery(RIDER_ID, "ORD-1", 0, 150, 0)

        result = service.settle(RIDER_ID, 0, earnings_paid=150)

        assert len(result.settled_transactions) == 1
        assert result.account.earnings_balance == 0

    def test_settle_unknown_rider(self):
        service = LedgerService(clock=fixed_clock)

        with pytest.raises(RiderNotFound):
            service.settle("nobody", 100)


class TestCommitConflicts:
    """Tests for the optimistic version check."""

    def test_conflict_is_retried(self, monkeypatch):
        """One lost commit is retried against fresh state."""
        service = LedgerService(clock=fixed_clock)
        original_commit = service.storage.commit
        calls = {"count": 0}

        def flaky_commit(uow):
            calls["count"] += 1
            if calls["count"] == 1:
                raise ConcurrentMutationConflict("simulated")
            return original_commit(uow)

        monkeypatch.setattr(service.storage, "commit", flaky_commit)
        result = post(service, "ORD-1", 500)

        assert calls["count"] == 2
        assert result.created is True
        assert service.get_account(RIDER_ID).cod_balance == 500

    def test_conflict_surfaces_after_retries(self, monkeypatch):
        """When every attempt conflicts, nothing is written."""
        service = LedgerService(clock=fixed_clock)

        def always_conflict(uow):
            raise ConcurrentMutationConflict("simulated")

        monkeypatch.setattr(service.storage, "commit", always_conflict)

        with pytest.raises(ConcurrentMutationConflict):
            post(service, "ORD-1", 500)
        assert service.storage.account(RIDER_ID) is None

    def test_stale_unit_of_work_rejected(self):
        """Storage refuses a commit built on an old version."""
        service = LedgerService(clock=fixed_clock)
        post(service, "ORD-1", 500)

        stale = service.storage.begin(RIDER_ID)
        post(service, "ORD-2", 300)
        stale.set_account(stale.account.model_copy(update={"cod_balance": 0}))

        with pytest.raises(ConcurrentMutationConflict):
            service.storage.commit(stale)
        assert service.get_account(RIDER_ID).cod_balance == 800


class TestConcurrentPostings:
    """Tests for many writers on the same rider."""

    def test_distinct_orders_all_land(self):
        service = LedgerService()
        workers = 20
        barrier = threading.Barrier(workers)

        def deliver(i):
            barrier.wait()
            return post(service, f"ORD-{i}", 500)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(deliver, range(workers)))

        assert all(r.created for r in results)
        account = service.get_account(RIDER_ID)
        assert account.cod_balance == 500 * workers
        assert account.earnings_balance == 150 * workers

    def test_same_order_posts_once(self):
        service = LedgerService()
        workers = 20
        barrier = threading.Barrier(workers)

        def deliver(_):
            barrier.wait()
            return post(service, "ORD-1", 500)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(deliver, range(workers)))

        assert sum(1 for r in results if r.created) == 1
        assert service.get_account(RIDER_ID).cod_balance == 500
        assert len(service.storage.state(RIDER_ID).transactions) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
