"""
Tests for the Reservation Engine.

reserve/release/confirm arithmetic and checks, idempotency keys, the
administrative optimistic paths, the repair hook, low-stock alerts and the
no-oversell guarantee under concurrent reservations.
"""

import threading

import pytest

from shared.exceptions import (
    ConcurrentModification,
    InsufficientStock,
    InvalidArgument,
    OverConfirm,
    OverRelease,
    StockRecordNotFound,
)
from services.inventory_service.reservation import ReservationEngine, ReservationRequest


def req(product_id, quantity, key=None, order="ORD-TEST0001"):
    return ReservationRequest(product_id=product_id, quantity=quantity, order_reference=order, idempotency_key=key)


# =============================================================================
# reserve / release / confirm
# =============================================================================


class TestReserve:

    def test_reserve_moves_available_into_reserved(self, ledger, reservation_engine):
        ledger.register(1, on_hand=10, reorder_threshold=0)
        record = reservation_engine.reserve(req(1, 4))
        assert record.reserved == 4
        assert record.on_hand == 10
        assert record.available == 6
        assert record.revision == 1

    def test_reserve_whole_stock(self, ledger, reservation_engine):
        ledger.register(1, on_hand=5, reorder_threshold=0)
        reservation_engine.reserve(req(1, 5))
        assert reservation_engine.available_quantity(1) == 0

    def test_insufficient_stock_changes_nothing(self, ledger, reservation_engine):
        ledger.register(1, on_hand=3, reorder_threshold=0)
        with pytest.raises(InsufficientStock) as exc_info:
            reservation_engine.reserve(req(1, 4))
        assert exc_info.value.product_id == 1
        assert exc_info.value.requested == 4
        record = ledger.load(1)
        assert record.reserved == 0
        assert record.revision == 0

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_non_positive_quantity_rejected_before_anything(self, ledger, reservation_engine, quantity):
        ledger.register(1, on_hand=3)
        with pytest.raises(InvalidArgument):
            reservation_engine.reserve(req(1, quantity))
        with pytest.raises(InvalidArgument):
            reservation_engine.release(req(1, quantity))
        with pytest.raises(InvalidArgument):
            reservation_engine.confirm(req(1, quantity))
        assert ledger.load(1).revision == 0

    def test_unknown_product(self, reservation_engine):
        with pytest.raises(StockRecordNotFound):
            reservation_engine.reserve(req(77, 1))


class TestReleaseAndConfirm:

    def test_release_is_inverse_of_reserve(self, ledger, reservation_engine):
        ledger.register(1, on_hand=10, reorder_threshold=0)
        before = ledger.load(1)
        reservation_engine.reserve(req(1, 6))
        after = reservation_engine.release(req(1, 6))
        assert (after.on_hand, after.reserved) == (before.on_hand, before.reserved)
        assert after.revision == 2

    def test_over_release_rejected(self, ledger, reservation_engine):
        ledger.register(1, on_hand=10, reorder_threshold=0)
        reservation_engine.reserve(req(1, 2))
        with pytest.raises(OverRelease):
            reservation_engine.release(req(1, 3))
        assert ledger.load(1).reserved == 2

    def test_confirm_deducts_on_hand_and_reserved(self, ledger, reservation_engine):
        ledger.register(1, on_hand=10, reorder_threshold=0)
        reservation_engine.reserve(req(1, 4))
        available_before = reservation_engine.available_quantity(1)
        record = reservation_engine.confirm(req(1, 4))
        assert record.on_hand == 6
        assert record.reserved == 0
        assert record.available == available_before

    def test_over_confirm_rejected(self, ledger, reservation_engine):
        ledger.register(1, on_hand=10, reorder_threshold=0)
        reservation_engine.reserve(req(1, 1))
        with pytest.raises(OverConfirm):
            reservation_engine.confirm(req(1, 2))
        record = ledger.load(1)
        assert (record.on_hand, record.reserved) == (10, 1)


# =============================================================================
# Idempotency keys
# =============================================================================


class TestIdempotency:

    def test_repeated_key_applies_once(self, ledger, reservation_engine):
        ledger.register(1, on_hand=10, reorder_threshold=0)
        reservation_engine.reserve(req(1, 3, key="k-1"))
        record = reservation_engine.reserve(req(1, 3, key="k-1"))
        assert record.reserved == 3
        assert record.revision == 1

    def test_repeated_release_key_never_double_releases(self, ledger, reservation_engine):
        ledger.register(1, on_hand=10, reorder_threshold=0)
        reservation_engine.reserve(req(1, 5))
        reservation_engine.release(req(1, 2, key="evt:0"))
        reservation_engine.release(req(1, 2, key="evt:0"))
        assert ledger.load(1).reserved == 3

    def test_key_reused_for_other_operation_is_rejected(self, ledger, reservation_engine):
        ledger.register(1, on_hand=10, reorder_threshold=0)
        reservation_engine.reserve(req(1, 2, key="same"))
        with pytest.raises(InvalidArgument):
            reservation_engine.release(req(1, 2, key="same"))
        assert ledger.load(1).reserved == 2

    def test_failed_operation_does_not_consume_key(self, ledger, reservation_engine):
        ledger.register(1, on_hand=2, reorder_threshold=0)
        with pytest.raises(InsufficientStock):
            reservation_engine.reserve(req(1, 3, key="retry-me"))
        reservation_engine.restock(1, 5)
        record = reservation_engine.reserve(req(1, 3, key="retry-me"))
        assert record.reserved == 3


# =============================================================================
# Queries
# =============================================================================


class TestQueries:

    def test_check_stock(self, ledger, reservation_engine):
        ledger.register(1, on_hand=5, reorder_threshold=0)
        reservation_engine.reserve(req(1, 2))
        assert reservation_engine.check_stock(1, 3) is True
        assert reservation_engine.check_stock(1, 4) is False
        assert reservation_engine.check_stock(999, 1) is False
        assert reservation_engine.check_stock(1, 0) is False

    def test_needs_reorder_uses_on_hand(self, ledger, reservation_engine):
        ledger.register(1, on_hand=12, reorder_threshold=10)
        reservation_engine.reserve(req(1, 10))
        assert reservation_engine.needs_reorder(1) is False
        reservation_engine.confirm(req(1, 2))
        assert reservation_engine.needs_reorder(1) is True

    def test_insufficient_among(self, ledger, reservation_engine):
        ledger.register(1, on_hand=10)
        ledger.register(2, on_hand=1)
        assert reservation_engine.insufficient_among([1, 2], 2) == [2]
        with pytest.raises(InvalidArgument):
            reservation_engine.insufficient_among([1, 2], 0)

    def test_available_quantity_of_unknown_product(self, reservation_engine):
        with pytest.raises(StockRecordNotFound):
            reservation_engine.available_quantity(5)


# =============================================================================
# Administrative paths
# =============================================================================


class TestAdministrative:

    def test_restock(self, ledger, reservation_engine):
        ledger.register(1, on_hand=1)
        record = reservation_engine.restock(1, 9)
        assert record.on_hand == 10
        assert ledger.load(1).revision == 1

    def test_restock_rejects_non_positive(self, ledger, reservation_engine):
        ledger.register(1, on_hand=1)
        with pytest.raises(InvalidArgument):
            reservation_engine.restock(1, 0)

    def test_write_off_only_unreserved_stock(self, ledger, reservation_engine):
        ledger.register(1, on_hand=10, reorder_threshold=0)
        reservation_engine.reserve(req(1, 8))
        with pytest.raises(InsufficientStock):
            reservation_engine.write_off(1, 3)
        assert reservation_engine.write_off(1, 2).on_hand == 8

    def test_update_thresholds(self, ledger, reservation_engine):
        ledger.register(1, on_hand=10)
        record = reservation_engine.update_thresholds(1, reorder_threshold=3)
        assert record.reorder_threshold == 3
        assert record.reorder_batch_size == 50
        with pytest.raises(InvalidArgument):
            reservation_engine.update_thresholds(1, reorder_batch_size=0)

    def test_optimistic_retry_recovers_from_one_conflict(self, ledger, reservation_engine, monkeypatch):
        ledger.register(1, on_hand=10)
        real_save = ledger.save
        calls = []

        def flaky_save(record):
            calls.append(record.revision)
            if len(calls) == 1:
                raise ConcurrentModification("simulated")
            return real_save(record)

        monkeypatch.setattr(ledger, "save", flaky_save)
        record = reservation_engine.restock(1, 5)
        assert record.on_hand == 15
        assert len(calls) == 2

    def test_optimistic_retry_is_bounded(self, ledger, reservation_engine, monkeypatch):
        ledger.register(1, on_hand=10)
        attempts = []

        def always_conflict(record):
            attempts.append(record)
            raise ConcurrentModification("simulated")

        monkeypatch.setattr(ledger, "save", always_conflict)
        with pytest.raises(ConcurrentModification):
            reservation_engine.restock(1, 5)
        assert len(attempts) == 3
        assert ledger.load(1).on_hand == 10

    def test_adjust_reserved_repairs_counter(self, ledger, reservation_engine):
        ledger.register(1, on_hand=10, reorder_threshold=0)
        reservation_engine.reserve(req(1, 6))
        record = reservation_engine.adjust_reserved(1, 2, "stale reservation of cancelled order")
        assert record.reserved == 2
        assert record.revision == 2

    def test_adjust_reserved_validates_bounds(self, ledger, reservation_engine):
        ledger.register(1, on_hand=4)
        with pytest.raises(InvalidArgument):
            reservation_engine.adjust_reserved(1, 5, "too many")
        with pytest.raises(InvalidArgument):
            reservation_engine.adjust_reserved(1, -1, "negative")
        assert ledger.load(1).reserved == 0


# =============================================================================
# Low-stock alerts
# =============================================================================


class TestLowStockAlerts:

    def test_alert_sent_when_on_hand_reaches_threshold(self, ledger, reservation_engine, notifier):
        ledger.register(1, on_hand=12, reorder_threshold=10, reorder_batch_size=40)
        reservation_engine.reserve(req(1, 2))
        assert notifier.sent == []
        reservation_engine.confirm(req(1, 2))
        assert len(notifier.sent) == 1
        message = notifier.sent[0]
        assert message.recipient == "admin@test.local"
        assert "product 1" in message.subject
        assert "Suggested reorder: 40" in message.body

    def test_failing_channel_never_fails_the_operation(self, ledger):
        class BrokenSender:
            def send(self, recipient, subject, body):
                raise OSError("smtp down")

        engine = ReservationEngine(ledger, notifier=BrokenSender(), alert_recipient="ops@test.local")
        ledger.register(1, on_hand=5, reorder_threshold=10)
        record = engine.reserve(req(1, 1))
        assert record.reserved == 1

    def test_undelivered_alert_is_only_logged(self, ledger):
        class RefusingSender:
            def send(self, recipient, subject, body):
                return False

        engine = ReservationEngine(ledger, notifier=RefusingSender(), alert_recipient="ops@test.local")
        ledger.register(1, on_hand=5, reorder_threshold=10)
        assert engine.reserve(req(1, 1)).reserved == 1


# =============================================================================
# Concurrency
# =============================================================================


class TestConcurrentReservations:

    def test_concurrent_reserves_never_oversell(self, ledger, reservation_engine):
        ledger.register(1, on_hand=10, reorder_threshold=0)
        outcomes = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                reservation_engine.reserve(req(1, 3))
                result = "ok"
            except InsufficientStock:
                result = "insufficient"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(30)

        record = ledger.load(1)
        assert outcomes.count("ok") == 3
        assert outcomes.count("insufficient") == 5
        assert record.reserved == 9
        assert record.reserved <= record.on_hand
        assert record.revision == 3
