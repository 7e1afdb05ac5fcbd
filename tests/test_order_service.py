"""
Order service end-to-end against an in-process inventory service.

The order service talks to inventory through the real InventoryClient over
FastAPI's TestClient, so reservation, compensation and error mapping all go
through the same HTTP surface as in deployment.
"""

import json
from decimal import Decimal

import pytest

from shared.exceptions import DownstreamUnavailable, IllegalTransition, InsufficientStock, InvalidArgument, OrderNotFound
from shared.events import OrderLifecycleEvent
from services.order_service.inventory_client import NO_EFFECT
from services.order_service.models import CompensationRecord, Order, OrderLine, OutboxEvent
from services.order_service.service import OrderService


def outbox(order_session_factory, order_number=None):
    session = order_session_factory()
    try:
        query = session.query(OutboxEvent).order_by(OutboxEvent.id)
        if order_number:
            query = query.filter(OutboxEvent.order_number == order_number)
        return [OrderLifecycleEvent.model_validate_json(e.event_data) for e in query.all()]
    finally:
        session.close()


def order_count(order_session_factory):
    session = order_session_factory()
    try:
        return session.query(Order).count()
    finally:
        session.close()


# =============================================================================
# Creation
# =============================================================================


class TestCreateOrder:

    def test_order_for_all_stock_succeeds(self, order_service, register_stock, stock_of, order_session_factory):
        register_stock(1, on_hand=5)
        order = order_service.create_order("user-1", [OrderLine(1, 5, Decimal("2.00"))])

        assert order.status == "PENDING"
        assert order.order_number.startswith("ORD-")
        assert order.total_amount == Decimal("10.00")
        assert stock_of(1)["available"] == 0
        assert stock_of(1)["reserved"] == 5

        events = outbox(order_session_factory, order.order_number)
        assert [e.event_type.value for e in events] == ["CREATED"]
        assert events[0].items[0].quantity == 5

    def test_second_line_short_releases_first_line(self, order_service, register_stock, stock_of, order_session_factory):
        register_stock(1, on_hand=10)
        register_stock(2, on_hand=1)

        with pytest.raises(InsufficientStock):
            order_service.create_order("user-1", [OrderLine(1, 3), OrderLine(2, 2)])

        assert stock_of(1)["reserved"] == 0
        assert stock_of(2)["reserved"] == 0
        assert order_count(order_session_factory) == 0
        assert outbox(order_session_factory) == []

    def test_empty_order_rejected(self, order_service):
        with pytest.raises(InvalidArgument):
            order_service.create_order("user-1", [])

    @pytest.mark.parametrize("line", [OrderLine(1, 0), OrderLine(1, -2), OrderLine(1, 1, Decimal("-0.01"))])
    def test_invalid_lines_rejected_before_reserving(self, order_service, register_stock, stock_of, line):
        register_stock(1, on_hand=5)
        with pytest.raises(InvalidArgument):
            order_service.create_order("user-1", [OrderLine(1, 1), line])
        assert stock_of(1)["reserved"] == 0

    def test_shipping_address_and_notes_are_kept(self, order_service, register_stock):
        register_stock(1, on_hand=5)
        address = {"street": "1 Main St", "city": "Springfield", "state": None, "postal_code": "12345", "country": "US"}
        order = order_service.create_order("user-1", [OrderLine(1, 1)], shipping_address=address, notes="leave at door")
        stored = order_service.get_order(order.order_number)
        assert stored.shipping_address == address
        assert stored.notes == "leave at door"


class TestFailClosed:

    def test_unavailable_inventory_creates_nothing(self, order_session_factory, register_stock, stock_of, inventory_client, monkeypatch):
        register_stock(1, on_hand=5)
        register_stock(2, on_hand=5)
        real_reserve = inventory_client.reserve

        def reserve(product_id, quantity, order_reference, idempotency_key=None):
            if product_id == 2:
                return NO_EFFECT
            return real_reserve(product_id, quantity, order_reference, idempotency_key)

        monkeypatch.setattr(inventory_client, "reserve", reserve)
        service = OrderService(order_session_factory, inventory_client)

        with pytest.raises(DownstreamUnavailable):
            service.create_order("user-1", [OrderLine(1, 2), OrderLine(2, 2)])
        assert stock_of(1)["reserved"] == 0
        assert order_count(order_session_factory) == 0

    def test_uncertain_reserve_is_recorded_and_reconciled(
        self, order_session_factory, register_stock, stock_of, inventory_client, monkeypatch
    ):
        register_stock(1, on_hand=5)
        register_stock(2, on_hand=5)
        real_reserve = inventory_client.reserve

        def reserve(product_id, quantity, order_reference, idempotency_key=None):
            if product_id == 2:
                return NO_EFFECT
            return real_reserve(product_id, quantity, order_reference, idempotency_key)

        monkeypatch.setattr(inventory_client, "reserve", reserve)
        service = OrderService(order_session_factory, inventory_client)

        with pytest.raises(DownstreamUnavailable):
            service.create_order("user-1", [OrderLine(1, 2), OrderLine(2, 2)])

        session = order_session_factory()
        try:
            records = session.query(CompensationRecord).all()
        finally:
            session.close()
        assert len(records) == 1
        assert records[0].product_id == 2
        assert records[0].quantity == 2
        assert records[0].reserve_idempotency_key.endswith(":1:reserve")
        assert records[0].idempotency_key.endswith(":1:compensate")

        # the reserve never reached inventory: replaying it and releasing nets out
        monkeypatch.setattr(inventory_client, "reserve", real_reserve)
        result = service.reconcile_compensations()
        assert result.resolved == [records[0].idempotency_key]
        assert stock_of(2)["reserved"] == 0
        assert stock_of(1)["reserved"] == 0

    def test_reserve_applied_but_reported_unavailable_is_released(
        self, order_session_factory, register_stock, stock_of, inventory_client, monkeypatch
    ):
        register_stock(1, on_hand=5)
        real_reserve = inventory_client.reserve

        def reserve_then_time_out(product_id, quantity, order_reference, idempotency_key=None):
            real_reserve(product_id, quantity, order_reference, idempotency_key)
            return NO_EFFECT

        monkeypatch.setattr(inventory_client, "reserve", reserve_then_time_out)
        service = OrderService(order_session_factory, inventory_client)

        with pytest.raises(DownstreamUnavailable):
            service.create_order("user-1", [OrderLine(1, 2)])
        assert stock_of(1)["reserved"] == 2

        monkeypatch.setattr(inventory_client, "reserve", real_reserve)
        assert len(service.reconcile_compensations().resolved) == 1
        assert stock_of(1)["reserved"] == 0

    def test_uncertain_reserve_that_is_now_refused_resolves_without_release(
        self, order_session_factory, register_stock, stock_of, inventory_client, monkeypatch
    ):
        register_stock(1, on_hand=5)
        real_reserve = inventory_client.reserve
        monkeypatch.setattr(inventory_client, "reserve", lambda *args, **kwargs: NO_EFFECT)
        service = OrderService(order_session_factory, inventory_client)

        with pytest.raises(DownstreamUnavailable):
            service.create_order("user-1", [OrderLine(1, 5)])

        # the stock went elsewhere meanwhile
        real_reserve(1, 5, "ORD-OTHER", "ORD-OTHER:0:reserve")
        monkeypatch.setattr(inventory_client, "reserve", real_reserve)
        assert len(service.reconcile_compensations().resolved) == 1
        assert stock_of(1)["reserved"] == 5


class TestCompensation:

    def test_failed_compensation_is_recorded_and_reconciled(
        self, order_session_factory, register_stock, stock_of, inventory_client, monkeypatch
    ):
        register_stock(1, on_hand=10)
        register_stock(2, on_hand=0)
        real_release = inventory_client.release
        monkeypatch.setattr(inventory_client, "release", lambda *args, **kwargs: NO_EFFECT)
        service = OrderService(order_session_factory, inventory_client)

        with pytest.raises(InsufficientStock):
            service.create_order("user-1", [OrderLine(1, 4), OrderLine(2, 1)])

        # product 1 is still reserved: the compensating release had no effect
        assert stock_of(1)["reserved"] == 4
        session = order_session_factory()
        try:
            records = session.query(CompensationRecord).all()
        finally:
            session.close()
        assert len(records) == 1
        assert records[0].product_id == 1
        assert records[0].quantity == 4
        assert records[0].idempotency_key.endswith(":0:compensate")
        assert records[0].resolved_at is None

        # still unavailable: the record stays open
        result = service.reconcile_compensations()
        assert result.resolved == []
        assert len(result.remaining) == 1

        monkeypatch.setattr(inventory_client, "release", real_release)
        result = service.reconcile_compensations()
        assert result.resolved == [records[0].idempotency_key]
        assert stock_of(1)["reserved"] == 0

        # resolved records are not retried
        assert service.reconcile_compensations().resolved == []
        compensations = service.get_compensations(records[0].order_number)
        assert compensations[0].attempts == 3
        assert compensations[0].resolved_at is not None


# =============================================================================
# Transitions
# =============================================================================


class TestTransitions:

    def test_full_lifecycle_appends_events(self, order_service, register_stock, order_session_factory):
        register_stock(1, on_hand=5)
        number = order_service.create_order("user-1", [OrderLine(1, 2)]).order_number

        order_service.confirm_order(number)
        order_service.mark_payment_pending(number)
        order_service.mark_payment_completed(number)
        order_service.start_processing(number)
        order_service.ship_order(number)
        delivered = order_service.deliver_order(number)

        assert delivered.status == "DELIVERED"
        assert delivered.shipped_at is not None
        assert delivered.delivered_at is not None
        assert [e.event_type.value for e in outbox(order_session_factory, number)] == [
            "CREATED",
            "CONFIRMED",
            "SHIPPED",
            "DELIVERED",
        ]

    def test_cancel_appends_event_without_touching_inventory(self, order_service, register_stock, stock_of, order_session_factory):
        register_stock(1, on_hand=5)
        number = order_service.create_order("user-1", [OrderLine(1, 2)]).order_number

        cancelled = order_service.cancel_order(number)

        assert cancelled.status == "CANCELLED"
        # release happens when inventory consumes the CANCELLED event
        assert stock_of(1)["reserved"] == 2
        events = outbox(order_session_factory, number)
        assert events[-1].event_type.value == "CANCELLED"
        assert events[-1].order_number == number

    def test_cancel_after_shipping_is_rejected_and_nothing_is_emitted(self, order_service, register_stock, order_session_factory):
        register_stock(1, on_hand=5)
        number = order_service.create_order("user-1", [OrderLine(1, 2)]).order_number
        order_service.confirm_order(number)
        order_service.mark_payment_pending(number)
        order_service.mark_payment_completed(number)
        order_service.ship_order(number)
        events_before = outbox(order_session_factory, number)

        with pytest.raises(IllegalTransition):
            order_service.cancel_order(number)

        assert order_service.get_order(number).status == "SHIPPED"
        assert outbox(order_session_factory, number) == events_before

    def test_refund_emits_no_event(self, order_service, register_stock, order_session_factory):
        register_stock(1, on_hand=5)
        number = order_service.create_order("user-1", [OrderLine(1, 2)]).order_number
        order_service.cancel_order(number)
        refunded = order_service.refund_order(number)
        assert refunded.status == "REFUNDED"
        assert [e.event_type.value for e in outbox(order_session_factory, number)] == ["CREATED", "CANCELLED"]

    def test_unknown_order(self, order_service):
        with pytest.raises(OrderNotFound):
            order_service.confirm_order("ORD-MISSING1")
        with pytest.raises(OrderNotFound):
            order_service.get_order("ORD-MISSING1")


# =============================================================================
# Availability pre-flight
# =============================================================================


class TestCheckAvailability:

    def test_reports_short_products_without_reserving(self, order_service, register_stock, stock_of):
        register_stock(1, on_hand=5)
        register_stock(2, on_hand=1)

        unavailable = order_service.check_availability([OrderLine(1, 3), OrderLine(2, 2), OrderLine(3, 1)])

        assert unavailable == [2, 3]
        assert stock_of(1)["reserved"] == 0

    def test_repeated_products_are_added_up(self, order_service, register_stock):
        register_stock(1, on_hand=5)
        assert order_service.check_availability([OrderLine(1, 3), OrderLine(1, 3)]) == [1]


def test_created_event_payload_is_json(order_service, register_stock, order_session_factory):
    register_stock(1, on_hand=5)
    number = order_service.create_order("user-1", [OrderLine(1, 1, Decimal("3.50"))]).order_number
    session = order_session_factory()
    try:
        stored = session.query(OutboxEvent).filter(OutboxEvent.order_number == number).one()
    finally:
        session.close()
    payload = json.loads(stored.event_data)
    assert payload["order_number"] == number
    assert payload["event_type"] == "CREATED"
    assert stored.topic == "order-events"
    assert stored.published == "N"
