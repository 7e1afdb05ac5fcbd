"""
service.py - Order Service Operations

ORDER CREATION (synchronous reservation, compensate on failure):
    1. Validate lines (non-empty, quantity > 0, unit_price >= 0)
    2. Generate the order number
    3. Reserve every line through the inventory client, in order
       - business error or NO_EFFECT on line k: release lines 0..k-1 (newest
         first) and fail; no order is persisted
       - a compensating release that itself fails is stored as a
         CompensationRecord for reconcile_compensations()
       - the line whose reserve returned NO_EFFECT is stored too, with its
         reserve key: reconciliation replays that reserve, then releases it
    4. Persist the order as PENDING with its total, and a CREATED event in the
       outbox, in one transaction

TRANSITIONS:
    confirm/cancel/ship/deliver persist the new status and the matching
    lifecycle event (CONFIRMED/CANCELLED/SHIPPED/DELIVERED) in one transaction.
    Inventory reacts to CANCELLED and SHIPPED from the event channel; nothing
    here calls inventory for them. Payment transitions and refund emit no event.

IDEMPOTENCY KEYS SENT TO INVENTORY:
    "{order_number}:{line_index}:reserve"      reservation of a line
    "{order_number}:{line_index}:compensate"   compensating release of a line
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import sessionmaker

from shared.database import session_scope
from shared.events import LifecycleEventType, OrderLifecycleEvent, OrderLinePayload, utc_now
from shared.exceptions import (
    DownstreamUnavailable,
    FulfillmentError,
    InsufficientStock,
    InvalidArgument,
    OrderNotFound,
    StockRecordNotFound,
)

from .inventory_client import NO_EFFECT, InventoryClient
from .models import CompensationRecord, Order, OrderLine, OrderStatus, generate_order_number
from .repository import OrderRepository

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    resolved: List[str] = field(default_factory=list)
    remaining: List[str] = field(default_factory=list)


def validate_lines(lines: Sequence[OrderLine]) -> None:
    if not lines:
        raise InvalidArgument("Order must have at least one item")
    for index, line in enumerate(lines):
        if line.quantity <= 0:
            raise InvalidArgument(f"Line {index}: quantity must be positive, got {line.quantity}")
        if line.unit_price < 0:
            raise InvalidArgument(f"Line {index}: unit_price must not be negative, got {line.unit_price}")


class OrderService:
    def __init__(
        self,
        session_factory: sessionmaker,
        inventory: InventoryClient,
        order_events_topic: str = "order-events",
        currency: str = "USD",
    ):
        self.session_factory = session_factory
        self.inventory = inventory
        self.order_events_topic = order_events_topic
        self.currency = currency

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_order(
        self,
        user_id: str,
        lines: Sequence[OrderLine],
        shipping_address: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> Order:
        validate_lines(lines)
        order_number = generate_order_number()
        context = {"order_number": order_number}
        logger.info(f"Creating order {order_number} with {len(lines)} line(s)", extra=context)

        reserved: List[Tuple[int, OrderLine]] = []
        for index, line in enumerate(lines):
            try:
                result = self.inventory.reserve(
                    line.product_id, line.quantity, order_number, f"{order_number}:{index}:reserve"
                )
            except FulfillmentError as e:
                logger.warning(
                    f"Reservation of line {index} for {order_number} rejected: {e.message}",
                    extra={**context, "product_id": line.product_id, "quantity": line.quantity},
                )
                self._compensate(order_number, reserved, f"line {index} rejected: {e.code}")
                raise
            if result is NO_EFFECT:
                logger.error(
                    f"Inventory unavailable while reserving line {index} for {order_number}",
                    extra={**context, "product_id": line.product_id, "quantity": line.quantity},
                )
                self._record_uncertain_reserve(order_number, index, line)
                self._compensate(order_number, reserved, f"line {index}: inventory unavailable")
                raise DownstreamUnavailable(f"Inventory unavailable, order {order_number} not created")
            reserved.append((index, line))

        try:
            with session_scope(self.session_factory) as session:
                repo = OrderRepository(session)
                order = Order(
                    order_number=order_number,
                    user_id=user_id,
                    status=OrderStatus.PENDING.value,
                    currency=self.currency,
                    shipping_address=shipping_address,
                    notes=notes,
                )
                order.set_lines(lines)
                repo.add_order(order)
                repo.add_outbox_event(self.order_events_topic, self._event(order, LifecycleEventType.CREATED))
        except Exception:
            logger.exception(f"Failed to persist order {order_number}, releasing its reservations", extra=context)
            self._compensate(order_number, reserved, "order could not be persisted")
            raise

        logger.info(f"Order {order_number} created, total {order.total_amount} {order.currency}", extra=context)
        return order

    def _record_uncertain_reserve(self, order_number: str, index: int, line: OrderLine) -> None:
        """The reserve may have been applied; keep its key so reconciliation can settle it."""
        reserve_key = f"{order_number}:{index}:reserve"
        with session_scope(self.session_factory) as session:
            OrderRepository(session).add_compensation(
                order_number,
                line.product_id,
                line.quantity,
                f"{order_number}:{index}:compensate",
                f"reserve of line {index} timed out or was refused, outcome unknown",
                reserve_idempotency_key=reserve_key,
            )
        logger.warning(
            f"Line {index} of {order_number} recorded for reconciliation under {reserve_key}",
            extra={"order_number": order_number, "product_id": line.product_id, "quantity": line.quantity},
        )

    def _compensate(self, order_number: str, reserved: List[Tuple[int, OrderLine]], reason: str) -> None:
        """Release the given reservations newest first; record every release that does not go through."""
        for index, line in reversed(reserved):
            key = f"{order_number}:{index}:compensate"
            context = {"order_number": order_number, "product_id": line.product_id, "quantity": line.quantity}
            try:
                result = self.inventory.release(line.product_id, line.quantity, order_number, key)
            except FulfillmentError as e:
                failure = f"{reason}; compensating release failed: {e.code}: {e.message}"
            else:
                if result is not NO_EFFECT:
                    logger.info(f"Compensated line {index} of {order_number}", extra=context)
                    continue
                failure = f"{reason}; compensating release had no effect (inventory unavailable)"

            logger.error(f"Line {index} of {order_number} needs reconciliation: {failure}", extra=context)
            with session_scope(self.session_factory) as session:
                OrderRepository(session).add_compensation(order_number, line.product_id, line.quantity, key, failure)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def confirm_order(self, order_number: str) -> Order:
        return self._transition(order_number, Order.confirm, LifecycleEventType.CONFIRMED)

    def mark_payment_pending(self, order_number: str) -> Order:
        return self._transition(order_number, Order.mark_payment_pending)

    def mark_payment_completed(self, order_number: str) -> Order:
        return self._transition(order_number, Order.mark_payment_completed)

    def mark_payment_failed(self, order_number: str) -> Order:
        return self._transition(order_number, Order.mark_payment_failed)

    def start_processing(self, order_number: str) -> Order:
        return self._transition(order_number, Order.start_processing)

    def ship_order(self, order_number: str) -> Order:
        return self._transition(order_number, Order.mark_shipped, LifecycleEventType.SHIPPED)

    def deliver_order(self, order_number: str) -> Order:
        return self._transition(order_number, Order.mark_delivered, LifecycleEventType.DELIVERED)

    def cancel_order(self, order_number: str) -> Order:
        return self._transition(order_number, Order.cancel, LifecycleEventType.CANCELLED)

    def refund_order(self, order_number: str) -> Order:
        return self._transition(order_number, Order.refund)

    def _transition(
        self,
        order_number: str,
        apply: Callable[[Order], None],
        event_type: Optional[LifecycleEventType] = None,
    ) -> Order:
        with session_scope(self.session_factory) as session:
            repo = OrderRepository(session)
            order = repo.get_order_for_update(order_number)
            if order is None:
                raise OrderNotFound(order_number)
            previous = order.status
            apply(order)
            if event_type is not None:
                repo.add_outbox_event(self.order_events_topic, self._event(order, event_type))

        logger.info(
            f"Order {order_number} {previous} -> {order.status}",
            extra={"order_number": order_number, "event_type": event_type.value if event_type else None},
        )
        return order

    # ------------------------------------------------------------------
    # Queries and repair
    # ------------------------------------------------------------------

    def get_order(self, order_number: str) -> Order:
        with session_scope(self.session_factory) as session:
            order = OrderRepository(session).get_order(order_number)
        if order is None:
            raise OrderNotFound(order_number)
        return order

    def get_orders_by_user(self, user_id: str) -> List[Order]:
        with session_scope(self.session_factory) as session:
            return OrderRepository(session).get_orders_by_user(user_id)

    def check_availability(self, lines: Sequence[OrderLine]) -> List[int]:
        """
        Pre-flight check without reserving anything.

        Returns the product ids that cannot currently be supplied (empty list:
        everything looks available). Quantities of repeated products are added
        up. An unreachable inventory reports every product as unavailable.
        """
        validate_lines(lines)
        needed: "OrderedDict[int, int]" = OrderedDict()
        for line in lines:
            needed[line.product_id] = needed.get(line.product_id, 0) + line.quantity
        return [product_id for product_id, quantity in needed.items() if not self.inventory.check_stock(product_id, quantity)]

    def get_compensations(self, order_number: str) -> List[CompensationRecord]:
        with session_scope(self.session_factory) as session:
            return OrderRepository(session).get_compensations_for_order(order_number)

    def reconcile_compensations(self) -> ReconcileResult:
        """Retry every unresolved compensating release with its original idempotency keys."""
        with session_scope(self.session_factory) as session:
            pending = OrderRepository(session).get_unresolved_compensations()

        result = ReconcileResult()
        for record in pending:
            context = {"order_number": record.order_number, "product_id": record.product_id, "quantity": record.quantity}
            try:
                outcome = self._replay_compensation(record)
                error = None if outcome is not NO_EFFECT else "inventory unavailable"
            except FulfillmentError as e:
                error = f"{e.code}: {e.message}"

            with session_scope(self.session_factory) as session:
                stored = session.get(CompensationRecord, record.id)
                stored.attempts += 1
                stored.last_attempt_at = utc_now()
                if error is None:
                    stored.resolved_at = utc_now()
                else:
                    stored.reason = f"{stored.reason}; retry failed: {error}"

            if error is None:
                logger.info(f"Reconciled compensation {record.idempotency_key}", extra=context)
                result.resolved.append(record.idempotency_key)
            else:
                logger.warning(f"Compensation {record.idempotency_key} still unresolved: {error}", extra=context)
                result.remaining.append(record.idempotency_key)
        return result

    def _replay_compensation(self, record: CompensationRecord):
        """
        Release the record's reservation. For an uncertain reserve the reserve is
        replayed first under its own key: a no-op if it had been applied, a fresh
        reservation otherwise, so the release below always has something to undo.
        """
        if record.reserve_idempotency_key is not None:
            try:
                reserved = self.inventory.reserve(
                    record.product_id, record.quantity, record.order_number, record.reserve_idempotency_key
                )
            except (InsufficientStock, StockRecordNotFound):
                # rejected now, so the reserve was never applied and nothing is held
                return None
            if reserved is NO_EFFECT:
                return NO_EFFECT
        return self.inventory.release(record.product_id, record.quantity, record.order_number, record.idempotency_key)

    def _event(self, order: Order, event_type: LifecycleEventType) -> OrderLifecycleEvent:
        return OrderLifecycleEvent(
            event_type=event_type,
            order_number=order.order_number,
            items=[
                OrderLinePayload(product_id=line.product_id, quantity=line.quantity, unit_price=line.unit_price)
                for line in order.lines
            ],
            correlation_id=order.order_number,
        )

