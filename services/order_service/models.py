"""
models.py - Order Aggregate and Order State Machine

ORDER LIFECYCLE:
    PENDING --confirm--> CONFIRMED --mark_payment_pending--> PAYMENT_PENDING
    PAYMENT_PENDING --mark_payment_completed--> PAYMENT_COMPLETED
    PAYMENT_PENDING --mark_payment_failed-->    PAYMENT_FAILED
    PAYMENT_COMPLETED --start_processing--> PROCESSING
    PAYMENT_COMPLETED | PROCESSING --mark_shipped--> SHIPPED --mark_delivered--> DELIVERED
    any non-final state except SHIPPED --cancel--> CANCELLED
    PAYMENT_COMPLETED | PROCESSING | DELIVERED | CANCELLED --refund--> REFUNDED

An illegal transition raises IllegalTransition and leaves the order untouched.

Order lines are value records stored inside the order (JSON column); they have
no identity and no reference back to the order.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Integer, Numeric, String, Text, Uuid, func
from sqlalchemy.orm import declarative_base

from shared.events import utc_now
from shared.exceptions import IllegalTransition

Base = declarative_base()


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


NOT_CANCELLABLE: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
)
REFUNDABLE: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PAYMENT_COMPLETED, OrderStatus.PROCESSING, OrderStatus.DELIVERED, OrderStatus.CANCELLED}
)


def generate_order_number() -> str:
    return f"ORD-{uuid4().hex[:8].upper()}"


@dataclass(frozen=True)
class OrderLine:
    product_id: int
    quantity: int
    unit_price: Decimal = Decimal("0")

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {"product_id": self.product_id, "quantity": self.quantity, "unit_price": str(self.unit_price)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderLine":
        return cls(
            product_id=int(data["product_id"]),
            quantity=int(data["quantity"]),
            unit_price=Decimal(str(data.get("unit_price", "0"))),
        )


class Order(Base):
    """Order model."""

    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_number = Column(String(50), unique=True, nullable=False, index=True, default=generate_order_number)
    user_id = Column(String(255), nullable=False, index=True)
    status = Column(String(50), default=OrderStatus.PENDING.value, nullable=False, index=True)
    items = Column(JSON, nullable=False, default=list)  # [{product_id, quantity, unit_price}]
    total_amount = Column(Numeric(19, 2), nullable=False, default=Decimal("0"))
    currency = Column(String(3), nullable=False, default="USD")
    shipping_address = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"eager_defaults": True}

    @property
    def lines(self) -> List[OrderLine]:
        return [OrderLine.from_dict(item) for item in self.items or []]

    def set_lines(self, lines: Iterable[OrderLine]) -> None:
        """Replace the order lines; the total follows."""
        self.items = [line.to_dict() for line in lines]
        self.recalculate_total()

    def recalculate_total(self) -> Decimal:
        self.total_amount = sum((line.subtotal for line in self.lines), Decimal("0"))
        return self.total_amount

    @property
    def order_status(self) -> OrderStatus:
        return OrderStatus(self.status)

    def can_cancel(self) -> bool:
        return self.order_status not in NOT_CANCELLABLE

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _move(self, attempted: str, allowed: Iterable[OrderStatus], target: OrderStatus) -> None:
        current = self.order_status
        if current not in allowed:
            raise IllegalTransition(self.order_number, current.value, attempted)
        self.status = target.value

    def confirm(self) -> None:
        self._move("confirm", {OrderStatus.PENDING}, OrderStatus.CONFIRMED)

    def mark_payment_pending(self) -> None:
        self._move("mark payment pending", {OrderStatus.CONFIRMED}, OrderStatus.PAYMENT_PENDING)

    def mark_payment_completed(self) -> None:
        self._move("complete payment", {OrderStatus.PAYMENT_PENDING}, OrderStatus.PAYMENT_COMPLETED)

    def mark_payment_failed(self) -> None:
        self._move("fail payment", {OrderStatus.PAYMENT_PENDING}, OrderStatus.PAYMENT_FAILED)

    def start_processing(self) -> None:
        self._move("start processing", {OrderStatus.PAYMENT_COMPLETED}, OrderStatus.PROCESSING)

    def mark_shipped(self) -> None:
        self._move("ship", {OrderStatus.PAYMENT_COMPLETED, OrderStatus.PROCESSING}, OrderStatus.SHIPPED)
        self.shipped_at = utc_now()

    def mark_delivered(self) -> None:
        self._move("deliver", {OrderStatus.SHIPPED}, OrderStatus.DELIVERED)
        self.delivered_at = utc_now()

    def cancel(self) -> None:
        if not self.can_cancel():
            raise IllegalTransition(self.order_number, self.status, "cancel")
        self.status = OrderStatus.CANCELLED.value

    def refund(self) -> None:
        self._move("refund", REFUNDABLE, OrderStatus.REFUNDED)

    def __repr__(self) -> str:
        return f"Order(order_number={self.order_number}, status={self.status}, total_amount={self.total_amount})"


class OutboxEvent(Base):
    """Outbox pattern for reliable Kafka publishing."""

    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, autoincrement=True)  # relay order
    event_id = Column(String(36), unique=True, nullable=False)
    order_number = Column(String(50), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    topic = Column(String(255), nullable=False)
    event_data = Column(Text, nullable=False)  # JSON string
    published = Column(String(1), default="N", nullable=False, index=True)  # Y or N
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    published_at = Column(DateTime(timezone=True), nullable=True)


class CompensationRecord(Base):
    """A compensating release that did not go through and still has to be reconciled."""

    __tablename__ = "compensation_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(50), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    idempotency_key = Column(String(255), unique=True, nullable=False)
    # set when the reserve itself had an unknown outcome; replayed before the release
    reserve_idempotency_key = Column(String(255), nullable=True)
    reason = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None
