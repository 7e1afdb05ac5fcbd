"""
events.py - Order Lifecycle Event Schemas

PURPOSE:
    Defines the messages carried on the order event channel and the dead-letter
    channel. Uses Pydantic for validation and JSON serialization.

EVENT TYPES (OrderLifecycleEvent.event_type):
    - CREATED:   order persisted after every line was reserved
    - CONFIRMED: order confirmed (informational for inventory)
    - CANCELLED: inventory releases each line's reservation
    - SHIPPED:   inventory confirms (deducts) each line's reservation
    - DELIVERED: informational

PARTITIONING:
    order_number is the message key, so all events of one order land in one
    partition and are consumed in the order they were produced. There is no
    ordering across orders.

DELIVERY:
    At-least-once. event_id is unique per event and is the idempotency anchor
    for consumers.

USAGE:
    event = OrderLifecycleEvent(
        event_type=LifecycleEventType.SHIPPED,
        order_number="ORD-1A2B3C4D",
        items=[OrderLinePayload(product_id=1, quantity=2, unit_price=Decimal("9.99"))],
    )
    raw = event.model_dump_json()
    same = OrderLifecycleEvent.model_validate_json(raw)
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List
from uuid import uuid4

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LifecycleEventType(str, Enum):
    CREATED = "CREATED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"


class BaseEvent(BaseModel):
    """Fields every message on every channel carries."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    occurred_at: datetime = Field(default_factory=utc_now)
    correlation_id: str = Field(default_factory=lambda: str(uuid4()))

    model_config = {"frozen": True}


class OrderLinePayload(BaseModel):
    """One order line as it travels on the channel."""

    product_id: int
    quantity: int
    unit_price: Decimal = Decimal("0")

    model_config = {"frozen": True}


class OrderLifecycleEvent(BaseEvent):
    """
    Immutable record of one order transition.
    Producer: order service (through its outbox)
    Consumer: inventory service listener (reacts to CANCELLED and SHIPPED)
    """

    event_type: LifecycleEventType
    order_number: str
    items: List[OrderLinePayload]

    @property
    def key(self) -> str:
        """Partition key."""
        return self.order_number


class FailedLine(BaseModel):
    line_index: int
    product_id: int
    quantity: int
    error_code: str
    error_reason: str


class DeadLetterEvent(BaseEvent):
    """
    Published when a message, or some lines of it, could not be applied.
    The original message is acknowledged anyway; this record is what an operator
    replays or reconciles from.
    """

    original_event_id: str
    original_event_type: str
    order_number: str = ""
    original_topic: str
    error_reason: str
    failed_lines: List[FailedLine] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict)
