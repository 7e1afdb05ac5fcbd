import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from shared.events import OrderLifecycleEvent, utc_now

from .models import CompensationRecord, Order, OutboxEvent

logger = logging.getLogger(__name__)


class OrderRepository:
    """Repository for order operations."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def add_order(self, order: Order) -> Order:
        self.db.add(order)
        self.db.flush()
        logger.info(
            f"Created order {order.order_number} for user {order.user_id}",
            extra={"order_number": order.order_number},
        )
        return order

    def get_order(self, order_number: str) -> Optional[Order]:
        """Get order by order_number."""
        return self.db.query(Order).filter(Order.order_number == order_number).first()

    def get_order_for_update(self, order_number: str) -> Optional[Order]:
        """Get order by order_number with a row lock held until the transaction ends."""
        return (
            self.db.query(Order)
            .filter(Order.order_number == order_number)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def get_orders_by_user(self, user_id: str) -> List[Order]:
        return self.db.query(Order).filter(Order.user_id == user_id).order_by(Order.created_at.desc()).all()

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    def add_outbox_event(self, topic: str, event: OrderLifecycleEvent) -> OutboxEvent:
        """Add event to outbox."""
        outbox_event = OutboxEvent(
            event_id=event.event_id,
            order_number=event.order_number,
            event_type=event.event_type.value,
            topic=topic,
            event_data=event.model_dump_json(),
            published="N",
        )
        self.db.add(outbox_event)
        self.db.flush()
        logger.info(
            f"Added outbox event {event.event_type.value} for order {event.order_number}",
            extra={"order_number": event.order_number, "event_id": event.event_id},
        )
        return outbox_event

    def get_unpublished_events(self, limit: int = 100) -> List[OutboxEvent]:
        """Unpublished outbox events in the order they were written."""
        return (
            self.db.query(OutboxEvent)
            .filter(OutboxEvent.published == "N")
            .order_by(OutboxEvent.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )

    def get_unpublished_ids_by_order(self, order_numbers: Iterable[str]) -> Dict[str, List[int]]:
        """All unpublished outbox ids of the given orders, oldest first, locked or not."""
        order_numbers = list(order_numbers)
        if not order_numbers:
            return {}
        rows = (
            self.db.query(OutboxEvent.id, OutboxEvent.order_number)
            .filter(OutboxEvent.published == "N", OutboxEvent.order_number.in_(order_numbers))
            .order_by(OutboxEvent.id)
            .all()
        )
        pending: Dict[str, List[int]] = {}
        for row in rows:
            pending.setdefault(row.order_number, []).append(row.id)
        return pending

    def mark_event_published(self, outbox_event: OutboxEvent) -> None:
        """Mark outbox event as published."""
        outbox_event.published = "Y"
        outbox_event.published_at = utc_now()
        self.db.flush()

    # ------------------------------------------------------------------
    # Compensation records
    # ------------------------------------------------------------------

    def add_compensation(
        self,
        order_number: str,
        product_id: int,
        quantity: int,
        idempotency_key: str,
        reason: str,
        reserve_idempotency_key: Optional[str] = None,
    ) -> CompensationRecord:
        record = CompensationRecord(
            order_number=order_number,
            product_id=product_id,
            quantity=quantity,
            idempotency_key=idempotency_key,
            reason=reason,
            reserve_idempotency_key=reserve_idempotency_key,
            attempts=1,
            last_attempt_at=utc_now(),
        )
        self.db.add(record)
        self.db.flush()
        return record

    def get_unresolved_compensations(self) -> List[CompensationRecord]:
        return (
            self.db.query(CompensationRecord)
            .filter(CompensationRecord.resolved_at.is_(None))
            .order_by(CompensationRecord.id)
            .all()
        )

    def get_compensations_for_order(self, order_number: str) -> List[CompensationRecord]:
        return (
            self.db.query(CompensationRecord)
            .filter(CompensationRecord.order_number == order_number)
            .order_by(CompensationRecord.id)
            .all()
        )
