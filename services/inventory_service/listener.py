"""
listener.py - Order Event Listener

Applies order lifecycle events to stock:

    CANCELLED -> release every line's reservation
    SHIPPED   -> confirm (deduct) every line's reservation
    anything else -> ignored

Delivery is at-least-once, so every line is applied with the idempotency key
"{event_id}:{line_index}". A redelivered event finds its keys already applied
and changes nothing.

A line that fails (over-release, unknown product, ...) is logged and does not
stop the remaining lines. All failed lines of one event are published together
as a single DeadLetterEvent; the event itself is still acknowledged. If the
dead-letter channel is down too, the failed lines are logged instead.
"""

import logging
from typing import List, Optional

from shared.events import DeadLetterEvent, FailedLine, LifecycleEventType, OrderLifecycleEvent
from shared.exceptions import FulfillmentError
from shared.kafka_client import BaseKafkaProducer

from .reservation import ReservationEngine, ReservationRequest

logger = logging.getLogger(__name__)


class OrderEventListener:
    def __init__(
        self,
        engine: ReservationEngine,
        dead_letter_producer: Optional[BaseKafkaProducer] = None,
        dead_letter_topic: str = "dead-letter-events",
        source_topic: str = "order-events",
    ):
        self.engine = engine
        self.dead_letter_producer = dead_letter_producer
        self.dead_letter_topic = dead_letter_topic
        self.source_topic = source_topic

    def handle(self, event: OrderLifecycleEvent) -> List[FailedLine]:
        """Apply one event. Returns the lines that could not be applied."""
        if event.event_type == LifecycleEventType.CANCELLED:
            apply = self.engine.release
        elif event.event_type == LifecycleEventType.SHIPPED:
            apply = self.engine.confirm
        else:
            logger.debug(
                f"Ignoring {event.event_type.value} for {event.order_number}",
                extra={"event_id": event.event_id, "order_number": event.order_number},
            )
            return []

        context = {
            "event_id": event.event_id,
            "event_type": event.event_type.value,
            "order_number": event.order_number,
            "correlation_id": event.correlation_id,
        }
        logger.info(f"Applying {event.event_type.value} for {event.order_number}", extra=context)

        failed: List[FailedLine] = []
        for index, line in enumerate(event.items):
            request = ReservationRequest(
                product_id=line.product_id,
                quantity=line.quantity,
                order_reference=event.order_number,
                idempotency_key=f"{event.event_id}:{index}",
            )
            try:
                apply(request)
            except FulfillmentError as e:
                logger.error(
                    f"Line {index} of {event.order_number} failed: {e.message}",
                    extra={**context, "product_id": line.product_id, "quantity": line.quantity},
                )
                failed.append(
                    FailedLine(
                        line_index=index,
                        product_id=line.product_id,
                        quantity=line.quantity,
                        error_code=e.code,
                        error_reason=e.message,
                    )
                )

        if failed:
            self._dead_letter(event, failed)
        return failed

    def _dead_letter(self, event: OrderLifecycleEvent, failed: List[FailedLine]) -> None:
        dead_letter = DeadLetterEvent(
            original_event_id=event.event_id,
            original_event_type=event.event_type.value,
            order_number=event.order_number,
            original_topic=self.source_topic,
            error_reason=f"{len(failed)} of {len(event.items)} line(s) could not be applied",
            failed_lines=failed,
            payload=event.model_dump(mode="json"),
            correlation_id=event.correlation_id,
        )
        if self.dead_letter_producer is None:
            logger.error(
                f"No dead-letter producer, dropping failure record for {event.order_number}",
                extra={"event_id": event.event_id, "order_number": event.order_number},
            )
            return
        try:
            self.dead_letter_producer.publish(self.dead_letter_topic, dead_letter, key=event.order_number)
        except Exception as e:
            lines = ", ".join(f"{line.line_index}:{line.product_id}x{line.quantity} {line.error_code}" for line in failed)
            logger.error(
                f"Dead-letter publish failed for {event.order_number} ({e}); unapplied lines: {lines}",
                extra={"event_id": event.event_id, "order_number": event.order_number},
            )
