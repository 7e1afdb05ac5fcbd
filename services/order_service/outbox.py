"""
outbox.py - Outbox Relay for Order Lifecycle Events

OUTBOX PATTERN:
    1. An order transition and its lifecycle event are written to the database
       in the same transaction (outbox_events table)
    2. OutboxPublisher polls unpublished events every poll_interval seconds
    3. Each event is published keyed by order_number, then marked published
    4. If the service crashes between publish and commit, the event is published
       again on the next poll; consumers are idempotent on event_id

ORDERING:
    Events are relayed in the order they were written. A batch is one
    transaction: its rows stay locked (FOR UPDATE SKIP LOCKED) until every
    publish of the batch is done, and the marks are committed once at the end.
    A failed publish ends the batch. An event is only published while it is the
    oldest unpublished event of its order; if an older one is held by another
    relay instance, the order is skipped for this poll. So a later event of the
    same order never overtakes an earlier one, with one relay or several.
"""

import logging
import threading
from typing import Optional

from sqlalchemy.orm import sessionmaker

from shared.events import OrderLifecycleEvent
from shared.kafka_client import BaseKafkaProducer

from .repository import OrderRepository

logger = logging.getLogger(__name__)


class OutboxPublisher:
    """Background thread to publish outbox events."""

    def __init__(
        self,
        session_factory: sessionmaker,
        producer: BaseKafkaProducer,
        poll_interval: float = 2,
        batch_size: int = 100,
    ):
        """Initialize publisher."""
        self.session_factory = session_factory
        self.producer = producer
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def publish_pending(self) -> int:
        """Relay one batch of unpublished events. Returns how many were published."""
        published = 0
        session = self.session_factory()
        try:
            repo = OrderRepository(session)
            batch = repo.get_unpublished_events(self.batch_size)
            pending = repo.get_unpublished_ids_by_order({e.order_number for e in batch})
            for outbox_event in batch:
                oldest = pending[outbox_event.order_number]
                if oldest[0] != outbox_event.id:
                    logger.debug(
                        f"Holding back outbox event {outbox_event.event_id}: event {oldest[0]} of "
                        f"order {outbox_event.order_number} is not published yet",
                        extra={"order_number": outbox_event.order_number, "event_id": outbox_event.event_id},
                    )
                    continue
                event = OrderLifecycleEvent.model_validate_json(outbox_event.event_data)
                try:
                    self.producer.publish(outbox_event.topic, event, key=outbox_event.order_number)
                except Exception as e:
                    logger.error(
                        f"Error publishing outbox event {outbox_event.event_id}: {e}",
                        extra={"order_number": outbox_event.order_number, "event_id": outbox_event.event_id},
                    )
                    break
                repo.mark_event_published(outbox_event)
                oldest.pop(0)
                published += 1
                logger.info(
                    f"Published outbox event {outbox_event.event_type} for order {outbox_event.order_number}",
                    extra={"order_number": outbox_event.order_number, "event_id": outbox_event.event_id},
                )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        return published

    def start(self) -> threading.Thread:
        """Start publisher thread."""
        self._stopped.clear()
        self._thread = threading.Thread(target=self._publish_loop, name="outbox-publisher", daemon=True)
        self._thread.start()
        logger.info("Outbox publisher started")
        return self._thread

    def _publish_loop(self) -> None:
        """Poll and publish outbox events."""
        while not self._stopped.is_set():
            try:
                self.publish_pending()
            except Exception as e:
                logger.error(f"Error in outbox publisher: {e}")
            self._stopped.wait(self.poll_interval)

    def stop(self, timeout: Optional[float] = 10) -> None:
        """Stop publisher thread."""
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("Outbox publisher stopped")
