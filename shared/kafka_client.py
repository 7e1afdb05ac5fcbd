"""
kafka_client.py - Kafka Producer and Consumer Client Wrappers

PURPOSE:
    Reusable producer and consumer for the order event channel and the
    dead-letter channel.

CLASSES:
    1. BaseKafkaProducer: Publishes pydantic events to Kafka topics
       - JSON serialization
       - Message key (order_number) so one order maps to one partition
       - Idempotent producer, acknowledgment from all replicas
       - Snappy compression

    2. BaseKafkaConsumer: Consumes events from Kafka topics
       - Manual offset commit after the handler returns (at-least-once)
       - Single-threaded poll loop: messages of one partition are handled
         strictly in order
       - Undecodable or crashing messages go to the dead-letter topic and are
         then committed, so one bad message never blocks its partition
       - A dead-letter publish that fails is logged; consumption goes on

USAGE:
    Producer:
        producer = BaseKafkaProducer("localhost:9092", client_id="order-outbox")
        producer.publish("order-events", event, key=event.order_number)
        producer.flush()

    Consumer:
        consumer = BaseKafkaConsumer(
            "localhost:9092",
            group_id="inventory-service-group",
            topics=["order-events"],
            dead_letter_topic="dead-letter-events",
        )
        consumer.consume(OrderLifecycleEvent, handler)
        consumer.close()

DELIVERY GUARANTEES:
    - At-least-once: the offset is committed only after the handler returns, so
      a crash between apply and commit redelivers the message. Handlers must be
      idempotent on event_id.
    - Ordering: per key (partition), not across keys.
"""

import json
import logging
import threading
from typing import Callable, List, Optional, Type

from confluent_kafka import Consumer, KafkaError, Producer
from pydantic import BaseModel, ValidationError

from shared.events import DeadLetterEvent

logger = logging.getLogger(__name__)


class BaseKafkaProducer:
    """
    Kafka producer with JSON serialization, message keys and delivery callbacks.
    """

    def __init__(self, bootstrap_servers: str, client_id: str = "producer", flush_timeout: float = 10.0):
        """
        Initialize Kafka producer.

        Args:
            bootstrap_servers: Comma-separated Kafka broker addresses
            client_id: Unique identifier for this producer instance
            flush_timeout: Seconds to wait for delivery in publish()
        """
        self.config = {
            "bootstrap.servers": bootstrap_servers,
            "client.id": client_id,
            "acks": "all",
            "enable.idempotence": True,  # no duplicates or reordering from producer retries
            "compression.type": "snappy",
        }
        self.flush_timeout = flush_timeout
        self.producer = Producer(self.config)

    def _delivery_report(self, err: Optional[KafkaError], msg) -> None:
        """Delivery report handler called by producer on message delivery."""
        if err is not None:
            logger.error(f"Message delivery failed: {err}")
        else:
            logger.info(
                f"Message delivered to topic={msg.topic()}, "
                f"partition={msg.partition()}, offset={msg.offset()}"
            )

    def publish(self, topic: str, event: BaseModel, key: Optional[str] = None) -> None:
        """
        Publish event and wait for the broker to take it.

        Raises RuntimeError if the message is still queued after flush_timeout,
        so callers (the outbox relay) never mark an undelivered event as sent.
        """
        message = event.model_dump_json()
        event_id = getattr(event, "event_id", "unknown")
        event_type = getattr(event, "event_type", type(event).__name__)
        try:
            self.producer.produce(
                topic=topic,
                key=key.encode("utf-8") if key is not None else None,
                value=message.encode("utf-8"),
                callback=self._delivery_report,
            )
            remaining = self.producer.flush(self.flush_timeout)
        except Exception as e:
            logger.error(f"Error publishing event to {topic}: {e}")
            raise
        if remaining:
            raise RuntimeError(f"{remaining} message(s) not delivered to {topic} within {self.flush_timeout}s")
        logger.info(
            f"Published event to {topic}",
            extra={"event_type": str(event_type), "event_id": event_id, "message_key": key},
        )

    def flush(self) -> None:
        """Flush any pending messages."""
        self.producer.flush()


class BaseKafkaConsumer:
    """Kafka consumer with manual commit and dead-letter handling."""

    def __init__(
        self,
        bootstrap_servers: str,
        group_id: str,
        topics: List[str],
        dead_letter_topic: Optional[str] = None,
        dead_letter_producer: Optional[BaseKafkaProducer] = None,
    ):
        """Initialize Kafka consumer."""
        self.config = {
            "bootstrap.servers": bootstrap_servers,
            "group.id": group_id,
            "auto.offset.reset": "earliest",
            "enable.auto.commit": False,
            "session.timeout.ms": 30000,
        }
        self.consumer = Consumer(self.config)
        self.topics = topics
        self.consumer.subscribe(topics)
        self.dead_letter_topic = dead_letter_topic
        if dead_letter_topic and dead_letter_producer is None:
            dead_letter_producer = BaseKafkaProducer(bootstrap_servers, client_id=f"{group_id}-dlq-producer")
        self.dead_letter_producer = dead_letter_producer
        self._stopped = threading.Event()

    def consume(
        self,
        event_class: Type[BaseModel],
        handler_fn: Callable[[BaseModel], None],
        timeout: float = 1.0,
    ) -> None:
        """Poll until stop() is called, handling and committing one message at a time."""
        while not self._stopped.is_set():
            msg = self.consumer.poll(timeout)

            if msg is None:
                continue

            if msg.error():
                logger.error(f"Consumer error: {msg.error()}")
                continue

            try:
                self.process_message(msg, event_class, handler_fn)
            except Exception:
                # Uncommitted; a later commit on this partition moves past it
                logger.exception(f"Failed to process message at {msg.topic()}[{msg.partition()}]@{msg.offset()}")

    def process_message(self, msg, event_class: Type[BaseModel], handler_fn: Callable[[BaseModel], None]) -> None:
        """Decode, handle, then commit. Failures are dead-lettered before the commit."""
        raw = msg.value().decode("utf-8") if msg.value() is not None else ""
        try:
            event = event_class.model_validate_json(raw)
        except ValidationError as e:
            logger.error(f"Failed to deserialize message from {msg.topic()}: {e}")
            self._dead_letter(msg.topic(), raw, f"undecodable message: {e}")
            self._commit(msg)
            return

        try:
            handler_fn(event)
            logger.info(
                "Event processed",
                extra={"event_id": getattr(event, "event_id", None), "partition": msg.partition(), "offset": msg.offset()},
            )
        except Exception as e:
            logger.exception(f"Handler failed for message at {msg.topic()}[{msg.partition()}]@{msg.offset()}")
            self._dead_letter(msg.topic(), raw, str(e), event_id=getattr(event, "event_id", ""))
        self._commit(msg)

    def _dead_letter(self, topic: str, raw: str, reason: str, event_id: str = "") -> None:
        if not self.dead_letter_producer or not self.dead_letter_topic:
            logger.error(f"No dead-letter topic configured, dropping message: {reason}")
            return
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            payload = {"raw": raw}
        if not isinstance(payload, dict):
            payload = {"raw": raw}
        dead_letter = DeadLetterEvent(
            original_event_id=event_id or str(payload.get("event_id", "")),
            original_event_type=str(payload.get("event_type", "unknown")),
            order_number=str(payload.get("order_number", "")),
            original_topic=topic,
            error_reason=reason,
            payload=payload,
        )
        try:
            self.dead_letter_producer.publish(self.dead_letter_topic, dead_letter, key=dead_letter.order_number or None)
        except Exception as e:
            logger.error(
                f"Dead-letter publish to {self.dead_letter_topic} failed, dropping message: {reason}: {e}",
                extra={"event_id": dead_letter.original_event_id, "order_number": dead_letter.order_number},
            )

    def _commit(self, msg) -> None:
        self.consumer.commit(message=msg, asynchronous=False)

    def stop(self) -> None:
        self._stopped.set()

    def close(self) -> None:
        """Close the consumer."""
        self.stop()
        self.consumer.close()
