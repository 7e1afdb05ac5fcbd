"""
inventory_service/main.py - Inventory Microservice

PURPOSE:
    Owns per-product stock counts and the reserve / release / confirm protocol.
    The order service calls it synchronously to reserve stock while creating an
    order; shipment and cancellation reach it asynchronously as order lifecycle
    events.

RESERVATION WORKFLOW:
    1. POST /inventory/reserve for each order line (synchronous, from order service)
       - available >= quantity: reserved += quantity, record returned
       - otherwise 409 INSUFFICIENT_STOCK, nothing changes
    2. Order CANCELLED event -> listener releases every line
    3. Order SHIPPED event   -> listener confirms (deducts) every line
    4. After a reserve or confirm that leaves on_hand at or below the reorder
       threshold, a low-stock notification goes to the admin recipient

CONCURRENCY:
    - Reserve/release/confirm hold the product exclusively (in-process lock plus
      SELECT ... FOR UPDATE), so stock is never oversold across threads or
      processes
    - Restock / write-off / threshold edits use optimistic revision checks with
      bounded retries
    - Different products never block each other

KAFKA EVENTS:
    CONSUMED:
        - order-events: OrderLifecycleEvent (CANCELLED and SHIPPED are applied)
    PUBLISHED:
        - dead-letter-events: undecodable messages and lines that failed to apply

DATABASE:
    - stock_records: product_id, on_hand, reserved, reorder_threshold,
      reorder_batch_size, revision, created_at, updated_at
    - applied_operations: idempotency keys of applied reserve/release/confirm calls

USAGE:
    uvicorn services.inventory_service.main:create_app --factory --port 8004
"""

import logging
import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from shared.database import build_engine, build_session_factory
from shared.events import OrderLifecycleEvent
from shared.kafka_client import BaseKafkaConsumer, BaseKafkaProducer
from shared.logging_config import setup_logging
from shared.notifications import NotificationSender, build_notification_sender
from shared.topic_initializer import create_topics

from .api import install_error_handlers, inventory_router, products_router
from .config import Settings
from .ledger import StockLedger
from .listener import OrderEventListener
from .models import Base
from .reservation import ReservationEngine
from .schemas import HealthResponse
from .seed_data import seed_stock

logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"


def init_db(db_engine) -> None:
    """Initialize database tables."""
    logger.info("Initializing database...")
    Base.metadata.create_all(bind=db_engine)
    logger.info("Database initialized")


def start_order_event_listener(settings: Settings, reservation_engine: ReservationEngine):
    """Start the order-events consumer on a daemon thread. Returns (consumer, thread)."""
    dead_letter_producer = BaseKafkaProducer(settings.kafka_bootstrap_servers, client_id="inventory-dlq-producer")
    consumer = BaseKafkaConsumer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=settings.consumer_group_id,
        topics=[settings.order_events_topic],
        dead_letter_topic=settings.dead_letter_topic,
        dead_letter_producer=dead_letter_producer,
    )
    listener = OrderEventListener(
        reservation_engine,
        dead_letter_producer=dead_letter_producer,
        dead_letter_topic=settings.dead_letter_topic,
        source_topic=settings.order_events_topic,
    )

    def order_event_consumer():
        """Consume order lifecycle events until stopped."""
        try:
            consumer.consume(OrderLifecycleEvent, listener.handle)
        except Exception as e:
            logger.error(f"Error in inventory consumer: {e}")
        finally:
            consumer.close()
            dead_letter_producer.flush()

    thread = threading.Thread(target=order_event_consumer, name="order-event-listener", daemon=True)
    thread.start()
    logger.info("Inventory consumer thread started")
    return consumer, thread


def create_app(settings: Optional[Settings] = None, notifier: Optional[NotificationSender] = None) -> FastAPI:
    """Build the inventory service application."""
    settings = settings or Settings()
    setup_logging(settings.service_name, settings.log_level)

    db_engine = build_engine(settings.resolved_database_url())
    ledger = StockLedger(build_session_factory(db_engine), hold_timeout=settings.hold_timeout_seconds)
    if notifier is None:
        notifier = build_notification_sender(settings.notification_channel, settings.smtp_host, settings.smtp_port)
    reservation_engine = ReservationEngine(
        ledger,
        notifier=notifier,
        alert_recipient=settings.admin_email,
        optimistic_max_retries=settings.optimistic_max_retries,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage app lifecycle."""
        logger.info("Starting Inventory Service...")

        try:
            init_db(db_engine)
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

        if settings.seed_products:
            seed_stock(ledger)

        consumer = thread = None
        if settings.consumer_enabled:
            try:
                create_topics(
                    settings.kafka_bootstrap_servers,
                    [settings.order_events_topic, settings.dead_letter_topic],
                    num_partitions=settings.topic_partitions,
                    replication_factor=settings.topic_replication_factor,
                )
                logger.info("Kafka topics initialized")
            except Exception as e:
                logger.error(f"Failed to initialize Kafka topics: {e}")
                raise
            consumer, thread = start_order_event_listener(settings, reservation_engine)

        yield

        logger.info("Shutting down Inventory Service...")
        if consumer is not None:
            consumer.stop()
            thread.join(timeout=10)
        db_engine.dispose()

    app = FastAPI(title="Inventory Service", version=SERVICE_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.reservation_engine = reservation_engine
    app.state.notifier = notifier

    install_error_handlers(app)
    app.include_router(inventory_router)
    app.include_router(products_router)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Health check endpoint."""
        return HealthResponse(status="ok", service=settings.service_name, version=SERVICE_VERSION)

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=Settings().inventory_service_port)
