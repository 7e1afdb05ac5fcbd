"""
order_service/main.py - Order Management Microservice

PURPOSE:
    Owns orders and their lifecycle. Reserves stock synchronously through the
    inventory service while creating an order, and tells inventory about
    cancellations and shipments through order lifecycle events.

ORDER FLOW:
    1. POST /orders: reserve each line (POST /inventory/reserve), compensating
       already-reserved lines if any line fails; persist PENDING + CREATED event
    2. POST /orders/{n}/confirm -> CONFIRMED event
    3. Payment transitions (no events)
    4. POST /orders/{n}/ship   -> SHIPPED event   -> inventory confirms stock
       POST /orders/{n}/cancel -> CANCELLED event -> inventory releases stock
    5. POST /orders/{n}/deliver -> DELIVERED event

DEGRADED MODE:
    If the inventory service is down or slow, order creation fails closed with
    503 and no order is created. A circuit breaker stops calling a failing
    inventory service for a while.

KAFKA EVENTS:
    PUBLISHED (via Outbox Pattern):
        - order-events: OrderLifecycleEvent keyed by order_number

DATABASE:
    - orders: order_number, user_id, status, items, total_amount, currency,
      shipping_address, notes, created_at, updated_at, shipped_at, delivered_at
    - outbox_events: lifecycle events waiting to be relayed
    - compensation_records: compensating releases still to reconcile

USAGE:
    uvicorn services.order_service.main:create_app --factory --port 8002
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from shared.database import build_engine, build_session_factory
from shared.kafka_client import BaseKafkaProducer
from shared.logging_config import setup_logging
from shared.topic_initializer import create_topics

from .api import admin_router, install_error_handlers, orders_router
from .config import Settings
from .inventory_client import InventoryClient
from .models import Base
from .outbox import OutboxPublisher
from .schemas import HealthResponse
from .service import OrderService

logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"


def init_db(db_engine) -> None:
    """Initialize database tables."""
    logger.info("Initializing database...")
    Base.metadata.create_all(bind=db_engine)
    logger.info("Database initialized")


def create_app(settings: Optional[Settings] = None, inventory_client: Optional[InventoryClient] = None) -> FastAPI:
    """Build the order service application."""
    settings = settings or Settings()
    setup_logging(settings.service_name, settings.log_level)

    db_engine = build_engine(settings.resolved_database_url())
    session_factory = build_session_factory(db_engine)
    if inventory_client is None:
        inventory_client = InventoryClient(
            base_url=settings.inventory_base_url,
            timeout=settings.inventory_timeout_seconds,
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout=settings.circuit_reset_timeout,
        )
    order_service = OrderService(
        session_factory,
        inventory_client,
        order_events_topic=settings.order_events_topic,
        currency=settings.currency,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage app lifecycle."""
        logger.info("Starting Order Service...")

        try:
            init_db(db_engine)
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

        producer = outbox_publisher = None
        if settings.outbox_enabled:
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

            producer = BaseKafkaProducer(settings.kafka_bootstrap_servers, client_id="order-outbox-producer")
            outbox_publisher = OutboxPublisher(
                session_factory,
                producer,
                poll_interval=settings.outbox_poll_interval,
                batch_size=settings.outbox_batch_size,
            )
            outbox_publisher.start()

        yield

        logger.info("Shutting down Order Service...")
        if outbox_publisher:
            outbox_publisher.stop()
        if producer:
            producer.flush()
        inventory_client.close()
        db_engine.dispose()

    app = FastAPI(title="Order Service", version=SERVICE_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.order_service = order_service
    app.state.session_factory = session_factory

    install_error_handlers(app)
    app.include_router(orders_router)
    app.include_router(admin_router)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Health check endpoint."""
        return HealthResponse(status="ok", service=settings.service_name, version=SERVICE_VERSION)

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=Settings().order_service_port)
