"""
Shared fixtures.

Every database is a SQLite file under tmp_path so that worker threads in the
concurrency tests see the same data. Kafka is never contacted: the inventory
app runs with its consumer disabled and the order app with its outbox relay
disabled.
"""

import pytest
from fastapi.testclient import TestClient

from shared.database import build_engine, build_session_factory
from shared.notifications import MockNotificationSender
from services.inventory_service.config import Settings as InventorySettings
from services.inventory_service.ledger import StockLedger
from services.inventory_service.main import create_app as create_inventory_app
from services.inventory_service.models import Base as InventoryBase
from services.inventory_service.reservation import ReservationEngine
from services.order_service.inventory_client import InventoryClient
from services.order_service.models import Base as OrderBase
from services.order_service.service import OrderService

ADMIN_EMAIL = "admin@test.local"


@pytest.fixture
def inventory_session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'inventory.db'}")
    InventoryBase.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def ledger(inventory_session_factory):
    return StockLedger(inventory_session_factory, hold_timeout=5)


@pytest.fixture
def notifier():
    return MockNotificationSender()


@pytest.fixture
def reservation_engine(ledger, notifier):
    return ReservationEngine(ledger, notifier=notifier, alert_recipient=ADMIN_EMAIL, optimistic_max_retries=3)


@pytest.fixture
def inventory_settings(tmp_path):
    return InventorySettings(
        database_url=f"sqlite:///{tmp_path / 'inventory-app.db'}",
        consumer_enabled=False,
        seed_products=False,
        admin_email=ADMIN_EMAIL,
    )


@pytest.fixture
def inventory_http(inventory_settings, notifier):
    """TestClient for a running inventory app (lifespan executed)."""
    app = create_inventory_app(inventory_settings, notifier=notifier)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def inventory_client(inventory_http):
    """The real inter-service client, talking to the in-process inventory app."""
    return InventoryClient(http_client=inventory_http, timeout=5, failure_threshold=3, reset_timeout=30)


@pytest.fixture
def order_session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    OrderBase.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def order_service(order_session_factory, inventory_client):
    return OrderService(order_session_factory, inventory_client, order_events_topic="order-events")


@pytest.fixture
def register_stock(inventory_http):
    """Register a product through the inventory API."""

    def _register(product_id, on_hand, reorder_threshold=0, reorder_batch_size=50):
        response = inventory_http.post(
            "/products",
            json={
                "product_id": product_id,
                "on_hand": on_hand,
                "reorder_threshold": reorder_threshold,
                "reorder_batch_size": reorder_batch_size,
            },
        )
        assert response.status_code == 201, response.text
        return response.json()

    return _register


@pytest.fixture
def stock_of(inventory_http):
    def _stock_of(product_id):
        response = inventory_http.get(f"/products/{product_id}")
        assert response.status_code == 200, response.text
        return response.json()

    return _stock_of
