import os

from pydantic_settings import BaseSettings

from shared.database import postgres_url


class Settings(BaseSettings):
    """Inventory service settings."""

    service_name: str = "inventory-service"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    kafka_bootstrap_servers: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    order_events_topic: str = os.getenv("ORDER_EVENTS_TOPIC", "order-events")
    dead_letter_topic: str = os.getenv("DEAD_LETTER_TOPIC", "dead-letter-events")
    consumer_group_id: str = os.getenv("INVENTORY_CONSUMER_GROUP", "inventory-service-group")
    consumer_enabled: bool = os.getenv("INVENTORY_CONSUMER_ENABLED", "true").lower() == "true"
    topic_partitions: int = int(os.getenv("TOPIC_PARTITIONS", "3"))
    topic_replication_factor: int = int(os.getenv("TOPIC_REPLICATION_FACTOR", "3"))

    postgres_user: str = os.getenv("POSTGRES_USER", "postgres")
    postgres_password: str = os.getenv("POSTGRES_PASSWORD", "postgres")
    postgres_host: str = os.getenv("POSTGRES_HOST", "localhost")
    postgres_port: str = os.getenv("POSTGRES_PORT", "5432")
    postgres_db: str = os.getenv("INVENTORY_POSTGRES_DB", "inventory")
    database_url: str = os.getenv("INVENTORY_DATABASE_URL", "")

    # Longest wait for a per-product exclusive hold before ConcurrentModification
    hold_timeout_seconds: float = float(os.getenv("HOLD_TIMEOUT_SECONDS", "5"))
    # Bounded retries for optimistic (revision-checked) administrative updates
    optimistic_max_retries: int = int(os.getenv("OPTIMISTIC_MAX_RETRIES", "3"))

    notification_channel: str = os.getenv("NOTIFICATION_CHANNEL", "mock")
    smtp_host: str = os.getenv("SMTP_HOST", "localhost")
    smtp_port: int = int(os.getenv("SMTP_PORT", "1025"))
    admin_email: str = os.getenv("ADMIN_EMAIL", "admin@fulfillment.local")

    seed_products: bool = os.getenv("SEED_PRODUCTS", "false").lower() == "true"
    inventory_service_port: int = int(os.getenv("INVENTORY_SERVICE_PORT", "8004"))

    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return postgres_url(
            self.postgres_user, self.postgres_password, self.postgres_host, self.postgres_port, self.postgres_db
        )
