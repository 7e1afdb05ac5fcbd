import os

from pydantic_settings import BaseSettings

from shared.database import postgres_url


class Settings(BaseSettings):
    """Order service settings."""

    service_name: str = "order-service"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    kafka_bootstrap_servers: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    order_events_topic: str = os.getenv("ORDER_EVENTS_TOPIC", "order-events")
    dead_letter_topic: str = os.getenv("DEAD_LETTER_TOPIC", "dead-letter-events")
    topic_partitions: int = int(os.getenv("TOPIC_PARTITIONS", "3"))
    topic_replication_factor: int = int(os.getenv("TOPIC_REPLICATION_FACTOR", "3"))
    # Off in tests and local runs without a broker; events then stay in the outbox
    outbox_enabled: bool = os.getenv("ORDER_OUTBOX_ENABLED", "true").lower() == "true"
    outbox_poll_interval: float = float(os.getenv("OUTBOX_POLL_INTERVAL_SECONDS", "2"))
    outbox_batch_size: int = int(os.getenv("OUTBOX_BATCH_SIZE", "100"))

    postgres_user: str = os.getenv("POSTGRES_USER", "postgres")
    postgres_password: str = os.getenv("POSTGRES_PASSWORD", "postgres")
    postgres_host: str = os.getenv("POSTGRES_HOST", "localhost")
    postgres_port: str = os.getenv("POSTGRES_PORT", "5432")
    postgres_db: str = os.getenv("ORDER_POSTGRES_DB", "orders")
    database_url: str = os.getenv("ORDER_DATABASE_URL", "")

    inventory_base_url: str = os.getenv("INVENTORY_BASE_URL", "http://localhost:8004")
    # Per-call deadline for inventory requests
    inventory_timeout_seconds: float = float(os.getenv("INVENTORY_TIMEOUT_SECONDS", "5"))
    # Consecutive transport failures before the circuit opens
    circuit_failure_threshold: int = int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5"))
    # Seconds an open circuit waits before letting one trial call through
    circuit_reset_timeout: float = float(os.getenv("CIRCUIT_RESET_TIMEOUT_SECONDS", "30"))

    currency: str = os.getenv("ORDER_CURRENCY", "USD")
    order_service_port: int = int(os.getenv("ORDER_SERVICE_PORT", "8002"))

    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return postgres_url(
            self.postgres_user, self.postgres_password, self.postgres_host, self.postgres_port, self.postgres_db
        )
