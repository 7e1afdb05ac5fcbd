"""
topic_initializer.py - Kafka Topic Auto-Creation Utility

PURPOSE:
    Creates the topics a service needs on start-up. Topic names are passed in
    from the service's settings; nothing is looked up globally.

CONFIGURATION:
    - Default partitions: 3 (orders spread over partitions by order_number key)
    - Default replication factor: 3
    - Idempotent: existing topics are left alone

RETRY LOGIC:
    - Brokers may not be ready when a container starts; creation is retried
      max_retries times with retry_delay seconds between attempts
"""

import logging
import time
from typing import Iterable, List

from confluent_kafka.admin import AdminClient, NewTopic

logger = logging.getLogger(__name__)


def create_topics(
    bootstrap_servers: str,
    topics: Iterable[str],
    num_partitions: int = 3,
    replication_factor: int = 3,
    max_retries: int = 10,
    retry_delay: float = 3,
) -> None:
    """
    Create the given Kafka topics.

    Args:
        bootstrap_servers: Comma-separated Kafka broker addresses
        topics: Topic names to create
        num_partitions: Number of partitions per topic
        replication_factor: Number of replicas per partition
    """
    admin_client = AdminClient({"bootstrap.servers": bootstrap_servers})

    topics_to_create: List[NewTopic] = [
        NewTopic(topic, num_partitions=num_partitions, replication_factor=replication_factor)
        for topic in dict.fromkeys(topics)
    ]

    for attempt in range(max_retries):
        try:
            logger.info(f"Creating topics (attempt {attempt + 1}/{max_retries})...")

            fs = admin_client.create_topics(topics_to_create, validate_only=False)

            for topic, future in fs.items():
                try:
                    future.result(timeout=10)
                    logger.info(f"Topic '{topic}' created successfully")
                except Exception as e:
                    if "already exists" in str(e) or "TOPIC_ALREADY_EXISTS" in str(e):
                        logger.info(f"Topic '{topic}' already exists")
                    else:
                        logger.warning(f"Error creating topic '{topic}': {e}")

            logger.info("All topics processed successfully")
            break

        except Exception as e:
            if attempt < max_retries - 1:
                logger.warning(f"Failed to create topics (attempt {attempt + 1}): {e}. Retrying in {retry_delay}s...")
                time.sleep(retry_delay)
            else:
                logger.error(f"Failed to create topics after {max_retries} attempts: {e}")
                raise
