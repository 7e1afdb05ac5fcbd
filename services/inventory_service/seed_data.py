import logging
import random
from typing import Optional

from shared.exceptions import DuplicateProduct

from .ledger import StockLedger

logger = logging.getLogger(__name__)

# (product_id, reorder_threshold, reorder_batch_size)
SAMPLE_STOCK = [
    (1001, 10, 50),   # Wireless Headphones
    (1002, 25, 200),  # USB-C Cable
    (1003, 15, 100),  # Phone Case
    (1004, 20, 150),  # Screen Protector
    (1005, 10, 40),   # Power Bank
    (1006, 5, 25),    # Laptop Stand
    (1007, 5, 20),    # Mechanical Keyboard
    (1008, 15, 80),   # Mouse Pad
    (1009, 10, 60),   # USB Hub
    (1010, 5, 20),    # Monitor Stand
]


def seed_stock(ledger: StockLedger, rng: Optional[random.Random] = None) -> int:
    """Register sample stock records that do not exist yet. Returns how many were created."""
    logger.info("Seeding stock records...")
    rng = rng or random.Random()
    created = 0

    for product_id, threshold, batch_size in SAMPLE_STOCK:
        if ledger.load(product_id) is not None:
            logger.info(f"Product {product_id} already exists, skipping")
            continue

        # Random stock between 10 and 100
        try:
            ledger.register(product_id, rng.randint(10, 100), threshold, batch_size)
        except DuplicateProduct:
            continue
        created += 1

    logger.info(f"Seeded {created} stock records")
    return created
