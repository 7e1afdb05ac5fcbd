"""
reservation.py - Reservation Engine

Enforces the reserve / release / confirm transitions over the stock ledger.

    reserve:  reserved += q          requires available >= q
    release:  reserved -= q          requires reserved  >= q
    confirm:  reserved -= q,
              on_hand  -= q          requires reserved  >= q

Each operation is atomic per product (one exclusive hold) and never across
products: a multi-line order performs one operation per line and compensates
on the caller's side.

Requests may carry an idempotency key. The key is stored in the same
transaction as the stock change, so a keyed request applies at most once; a
repeat returns the current record without touching it. The order-event
listener keys every line of every event, which is what makes redelivery safe.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from shared.exceptions import (
    ConcurrentModification,
    InsufficientStock,
    InvalidArgument,
    OverConfirm,
    OverRelease,
    StockRecordNotFound,
)
from shared.notifications import NotificationSender

from .ledger import ExclusiveHold, StockLedger
from .models import AppliedOperation, StockRecord

logger = logging.getLogger(__name__)

RESERVE = "reserve"
RELEASE = "release"
CONFIRM = "confirm"


@dataclass(frozen=True)
class ReservationRequest:
    product_id: int
    quantity: int
    order_reference: str
    idempotency_key: Optional[str] = None


class ReservationEngine:
    """Reserve/release/confirm plus the read-only and administrative operations around them."""

    def __init__(
        self,
        ledger: StockLedger,
        notifier: Optional[NotificationSender] = None,
        alert_recipient: Optional[str] = None,
        optimistic_max_retries: int = 3,
    ):
        self.ledger = ledger
        self.notifier = notifier
        self.alert_recipient = alert_recipient
        self.optimistic_max_retries = optimistic_max_retries

    # ------------------------------------------------------------------
    # Exclusive-hold operations
    # ------------------------------------------------------------------

    def reserve(self, request: ReservationRequest) -> StockRecord:
        """Hold `quantity` units of available stock for an order."""
        self._require_positive(request)
        with self.ledger.load_for_exclusive_update(request.product_id) as hold:
            if self._already_applied(hold, request, RESERVE):
                return hold.record
            record = hold.record
            if record.available < request.quantity:
                raise InsufficientStock(
                    f"Insufficient stock for product {request.product_id}. "
                    f"Available: {record.available}, Requested: {request.quantity}",
                    product_id=request.product_id,
                    requested=request.quantity,
                )
            record.reserved += request.quantity
            self._mark_applied(hold, request, RESERVE)

        logger.info(
            f"Reserved {request.quantity} units of product {request.product_id} for {request.order_reference}",
            extra={"product_id": request.product_id, "order_number": request.order_reference, "quantity": request.quantity},
        )
        self._alert_if_low(record)
        return record

    def release(self, request: ReservationRequest) -> StockRecord:
        """Give reserved units back to available stock."""
        self._require_positive(request)
        with self.ledger.load_for_exclusive_update(request.product_id) as hold:
            if self._already_applied(hold, request, RELEASE):
                return hold.record
            record = hold.record
            if request.quantity > record.reserved:
                raise OverRelease(
                    f"Cannot release {request.quantity} units of product {request.product_id}. "
                    f"Only {record.reserved} reserved.",
                    product_id=request.product_id,
                    requested=request.quantity,
                )
            record.reserved -= request.quantity
            self._mark_applied(hold, request, RELEASE)

        logger.info(
            f"Released {request.quantity} units of product {request.product_id} for {request.order_reference}",
            extra={"product_id": request.product_id, "order_number": request.order_reference, "quantity": request.quantity},
        )
        return record

    def confirm(self, request: ReservationRequest) -> StockRecord:
        """Turn a reservation into a physical deduction."""
        self._require_positive(request)
        with self.ledger.load_for_exclusive_update(request.product_id) as hold:
            if self._already_applied(hold, request, CONFIRM):
                return hold.record
            record = hold.record
            if request.quantity > record.reserved:
                raise OverConfirm(
                    f"Cannot confirm {request.quantity} units of product {request.product_id}. "
                    f"Only {record.reserved} reserved.",
                    product_id=request.product_id,
                    requested=request.quantity,
                )
            record.reserved -= request.quantity
            record.on_hand -= request.quantity
            self._mark_applied(hold, request, CONFIRM)

        logger.info(
            f"Confirmed {request.quantity} units of product {request.product_id} for {request.order_reference}",
            extra={"product_id": request.product_id, "order_number": request.order_reference, "quantity": request.quantity},
        )
        self._alert_if_low(record)
        return record

    def adjust_reserved(self, product_id: int, reserved: int, reason: str) -> StockRecord:
        """
        Repair hook: overwrite the reserved counter.

        Used to reconcile reservations that a failed compensating release left
        behind. Runs under the exclusive hold like the protocol operations.
        """
        if reserved < 0:
            raise InvalidArgument(f"reserved must be non-negative, got {reserved}")
        with self.ledger.load_for_exclusive_update(product_id) as hold:
            record = hold.record
            if reserved > record.on_hand:
                raise InvalidArgument(f"reserved ({reserved}) cannot exceed on_hand ({record.on_hand})")
            previous = record.reserved
            record.reserved = reserved

        logger.warning(
            f"Reserved count of product {product_id} adjusted {previous} -> {reserved}: {reason}",
            extra={"product_id": product_id},
        )
        return record

    # ------------------------------------------------------------------
    # Optimistic administrative operations
    # ------------------------------------------------------------------

    def restock(self, product_id: int, quantity: int) -> StockRecord:
        """Add units to on_hand."""
        if quantity <= 0:
            raise InvalidArgument(f"Restock quantity must be positive, got {quantity}")

        def apply(record: StockRecord) -> None:
            record.on_hand += quantity

        record = self._update_optimistically(product_id, apply)
        logger.info(f"Restocked product {product_id} by {quantity}", extra={"product_id": product_id, "quantity": quantity})
        return record

    def write_off(self, product_id: int, quantity: int) -> StockRecord:
        """Remove damaged or lost units; only unreserved stock can be written off."""
        if quantity <= 0:
            raise InvalidArgument(f"Write-off quantity must be positive, got {quantity}")

        def apply(record: StockRecord) -> None:
            if quantity > record.available:
                raise InsufficientStock(
                    f"Cannot write off {quantity} units of product {product_id}. Only {record.available} available.",
                    product_id=product_id,
                    requested=quantity,
                )
            record.on_hand -= quantity

        record = self._update_optimistically(product_id, apply)
        logger.info(f"Wrote off {quantity} units of product {product_id}", extra={"product_id": product_id, "quantity": quantity})
        self._alert_if_low(record)
        return record

    def update_thresholds(
        self,
        product_id: int,
        reorder_threshold: Optional[int] = None,
        reorder_batch_size: Optional[int] = None,
    ) -> StockRecord:
        if reorder_threshold is not None and reorder_threshold < 0:
            raise InvalidArgument("reorder_threshold must be non-negative")
        if reorder_batch_size is not None and reorder_batch_size <= 0:
            raise InvalidArgument("reorder_batch_size must be positive")

        def apply(record: StockRecord) -> None:
            if reorder_threshold is not None:
                record.reorder_threshold = reorder_threshold
            if reorder_batch_size is not None:
                record.reorder_batch_size = reorder_batch_size

        return self._update_optimistically(product_id, apply)

    # ------------------------------------------------------------------
    # Queries (no mutation)
    # ------------------------------------------------------------------

    def get(self, product_id: int) -> StockRecord:
        record = self.ledger.load(product_id)
        if record is None:
            raise StockRecordNotFound(product_id)
        return record

    def available_quantity(self, product_id: int) -> int:
        return self.get(product_id).available

    def needs_reorder(self, product_id: int) -> bool:
        return self.get(product_id).needs_reorder()

    def check_stock(self, product_id: int, quantity: int) -> bool:
        """Always answerable: unknown products and non-positive quantities are 'not available'."""
        if quantity <= 0:
            return False
        record = self.ledger.load(product_id)
        return record is not None and record.available >= quantity

    def insufficient_among(self, product_ids: Iterable[int], required_quantity: int) -> List[int]:
        if required_quantity <= 0:
            raise InvalidArgument(f"Required quantity must be positive, got {required_quantity}")
        return self.ledger.insufficient_among(product_ids, required_quantity)

    def products_needing_reorder(self) -> List[StockRecord]:
        return self.ledger.needing_reorder()

    def out_of_stock_products(self) -> List[StockRecord]:
        return self.ledger.out_of_stock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_positive(request: ReservationRequest) -> None:
        if request.quantity <= 0:
            raise InvalidArgument(f"Quantity must be positive, got {request.quantity}")

    @staticmethod
    def _already_applied(hold: ExclusiveHold, request: ReservationRequest, operation: str) -> bool:
        if not request.idempotency_key:
            return False
        applied = (
            hold.session.query(AppliedOperation)
            .filter(AppliedOperation.idempotency_key == request.idempotency_key)
            .first()
        )
        if applied is None:
            return False
        if applied.operation != operation or applied.product_id != request.product_id:
            raise InvalidArgument(
                f"Idempotency key {request.idempotency_key} was already used for "
                f"{applied.operation} of product {applied.product_id}"
            )
        logger.info(
            f"Skipping duplicate {operation} {request.idempotency_key}",
            extra={"product_id": request.product_id, "order_number": request.order_reference},
        )
        return True

    @staticmethod
    def _mark_applied(hold: ExclusiveHold, request: ReservationRequest, operation: str) -> None:
        if not request.idempotency_key:
            return
        hold.session.add(
            AppliedOperation(
                idempotency_key=request.idempotency_key,
                operation=operation,
                product_id=request.product_id,
                quantity=request.quantity,
                order_reference=request.order_reference,
            )
        )

    def _update_optimistically(self, product_id: int, apply: Callable[[StockRecord], None]) -> StockRecord:
        """Load, apply, save; reload and retry on a revision conflict, at most optimistic_max_retries times."""
        for attempt in range(1, self.optimistic_max_retries + 1):
            record = self.get(product_id)
            apply(record)
            try:
                return self.ledger.save(record)
            except ConcurrentModification:
                if attempt == self.optimistic_max_retries:
                    logger.error(
                        f"Giving up on product {product_id} after {attempt} conflicting attempts",
                        extra={"product_id": product_id},
                    )
                    raise
                logger.warning(
                    f"Concurrent conflict for product {product_id}, retry {attempt}/{self.optimistic_max_retries}",
                    extra={"product_id": product_id},
                )
        raise ConcurrentModification(f"No attempts made for product {product_id}")

    def _alert_if_low(self, record: StockRecord) -> None:
        if self.notifier is None or not self.alert_recipient or not record.needs_reorder():
            return
        subject = f"Low stock: product {record.product_id}"
        body = (
            f"Product {record.product_id} is at or below its reorder threshold.\n"
            f"On hand: {record.on_hand}\nReserved: {record.reserved}\nAvailable: {record.available}\n"
            f"Reorder threshold: {record.reorder_threshold}\nSuggested reorder: {record.reorder_batch_size}\n"
        )
        try:
            sent = self.notifier.send(self.alert_recipient, subject, body)
        except Exception:
            logger.exception(f"Low stock alert for product {record.product_id} failed", extra={"product_id": record.product_id})
            return
        if not sent:
            logger.warning(f"Low stock alert for product {record.product_id} not delivered", extra={"product_id": record.product_id})
