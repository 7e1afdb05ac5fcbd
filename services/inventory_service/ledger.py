"""
ledger.py - Stock Ledger

The leaf data authority for per-product stock counts. Two write paths:

    EXCLUSIVE (reserve / release / confirm / repair)
        load_for_exclusive_update() takes a per-product hold for the whole
        read-check-mutate-write section. The hold is an in-process lock keyed by
        product_id plus SELECT ... FOR UPDATE on the row, so it excludes other
        threads of this process and other processes sharing the database.
        hold_timeout bounds both waits: the in-process lock directly, the row
        lock through lock_timeout on PostgreSQL. SQLite serializes writers with
        its busy timeout instead.
        Products never contend with each other.

    OPTIMISTIC (restock / threshold edits)
        load() then save(). save() only writes if the stored revision still
        equals the revision that was read, otherwise ConcurrentModification and
        the caller reloads and retries (bounded).

Every committed write bumps `revision`, on both paths.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional

from sqlalchemy import and_, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from shared.exceptions import ConcurrentModification, DuplicateProduct, InvalidArgument, StockRecordNotFound

from .models import StockRecord

logger = logging.getLogger(__name__)


class KeyedLock:
    """One lock per key, created on demand and dropped when nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[object, List] = {}  # key -> [lock, users]

    @contextmanager
    def hold(self, key, timeout: Optional[float] = None) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        acquired = False
        try:
            acquired = entry[0].acquire(timeout=-1 if timeout is None else timeout)
            if not acquired:
                raise ConcurrentModification(f"Timed out after {timeout}s waiting for exclusive hold on {key}")
            yield
        finally:
            if acquired:
                entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


# SQLSTATE lock_not_available, raised when lock_timeout expires
PG_LOCK_NOT_AVAILABLE = "55P03"


def lock_timeout_statement(dialect_name: str, timeout: Optional[float]):
    """SET LOCAL lock_timeout bounding the row-lock wait, for PostgreSQL. None elsewhere."""
    if dialect_name != "postgresql" or timeout is None:
        return None
    return text(f"SET LOCAL lock_timeout = {max(1, int(timeout * 1000))}")


def is_lock_timeout(error: OperationalError) -> bool:
    return getattr(error.orig, "pgcode", None) == PG_LOCK_NOT_AVAILABLE


@dataclass
class ExclusiveHold:
    """What the critical section works with: the locked row and its session."""

    session: Session
    record: StockRecord


def validate_counts(on_hand: int, reserved: int) -> None:
    if on_hand < 0:
        raise InvalidArgument(f"on_hand must be non-negative, got {on_hand}")
    if reserved < 0:
        raise InvalidArgument(f"reserved must be non-negative, got {reserved}")
    if reserved > on_hand:
        raise InvalidArgument(f"reserved ({reserved}) cannot exceed on_hand ({on_hand})")


class StockLedger:
    """Repository for stock records with exclusive and optimistic write paths."""

    def __init__(self, session_factory: sessionmaker, hold_timeout: Optional[float] = None):
        self.session_factory = session_factory
        self.hold_timeout = hold_timeout
        self._holds = KeyedLock()

    def register(
        self,
        product_id: int,
        on_hand: int = 0,
        reorder_threshold: int = 10,
        reorder_batch_size: int = 50,
    ) -> StockRecord:
        """Create the stock record for a newly registered product."""
        validate_counts(on_hand, 0)
        if reorder_threshold < 0 or reorder_batch_size <= 0:
            raise InvalidArgument("reorder_threshold must be >= 0 and reorder_batch_size > 0")
        record = StockRecord(
            product_id=product_id,
            on_hand=on_hand,
            reserved=0,
            reorder_threshold=reorder_threshold,
            reorder_batch_size=reorder_batch_size,
            revision=0,
        )
        session = self.session_factory()
        try:
            session.add(record)
            session.commit()
        except IntegrityError:
            session.rollback()
            raise DuplicateProduct(f"Product {product_id} already has a stock record")
        finally:
            session.close()
        logger.info(f"Registered product {product_id} with {on_hand} on hand", extra={"product_id": product_id})
        return record

    def load(self, product_id: int) -> Optional[StockRecord]:
        """Current record, detached from any session, or None."""
        session = self.session_factory()
        try:
            return session.query(StockRecord).filter(StockRecord.product_id == product_id).first()
        finally:
            session.close()

    @contextmanager
    def load_for_exclusive_update(self, product_id: int) -> Iterator[ExclusiveHold]:
        """
        Hold the product exclusively for the duration of the with-block.

        Changes made to hold.record (and anything added to hold.session) are
        committed on normal exit with revision + 1; any exception rolls them back.
        The hold is released on every exit path.
        """
        with self._holds.hold(product_id, self.hold_timeout):
            session = self.session_factory()
            try:
                statement = lock_timeout_statement(session.get_bind().dialect.name, self.hold_timeout)
                if statement is not None:
                    session.execute(statement)
                try:
                    record = (
                        session.query(StockRecord)
                        .filter(StockRecord.product_id == product_id)
                        .with_for_update()
                        .populate_existing()
                        .first()
                    )
                except OperationalError as e:
                    if not is_lock_timeout(e):
                        raise
                    raise ConcurrentModification(
                        f"Timed out after {self.hold_timeout}s waiting for row lock on product {product_id}"
                    ) from e
                if record is None:
                    raise StockRecordNotFound(product_id)
                yield ExclusiveHold(session=session, record=record)
                if session.is_modified(record):
                    validate_counts(record.on_hand, record.reserved)
                    record.revision += 1
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def save(self, record: StockRecord) -> StockRecord:
        """
        Optimistic write of a record obtained from load().

        Raises ConcurrentModification when someone committed since it was read.
        On success the passed record carries the new revision.
        """
        validate_counts(record.on_hand, record.reserved)
        read_revision = record.revision
        with self._holds.hold(record.product_id, self.hold_timeout):
            session = self.session_factory()
            try:
                updated = (
                    session.query(StockRecord)
                    .filter(
                        and_(
                            StockRecord.product_id == record.product_id,
                            StockRecord.revision == read_revision,
                        )
                    )
                    .update(
                        {
                            StockRecord.on_hand: record.on_hand,
                            StockRecord.reserved: record.reserved,
                            StockRecord.reorder_threshold: record.reorder_threshold,
                            StockRecord.reorder_batch_size: record.reorder_batch_size,
                            StockRecord.revision: read_revision + 1,
                        },
                        synchronize_session=False,
                    )
                )
                if updated == 0:
                    session.rollback()
                    raise ConcurrentModification(
                        f"Stock record {record.product_id} changed since revision {read_revision}"
                    )
                session.commit()
            finally:
                session.close()
        record.revision = read_revision + 1
        return record

    def list_records(self) -> List[StockRecord]:
        session = self.session_factory()
        try:
            return session.query(StockRecord).order_by(StockRecord.product_id).all()
        finally:
            session.close()

    def needing_reorder(self) -> List[StockRecord]:
        session = self.session_factory()
        try:
            return (
                session.query(StockRecord)
                .filter(StockRecord.on_hand <= StockRecord.reorder_threshold)
                .order_by(StockRecord.product_id)
                .all()
            )
        finally:
            session.close()

    def out_of_stock(self) -> List[StockRecord]:
        session = self.session_factory()
        try:
            return (
                session.query(StockRecord)
                .filter(StockRecord.on_hand - StockRecord.reserved <= 0)
                .order_by(StockRecord.product_id)
                .all()
            )
        finally:
            session.close()

    def insufficient_among(self, product_ids: Iterable[int], required_quantity: int) -> List[int]:
        """Ids among product_ids whose available stock is below required_quantity.

        Unknown ids are not reported, matching a plain query over stock records.
        """
        ids = list(dict.fromkeys(product_ids))
        if not ids:
            return []
        session = self.session_factory()
        try:
            rows = (
                session.query(StockRecord.product_id)
                .filter(
                    StockRecord.product_id.in_(ids),
                    StockRecord.on_hand - StockRecord.reserved < required_quantity,
                )
                .order_by(StockRecord.product_id)
                .all()
            )
            return [row.product_id for row in rows]
        finally:
            session.close()
