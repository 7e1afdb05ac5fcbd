from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, func
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class StockRecord(Base):
    """Per-product stock counters. Mutated only by the reservation engine."""

    __tablename__ = "stock_records"
    __table_args__ = (
        CheckConstraint("on_hand >= 0", name="ck_stock_on_hand_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_stock_reserved_non_negative"),
        CheckConstraint("reserved <= on_hand", name="ck_stock_reserved_within_on_hand"),
    )
    __mapper_args__ = {"eager_defaults": True}

    product_id = Column(Integer, primary_key=True, autoincrement=False)
    on_hand = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    reorder_threshold = Column(Integer, nullable=False, default=10)
    reorder_batch_size = Column(Integer, nullable=False, default=50)
    revision = Column(Integer, nullable=False, default=0)  # Optimistic lock
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved

    def needs_reorder(self) -> bool:
        return self.on_hand <= self.reorder_threshold

    def __repr__(self) -> str:
        return (
            f"StockRecord(product_id={self.product_id}, on_hand={self.on_hand}, "
            f"reserved={self.reserved}, revision={self.revision})"
        )


class AppliedOperation(Base):
    """Idempotency keys of reserve/release/confirm calls that already changed stock."""

    __tablename__ = "applied_operations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(255), unique=True, nullable=False, index=True)
    operation = Column(String(20), nullable=False)
    product_id = Column(Integer, nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    order_reference = Column(String(255), nullable=True)
    applied_at = Column(DateTime, server_default=func.now(), nullable=False)
