from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class StockRecordSchema(BaseModel):
    """Stock record as returned by the API."""

    product_id: int
    on_hand: int
    reserved: int
    available: int
    reorder_threshold: int
    reorder_batch_size: int
    revision: int
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RegisterProductRequest(BaseModel):
    """Request to create the stock record of a new product."""

    product_id: int
    on_hand: int = Field(0, ge=0)
    reorder_threshold: int = Field(10, ge=0)
    reorder_batch_size: int = Field(50, gt=0)


class ReservationRequestSchema(BaseModel):
    """Body of reserve / release / confirm."""

    product_id: int
    quantity: int
    order_reference: str
    idempotency_key: Optional[str] = None


class StockCheckResponse(BaseModel):
    product_id: int
    quantity: int
    available: bool


class RestockRequest(BaseModel):
    quantity: int


class WriteOffRequest(BaseModel):
    quantity: int


class ThresholdsRequest(BaseModel):
    reorder_threshold: Optional[int] = None
    reorder_batch_size: Optional[int] = None


class RepairRequest(BaseModel):
    reserved: int
    reason: str


class InsufficientRequest(BaseModel):
    product_ids: List[int]
    required_quantity: int


class InsufficientResponse(BaseModel):
    product_ids: List[int]


class ReorderResponse(BaseModel):
    product_id: int
    needs_reorder: bool


class ErrorResponse(BaseModel):
    """Body of every business-rule error."""

    error: str
    detail: str


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str
    service: str
    version: str
