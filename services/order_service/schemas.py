from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from .models import OrderLine


class OrderItemSchema(BaseModel):
    """Order item schema."""

    product_id: int
    quantity: int
    unit_price: Decimal = Decimal("0")

    model_config = {"from_attributes": True}

    def to_line(self) -> OrderLine:
        return OrderLine(product_id=self.product_id, quantity=self.quantity, unit_price=self.unit_price)


class AddressSchema(BaseModel):
    street: str
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str


class CreateOrderRequest(BaseModel):
    """Request to create an order."""

    user_id: str
    items: List[OrderItemSchema]
    shipping_address: Optional[AddressSchema] = None
    notes: Optional[str] = Field(None, max_length=500)


class AvailabilityRequest(BaseModel):
    items: List[OrderItemSchema]


class AvailabilityResponse(BaseModel):
    available: bool
    unavailable_product_ids: List[int]


class OrderResponse(BaseModel):
    """Response model for order."""

    order_number: str
    user_id: str
    status: str
    items: List[OrderItemSchema]
    total_amount: Decimal
    currency: str
    shipping_address: Optional[AddressSchema] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ReconcileResponse(BaseModel):
    resolved: List[str]
    remaining: List[str]


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str
    service: str
    version: str
