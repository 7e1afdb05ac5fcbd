"""
api.py - Order HTTP Surface

ENDPOINTS:
    POST /orders                                  create (reserves synchronously)
    GET  /orders/{order_number}
    GET  /orders/user/{user_id}
    POST /orders/{order_number}/confirm
    POST /orders/{order_number}/payment-pending
    POST /orders/{order_number}/payment-completed
    POST /orders/{order_number}/payment-failed
    POST /orders/{order_number}/process
    POST /orders/{order_number}/ship
    POST /orders/{order_number}/deliver
    POST /orders/{order_number}/cancel
    POST /orders/{order_number}/refund
    POST /orders/availability                     pre-flight stock check
    POST /admin/compensations/reconcile           retry failed compensations

ERRORS ({"error": code, "detail": message}):
    IllegalTransition 409, DownstreamUnavailable 503, OrderNotFound 404,
    InvalidArgument 422, stock and concurrency conflicts 409
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from shared.exceptions import (
    ConcurrentModification,
    DownstreamUnavailable,
    FulfillmentError,
    IllegalTransition,
    InvalidArgument,
    OrderNotFound,
    StockError,
    StockRecordNotFound,
)

from .schemas import (
    AvailabilityRequest,
    AvailabilityResponse,
    CreateOrderRequest,
    OrderResponse,
    ReconcileResponse,
)
from .service import OrderService

logger = logging.getLogger(__name__)

orders_router = APIRouter(prefix="/orders", tags=["orders"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service


def status_for(error: FulfillmentError) -> int:
    if isinstance(error, (OrderNotFound, StockRecordNotFound)):
        return 404
    if isinstance(error, InvalidArgument):
        return 422
    if isinstance(error, DownstreamUnavailable):
        return 503
    if isinstance(error, (IllegalTransition, StockError, ConcurrentModification)):
        return 409
    return 500


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(FulfillmentError)
    async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
        status_code = status_for(exc)
        logger.warning(f"{request.method} {request.url.path} -> {status_code} {exc.code}: {exc.message}")
        return JSONResponse(status_code=status_code, content={"error": exc.code, "detail": exc.message})


@orders_router.post("", response_model=OrderResponse, status_code=201)
def create_order(body: CreateOrderRequest, service: OrderService = Depends(get_order_service)):
    return service.create_order(
        body.user_id,
        [item.to_line() for item in body.items],
        shipping_address=body.shipping_address.model_dump() if body.shipping_address else None,
        notes=body.notes,
    )


@orders_router.post("/availability", response_model=AvailabilityResponse)
def check_availability(body: AvailabilityRequest, service: OrderService = Depends(get_order_service)):
    unavailable = service.check_availability([item.to_line() for item in body.items])
    return AvailabilityResponse(available=not unavailable, unavailable_product_ids=unavailable)


@orders_router.get("/user/{user_id}", response_model=List[OrderResponse])
def get_user_orders(user_id: str, service: OrderService = Depends(get_order_service)):
    return service.get_orders_by_user(user_id)


@orders_router.get("/{order_number}", response_model=OrderResponse)
def get_order(order_number: str, service: OrderService = Depends(get_order_service)):
    return service.get_order(order_number)


@orders_router.post("/{order_number}/confirm", response_model=OrderResponse)
def confirm_order(order_number: str, service: OrderService = Depends(get_order_service)):
    return service.confirm_order(order_number)


@orders_router.post("/{order_number}/payment-pending", response_model=OrderResponse)
def payment_pending(order_number: str, service: OrderService = Depends(get_order_service)):
    return service.mark_payment_pending(order_number)


@orders_router.post("/{order_number}/payment-completed", response_model=OrderResponse)
def payment_completed(order_number: str, service: OrderService = Depends(get_order_service)):
    return service.mark_payment_completed(order_number)


@orders_router.post("/{order_number}/payment-failed", response_model=OrderResponse)
def payment_failed(order_number: str, service: OrderService = Depends(get_order_service)):
    return service.mark_payment_failed(order_number)


@orders_router.post("/{order_number}/process", response_model=OrderResponse)
def start_processing(order_number: str, service: OrderService = Depends(get_order_service)):
    return service.start_processing(order_number)


@orders_router.post("/{order_number}/ship", response_model=OrderResponse)
def ship_order(order_number: str, service: OrderService = Depends(get_order_service)):
    return service.ship_order(order_number)


@orders_router.post("/{order_number}/deliver", response_model=OrderResponse)
def deliver_order(order_number: str, service: OrderService = Depends(get_order_service)):
    return service.deliver_order(order_number)


@orders_router.post("/{order_number}/cancel", response_model=OrderResponse)
def cancel_order(order_number: str, service: OrderService = Depends(get_order_service)):
    return service.cancel_order(order_number)


@orders_router.post("/{order_number}/refund", response_model=OrderResponse)
def refund_order(order_number: str, service: OrderService = Depends(get_order_service)):
    return service.refund_order(order_number)


@admin_router.post("/compensations/reconcile", response_model=ReconcileResponse)
def reconcile_compensations(service: OrderService = Depends(get_order_service)):
    result = service.reconcile_compensations()
    return ReconcileResponse(resolved=result.resolved, remaining=result.remaining)
