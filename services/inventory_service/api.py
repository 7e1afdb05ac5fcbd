"""
api.py - Inventory HTTP Surface

Thin transport over the Reservation Engine. Business errors are raised by the
engine and turned into {"error": code, "detail": message} by the handler
installed with install_error_handlers().

ENDPOINTS:
    GET  /inventory/check?product_id=&quantity=   pre-flight, never errors
    POST /inventory/reserve                       ReservationRequestSchema
    POST /inventory/release                       ReservationRequestSchema
    POST /inventory/confirm                       ReservationRequestSchema
    GET  /inventory/reorder                       records at or below threshold
    GET  /inventory/out-of-stock                  records with nothing available
    POST /inventory/insufficient                  ids short of a quantity
    GET  /products                                all stock records
    POST /products                                register a product (admin)
    GET  /products/{product_id}
    GET  /products/{product_id}/reorder
    POST /products/{product_id}/restock           (admin, optimistic)
    POST /products/{product_id}/write-off         (admin, optimistic)
    PUT  /products/{product_id}/thresholds        (admin, optimistic)
    POST /products/{product_id}/repair            reserved-count repair hook
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from shared.exceptions import (
    ConcurrentModification,
    DuplicateProduct,
    FulfillmentError,
    InvalidArgument,
    StockError,
    StockRecordNotFound,
)

from .reservation import ReservationEngine, ReservationRequest
from .schemas import (
    ErrorResponse,
    InsufficientRequest,
    InsufficientResponse,
    RegisterProductRequest,
    ReorderResponse,
    RepairRequest,
    ReservationRequestSchema,
    RestockRequest,
    StockCheckResponse,
    StockRecordSchema,
    ThresholdsRequest,
    WriteOffRequest,
)

logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Unknown product"},
    409: {"model": ErrorResponse, "description": "Stock rule or concurrency conflict"},
}

inventory_router = APIRouter(prefix="/inventory", tags=["inventory"], responses=ERROR_RESPONSES)
products_router = APIRouter(prefix="/products", tags=["products"], responses=ERROR_RESPONSES)


def get_engine(request: Request) -> ReservationEngine:
    return request.app.state.reservation_engine


def status_for(error: FulfillmentError) -> int:
    if isinstance(error, InvalidArgument):
        return 422
    if isinstance(error, StockRecordNotFound):
        return 404
    if isinstance(error, (StockError, ConcurrentModification, DuplicateProduct)):
        return 409
    return 500


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(FulfillmentError)
    async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
        status_code = status_for(exc)
        logger.warning(f"{request.method} {request.url.path} -> {status_code} {exc.code}: {exc.message}")
        return JSONResponse(status_code=status_code, content={"error": exc.code, "detail": exc.message})


def _to_request(body: ReservationRequestSchema) -> ReservationRequest:
    return ReservationRequest(
        product_id=body.product_id,
        quantity=body.quantity,
        order_reference=body.order_reference,
        idempotency_key=body.idempotency_key,
    )


# ----------------------------------------------------------------------
# /inventory
# ----------------------------------------------------------------------


@inventory_router.get("/check", response_model=StockCheckResponse)
def check_stock(product_id: int, quantity: int, engine: ReservationEngine = Depends(get_engine)):
    return StockCheckResponse(
        product_id=product_id,
        quantity=quantity,
        available=engine.check_stock(product_id, quantity),
    )


@inventory_router.post("/reserve", response_model=StockRecordSchema)
def reserve(body: ReservationRequestSchema, engine: ReservationEngine = Depends(get_engine)):
    return engine.reserve(_to_request(body))


@inventory_router.post("/release", response_model=StockRecordSchema)
def release(body: ReservationRequestSchema, engine: ReservationEngine = Depends(get_engine)):
    return engine.release(_to_request(body))


@inventory_router.post("/confirm", response_model=StockRecordSchema)
def confirm(body: ReservationRequestSchema, engine: ReservationEngine = Depends(get_engine)):
    return engine.confirm(_to_request(body))


@inventory_router.get("/reorder", response_model=List[StockRecordSchema])
def needing_reorder(engine: ReservationEngine = Depends(get_engine)):
    return engine.products_needing_reorder()


@inventory_router.get("/out-of-stock", response_model=List[StockRecordSchema])
def out_of_stock(engine: ReservationEngine = Depends(get_engine)):
    return engine.out_of_stock_products()


@inventory_router.post("/insufficient", response_model=InsufficientResponse)
def insufficient_among(body: InsufficientRequest, engine: ReservationEngine = Depends(get_engine)):
    return InsufficientResponse(product_ids=engine.insufficient_among(body.product_ids, body.required_quantity))


# ----------------------------------------------------------------------
# /products
# ----------------------------------------------------------------------


@products_router.get("", response_model=List[StockRecordSchema])
def list_products(engine: ReservationEngine = Depends(get_engine)):
    return engine.ledger.list_records()


@products_router.post("", response_model=StockRecordSchema, status_code=201)
def register_product(body: RegisterProductRequest, engine: ReservationEngine = Depends(get_engine)):
    return engine.ledger.register(
        body.product_id,
        on_hand=body.on_hand,
        reorder_threshold=body.reorder_threshold,
        reorder_batch_size=body.reorder_batch_size,
    )


@products_router.get("/{product_id}", response_model=StockRecordSchema)
def get_product(product_id: int, engine: ReservationEngine = Depends(get_engine)):
    return engine.get(product_id)


@products_router.get("/{product_id}/reorder", response_model=ReorderResponse)
def product_needs_reorder(product_id: int, engine: ReservationEngine = Depends(get_engine)):
    return ReorderResponse(product_id=product_id, needs_reorder=engine.needs_reorder(product_id))


@products_router.post("/{product_id}/restock", response_model=StockRecordSchema)
def restock(product_id: int, body: RestockRequest, engine: ReservationEngine = Depends(get_engine)):
    return engine.restock(product_id, body.quantity)


@products_router.post("/{product_id}/write-off", response_model=StockRecordSchema)
def write_off(product_id: int, body: WriteOffRequest, engine: ReservationEngine = Depends(get_engine)):
    return engine.write_off(product_id, body.quantity)


@products_router.put("/{product_id}/thresholds", response_model=StockRecordSchema)
def update_thresholds(product_id: int, body: ThresholdsRequest, engine: ReservationEngine = Depends(get_engine)):
    return engine.update_thresholds(
        product_id,
        reorder_threshold=body.reorder_threshold,
        reorder_batch_size=body.reorder_batch_size,
    )


@products_router.post("/{product_id}/repair", response_model=StockRecordSchema)
def repair_reserved(product_id: int, body: RepairRequest, engine: ReservationEngine = Depends(get_engine)):
    return engine.adjust_reserved(product_id, body.reserved, body.reason)
