"""
inventory_client.py - Inter-Service Client for the Inventory Service

PURPOSE:
    The order service's only way to touch stock. Wraps check_stock, reserve,
    release and confirm over HTTP (httpx).

DEGRADED MODE:
    When the inventory service cannot be reached in time (connection error,
    timeout, 5xx, or the circuit is open) no exception escapes:
        - check_stock returns False ("not available")
        - reserve / release / confirm return the NO_EFFECT sentinel
    Callers must treat NO_EFFECT as "nothing happened" and fail closed.
    There are no retries inside a call.

BUSINESS ERRORS:
    4xx responses carry {"error": code, "detail": message}; the code is turned
    back into the matching exception (InsufficientStock, OverRelease,
    OverConfirm, InvalidArgument, StockRecordNotFound, ...).

CIRCUIT BREAKER:
    CLOSED    calls go through; consecutive transport failures are counted
    OPEN      after failure_threshold failures; calls short-circuit to degraded
    HALF_OPEN after reset_timeout; one trial call decides CLOSED or OPEN again
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Union

import httpx
from pydantic import BaseModel

from shared.exceptions import (
    ERROR_CODE_MAP,
    FulfillmentError,
    InvalidArgument,
    StockError,
    StockRecordNotFound,
)

logger = logging.getLogger(__name__)


class _NoEffect:
    """Result of a stock operation that was not performed."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_EFFECT"


NO_EFFECT = _NoEffect()


class StockSnapshot(BaseModel):
    """Stock record as reported back by a successful operation."""

    product_id: int
    on_hand: int
    reserved: int
    available: int
    revision: int


StockResult = Union[StockSnapshot, _NoEffect]


class CircuitBreaker:
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

    def __init__(self, failure_threshold: int = 5, reset_timeout: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = self.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == self.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
                return self.HALF_OPEN
            return self._state

    def allow_request(self) -> bool:
        with self._lock:
            if self._state == self.CLOSED:
                return True
            if self._state == self.OPEN:
                if self._clock() - self._opened_at < self.reset_timeout:
                    return False
                self._state = self.HALF_OPEN
                self._trial_in_flight = False
            # HALF_OPEN: a single trial call at a time
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state != self.CLOSED:
                logger.info("Inventory circuit closed")
            self._state = self.CLOSED
            self._failures = 0
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._trial_in_flight = False
            if self._state == self.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state != self.OPEN:
                    logger.warning(f"Inventory circuit opened after {self._failures} consecutive failure(s)")
                self._state = self.OPEN
                self._opened_at = self._clock()


class InventoryClient:
    """HTTP client for the inventory service with timeout, circuit breaker and degraded mode."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 5.0,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        if http_client is None:
            if base_url is None:
                raise ValueError("InventoryClient needs a base_url or an http_client")
            http_client = httpx.Client(base_url=base_url, timeout=timeout)
        self.http = http_client
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(failure_threshold, reset_timeout)

    def check_stock(self, product_id: int, quantity: int) -> bool:
        """Pre-flight availability. False whenever the answer is unknown."""
        response = self._call("GET", "/inventory/check", params={"product_id": product_id, "quantity": quantity})
        if response is NO_EFFECT or response.status_code != 200:
            return False
        return bool(response.json().get("available", False))

    def reserve(self, product_id: int, quantity: int, order_reference: str, idempotency_key: Optional[str] = None) -> StockResult:
        return self._mutate("/inventory/reserve", product_id, quantity, order_reference, idempotency_key)

    def release(self, product_id: int, quantity: int, order_reference: str, idempotency_key: Optional[str] = None) -> StockResult:
        return self._mutate("/inventory/release", product_id, quantity, order_reference, idempotency_key)

    def confirm(self, product_id: int, quantity: int, order_reference: str, idempotency_key: Optional[str] = None) -> StockResult:
        return self._mutate("/inventory/confirm", product_id, quantity, order_reference, idempotency_key)

    def close(self) -> None:
        self.http.close()

    def _mutate(
        self, path: str, product_id: int, quantity: int, order_reference: str, idempotency_key: Optional[str]
    ) -> StockResult:
        body: Dict[str, Any] = {
            "product_id": product_id,
            "quantity": quantity,
            "order_reference": order_reference,
            "idempotency_key": idempotency_key,
        }
        response = self._call("POST", path, json=body)
        if response is NO_EFFECT:
            return NO_EFFECT
        if response.is_success:
            return StockSnapshot.model_validate(response.json())
        raise self._to_error(response, product_id, quantity)

    def _call(self, method: str, path: str, **kwargs):
        if not self.breaker.allow_request():
            logger.warning(f"Inventory circuit open, {method} {path} not attempted")
            return NO_EFFECT
        try:
            response = self.http.request(method, path, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException:
            logger.warning(f"Inventory {method} {path} timed out after {self.timeout}s")
            self.breaker.record_failure()
            return NO_EFFECT
        except httpx.TransportError as e:
            logger.warning(f"Inventory {method} {path} failed: {e}")
            self.breaker.record_failure()
            return NO_EFFECT
        if response.status_code >= 500:
            logger.warning(f"Inventory {method} {path} returned {response.status_code}")
            self.breaker.record_failure()
            return NO_EFFECT
        self.breaker.record_success()
        return response

    @staticmethod
    def _to_error(response: httpx.Response, product_id: int, quantity: int) -> FulfillmentError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        code = body.get("error") if isinstance(body, dict) else None
        detail = body.get("detail") if isinstance(body, dict) else None

        if code == StockRecordNotFound.code:
            return StockRecordNotFound(product_id)
        error_class = ERROR_CODE_MAP.get(code)
        if error_class is not None:
            if issubclass(error_class, StockError):
                return error_class(str(detail), product_id=product_id, requested=quantity)
            return error_class(str(detail))
        if response.status_code == 422:
            return InvalidArgument(f"Inventory rejected request: {detail}")
        return FulfillmentError(f"Unexpected inventory response {response.status_code}: {detail or response.text}")
