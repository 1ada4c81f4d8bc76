"""
Bar Order Service
=================
HTTP API and process entry point.

Wires one order store, one subscription registry and one broadcaster
into the order service, the realtime websocket server and the liveness
monitor, and maps order errors onto HTTP status codes.

Version: 1.0.0
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from broadcaster import NotificationBroadcaster
from config import Config, get_config, validate_configuration
from db import OrderStore, create_store
from errors import OrderError, PreconditionError
from gateway import RealtimeGateway
from liveness import LivenessMonitor
from log_config import configure_logging
from order import OrderService
from registry import SubscriptionRegistry
from websocket_server import RealtimeServer


APP_VERSION = "1.0.0"

logger = logging.getLogger(__name__)


# ============================================================================
# ERROR MAPPING
# ============================================================================

_STATUS_BY_KIND = {
    "validation": 400,
    "not_found": 404,
    "conflict": 409,
    "invalid_transition": 409,
    "store": 500,
}


def http_status_for(error: OrderError) -> int:
    """HTTP status code for an order error."""
    if isinstance(error, PreconditionError):
        return 403 if error.reason == PreconditionError.NOT_OWNER else 409
    return _STATUS_BY_KIND.get(error.kind, 500)


def _error_response(error: OrderError) -> JSONResponse:
    return JSONResponse(status_code=http_status_for(error), content=error.to_dict())


# ============================================================================
# REQUEST BODIES
# ============================================================================

# Field checks happen in OrderService so HTTP and websocket callers
# get the same messages. barId is the name older clients send.

class CreateOrderRequest(BaseModel):
    venueId: Optional[Any] = None
    barId: Optional[Any] = None
    customerName: Optional[Any] = None
    drinkId: Optional[Any] = None
    drinkTitle: Optional[Any] = None

    @property
    def venue_id(self) -> Any:
        return self.venueId if self.venueId is not None else self.barId


class UpdateStatusRequest(BaseModel):
    venueId: Optional[Any] = None
    barId: Optional[Any] = None
    status: Optional[Any] = None

    @property
    def venue_id(self) -> Any:
        return self.venueId if self.venueId is not None else self.barId


class CancelOrderRequest(BaseModel):
    venueId: Optional[Any] = None
    barId: Optional[Any] = None
    customerName: Optional[Any] = None

    @property
    def venue_id(self) -> Any:
        return self.venueId if self.venueId is not None else self.barId


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_orders(request: Request) -> OrderService:
    return request.app.state.orders


def get_registry(request: Request) -> SubscriptionRegistry:
    return request.app.state.registry


def get_store(request: Request) -> OrderStore:
    return request.app.state.store


# ============================================================================
# ORDER ROUTES
# ============================================================================

router = APIRouter(prefix="/api")


@router.get("/orders/bar/{venue_id}")
async def list_orders(
    venue_id: str,
    status: Optional[str] = None,
    customerName: Optional[str] = None,
    limit: int = 100,
    orders: OrderService = Depends(get_orders)
):
    """Orders of a venue, newest first."""
    result = await orders.list_orders(venue_id, status=status, customer_name=customerName, limit=limit)
    return [order.to_dict() for order in result.unwrap()]


@router.get("/orders/bar/{venue_id}/pending")
async def pending_orders(venue_id: str, orders: OrderService = Depends(get_orders)):
    """Active orders, oldest first (the bartender queue)."""
    result = await orders.pending_orders(venue_id)
    return [order.to_dict() for order in result.unwrap()]


@router.get("/orders/bar/{venue_id}/customer/{customer_name}")
async def customer_order(
    venue_id: str,
    customer_name: str,
    orders: OrderService = Depends(get_orders)
):
    """The guest's active order, or null."""
    result = await orders.current_order(venue_id, customer_name)
    order = result.unwrap()
    return order.to_dict() if order else None


@router.post("/orders", status_code=201)
async def create_order(body: CreateOrderRequest, orders: OrderService = Depends(get_orders)):
    result = await orders.create_order(
        body.venue_id,
        body.customerName,
        body.drinkId,
        body.drinkTitle
    )
    return result.unwrap().to_dict()


@router.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    body: UpdateStatusRequest,
    orders: OrderService = Depends(get_orders)
):
    result = await orders.transition(order_id, body.venue_id, body.status)
    return result.unwrap().to_dict()


@router.delete("/orders/{order_id}")
async def cancel_order(
    order_id: str,
    body: CancelOrderRequest,
    orders: OrderService = Depends(get_orders)
):
    result = await orders.cancel(order_id, body.venue_id, body.customerName)
    result.unwrap()
    return {"success": True, "message": "Order deleted successfully"}


# ============================================================================
# OPERATIONAL ROUTES
# ============================================================================

@router.get("/health")
async def health_check(
    store: OrderStore = Depends(get_store),
    registry: SubscriptionRegistry = Depends(get_registry)
):
    """Health check endpoint."""
    database_ok = await store.ping()
    return JSONResponse(
        status_code=200 if database_ok else 503,
        content={
            "status": "OK" if database_ok else "ERROR",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": "connected" if database_ok else "disconnected",
            "connections": len(registry),
            "version": APP_VERSION,
        }
    )


@router.get("/realtime/stats")
async def realtime_stats(registry: SubscriptionRegistry = Depends(get_registry)):
    return registry.get_stats()


async def metrics():
    """Prometheus scrape endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def create_app(config: Optional[Config] = None, store: Optional[OrderStore] = None) -> FastAPI:
    """
    Build the application.

    ``store`` overrides the configured backend (tests pass a seeded
    MemoryOrderStore).
    """
    config = config or get_config()
    store = store or create_store(config.store)

    registry = SubscriptionRegistry()
    broadcaster = NotificationBroadcaster(registry, send_timeout=config.realtime.send_timeout)
    gateway = RealtimeGateway(registry, broadcaster, store=store)
    broadcaster.on_drop = gateway.on_connection_lost

    liveness = LivenessMonitor(
        registry,
        interval=config.realtime.liveness_interval,
        timeout=config.realtime.liveness_timeout,
        on_evict=gateway.on_connection_lost
    )
    realtime_server = RealtimeServer(
        gateway,
        host=config.realtime.host,
        port=config.realtime.port,
        path=config.realtime.path,
        max_message_bytes=config.realtime.max_message_bytes
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting bar order service v{APP_VERSION} ({config.server.environment})")
        await broadcaster.start()
        if config.realtime.enabled:
            await realtime_server.start()
            await liveness.start()

        yield

        logger.info("Shutting down...")
        if config.realtime.enabled:
            await liveness.stop()
        # Deliver queued events before the sockets go away
        await broadcaster.stop()
        if config.realtime.enabled:
            await realtime_server.stop()
        await store.close()
        logger.info("Shutdown complete")

    app = FastAPI(title="Bar Order Service", version=APP_VERSION, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.store = store
    app.state.registry = registry
    app.state.broadcaster = broadcaster
    app.state.gateway = gateway
    app.state.liveness = liveness
    app.state.realtime_server = realtime_server
    app.state.orders = OrderService(store, broadcaster)

    @app.exception_handler(OrderError)
    async def order_error_handler(request: Request, exc: OrderError):
        if http_status_for(exc) >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"error": f"Invalid request: {detail}"})

    app.include_router(router)
    app.add_api_route("/metrics", metrics, methods=["GET"], include_in_schema=False)

    return app


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Run the HTTP API (and the realtime server in the same loop)."""
    config = get_config()
    configure_logging(config.server.log_level, config.server.environment)

    validate_configuration()

    logger.info(f"Starting server on {config.server.host}:{config.server.port}")

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
