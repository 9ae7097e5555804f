import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from order_engine.errors import (
    AuthorizationError,
    ConflictError,
    GuardError,
    InsufficientInventoryError,
    InvalidOrderError,
    OrderEngineError,
    OrderNotFoundError,
    TransientStoreError,
)
from order_engine.metrics import get_metrics_bytes, get_metrics_content_type
from order_engine.routes import admin, orders
from order_engine.service import start_service, stop_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

_STATUS_CODES: list[tuple[type[OrderEngineError], int]] = [
    (OrderNotFoundError, 404),
    (AuthorizationError, 403),
    (InvalidOrderError, 422),
    (ConflictError, 409),
    (InsufficientInventoryError, 409),
    (GuardError, 409),
    (TransientStoreError, 503),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.service = await start_service()
    yield
    await stop_service(app.state.service)


app = FastAPI(title="Order Lifecycle Engine", lifespan=lifespan)
app.include_router(orders.router)
app.include_router(orders.notifications_router)
app.include_router(orders.activity_router)
app.include_router(admin.router)


@app.exception_handler(OrderEngineError)
async def order_engine_error(request: Request, exc: OrderEngineError) -> JSONResponse:
    status_code = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 400)
    if status_code == 503:
        logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"status": False, "error": exc.to_dict()},
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: transitions, compensations, audit DLQ, pending counts."""
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
