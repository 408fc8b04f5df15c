import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from market_orders.config import settings
from market_orders.db import PostgresOrderStore, close_pool, get_pool, init_schema
from market_orders.errors import (
    InvalidActorForTransition,
    NotFoundError,
    PaymentRequestError,
    PersistenceUnavailable,
    PreconditionNotMet,
    TransitionError,
)
from market_orders.manager import OrderLifecycleManager
from market_orders.metrics import get_metrics_bytes, get_metrics_content_type
from market_orders.redis_client import close_redis, get_redis
from market_orders.routes import admin, jobs, orders
from market_orders.store import InMemoryOrderStore

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.store_backend == "memory":
        store = InMemoryOrderStore()
    else:
        pool = await get_pool()
        await init_schema(pool)
        store = PostgresOrderStore(pool)
    await get_redis()
    app.state.manager = OrderLifecycleManager(store)
    logger.info("Order lifecycle service ready (store=%s)", settings.store_backend)
    yield
    await close_redis()
    await close_pool()


app = FastAPI(title="Market Order Lifecycle", lifespan=lifespan)
app.include_router(orders.router)
app.include_router(jobs.router)
app.include_router(admin.router)


def _status_code_for(exc: TransitionError) -> int:
    if isinstance(exc, InvalidActorForTransition):
        return 403
    if isinstance(exc, PreconditionNotMet):
        return 422
    return 409  # invalid from-state, terminal, stale


@app.exception_handler(TransitionError)
async def transition_rejected(request: Request, exc: TransitionError) -> JSONResponse:
    return JSONResponse(
        status_code=_status_code_for(exc),
        content={
            "status": "rejected",
            "reason": exc.reason,
            "detail": exc.message,
            "current_status": exc.current_status,
        },
    )


@app.exception_handler(NotFoundError)
async def not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"status": "not_found", "detail": str(exc)})


@app.exception_handler(PaymentRequestError)
async def payment_rejected(request: Request, exc: PaymentRequestError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"status": "rejected", "detail": str(exc)})


@app.exception_handler(PersistenceUnavailable)
async def store_unavailable(request: Request, exc: PersistenceUnavailable) -> JSONResponse:
    logger.warning("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"status": "unavailable", "detail": "The order store is unavailable, please retry shortly."},
        headers={"Retry-After": "2"},
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: transitions, rejections, overrides, disputes, payments."""
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
