import time
import uuid

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from loyalty_core.core.config import get_settings
from loyalty_core.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from loyalty_core.core.logging import bind_request_id, configure_logging, get_logger
from loyalty_core.db.init import init_db
from loyalty_core.routers import admin, orders, payouts, points, scan, webhooks

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

QUIET_PATHS = {"/health"}

app = FastAPI(
    title="Loyalty Ledger API",
    version="1.0.0",
    default_response_class=ORJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    bind_request_id(request_id)
    start = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    if request.url.path in QUIET_PATHS:
        return response
    fields = {
        "method": request.method,
        "path": request.url.path,
        "status_code": response.status_code,
        "duration_ms": round((time.perf_counter() - start) * 1000, 2),
    }
    if response.status_code >= 500:
        log.warning("request", **fields)
    else:
        log.info("request", **fields)
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

app.include_router(orders.router, prefix="/v1/orders", tags=["orders"])
app.include_router(points.router, prefix="/v1/points", tags=["points"])
app.include_router(webhooks.router, prefix="/v1/webhooks", tags=["webhooks"])
app.include_router(scan.router, prefix="/v1/scan", tags=["scan"])
app.include_router(payouts.router, prefix="/v1/payouts", tags=["payouts"])
app.include_router(admin.router, prefix="/v1/admin", tags=["admin"])


@app.on_event("startup")
async def startup():
    if settings.sentry_dsn:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
        log.info("startup", msg="Sentry enabled")
    await init_db()
    app.state.redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    log.info("startup", msg="DB and Redis ready", db=settings.mongodb_db_name)


@app.on_event("shutdown")
async def shutdown():
    redis = getattr(app.state, "redis", None)
    if redis is not None:
        await redis.aclose()
        log.info("shutdown", msg="Redis closed")


@app.get("/health")
async def health():
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}
