from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
import os
import logging
import sys

from app.api import boosts, boost_queue_admin, health
from app.rate_limiter import limiter
from app.db.database import AsyncSessionLocal
from app.exceptions import APIError
from app.core.cache import close_cache, get_cache
from app.core.distributed_lock import DistributedLockManager
from app.core.logging_config import setup_logging
from app.core.config import settings
from app.services.boost_queue import (
    BoostAdmissionService,
    BoostCancellationService,
    BoostQueueQueries,
    BoostQueueReconciler,
)
from app.services.boost_queue.refunds import load_refund_policy
from app.services.notifications import get_notification_dispatcher
from app.services.payment_gateway import get_payment_gateway

logger = logging.getLogger(__name__)

# Validate CORS for production
if settings.ENVIRONMENT == "production":
    if "http://localhost:3000" in settings.CORS_ORIGINS and len(settings.CORS_ORIGINS) == 1:
        logger.error("Production environment detected but CORS_ORIGINS contains localhost or is not set correctly.")
        sys.exit(1)

app = FastAPI(title="Business Directory Boost Engine")
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if os.getenv("TESTING") != "true":
    app.add_middleware(SlowAPIMiddleware)


def init_boost_services(target_app: FastAPI, session_factory, payment_gateway, notifier, cache, lock_manager) -> None:
    """
    Wires the boost queue services onto ``app.state``. All services share one
    lock manager so per-category serialization holds across them.
    """
    refund_policy = load_refund_policy()
    duration = settings.boost_duration

    target_app.state.payment_gateway = payment_gateway
    target_app.state.notifier = notifier
    target_app.state.boost_admission_service = BoostAdmissionService(
        session_factory=session_factory,
        payment_gateway=payment_gateway,
        notifier=notifier,
        lock_manager=lock_manager,
        cache=cache,
        boost_duration=duration,
    )
    target_app.state.boost_cancellation_service = BoostCancellationService(
        session_factory=session_factory,
        payment_gateway=payment_gateway,
        notifier=notifier,
        lock_manager=lock_manager,
        cache=cache,
        refund_policy=refund_policy,
        boost_duration=duration,
    )
    target_app.state.boost_queue_queries = BoostQueueQueries(
        session_factory=session_factory,
        cache=cache,
        boost_duration=duration,
    )
    target_app.state.boost_queue_reconciler = BoostQueueReconciler(
        session_factory=session_factory,
        notifier=notifier,
        lock_manager=lock_manager,
        cache=cache,
        cancellation_service=target_app.state.boost_cancellation_service,
        boost_duration=duration,
    )


@app.on_event("startup")
async def startup_event():
    # Setup Logging
    setup_logging(settings.LOG_FILE_PATH)

    logger.info(f"Starting up in {settings.ENVIRONMENT} mode")
    logger.info(f"CORS Allowed Origins: {settings.CORS_ORIGINS}")

    cache = await get_cache()
    payment_gateway = get_payment_gateway(
        settings.PAYMENT_GATEWAY,
        {"secret_key": settings.STRIPE_SECRET_KEY, "api_base": settings.STRIPE_API_BASE},
    )
    logger.info(f"Payment gateway: {settings.PAYMENT_GATEWAY}")

    init_boost_services(
        app,
        session_factory=AsyncSessionLocal,
        payment_gateway=payment_gateway,
        notifier=get_notification_dispatcher(settings.NOTIFICATION_WEBHOOK_URL),
        cache=cache,
        lock_manager=DistributedLockManager(cache),
    )
    await app.state.boost_queue_reconciler.start()


@app.on_event("shutdown")
async def shutdown_event():
    if hasattr(app.state, "boost_queue_reconciler"):
        await app.state.boost_queue_reconciler.stop()
    if hasattr(app.state, "notifier"):
        await app.state.notifier.close()
    if hasattr(app.state, "payment_gateway"):
        await app.state.payment_gateway.close()
    await close_cache()


app.include_router(health.router, prefix="/api/v1/health", tags=["Health Check"])
app.include_router(boosts.router, prefix="/api/v1/boosts", tags=["Boosts"])
app.include_router(boost_queue_admin.router, prefix="/api/v1/admin/boost-queues", tags=["Boost Queue Admin"])
