"""Recall Alerts — FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import stripe
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from recall_alerts.api.v1.billing import router as billing_router
from recall_alerts.api.v1.subscribers import router as subscribers_router
from recall_alerts.api.v1.webhooks import router as webhooks_router
from recall_alerts.billing.dependencies import plan_catalog
from recall_alerts.config import settings
from recall_alerts.entitlements.aggregate import AggregateClosed
from recall_alerts.entitlements.errors import ConflictError, LockContention, NotFound, ValidationError

# Configure root logger so all recall_alerts.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    # Startup — warm the plan catalog; routes retry lazily if Stripe is down
    try:
        await plan_catalog.refresh()
    except stripe.StripeError as e:
        logger.warning("Could not load billing plans at startup: %s", e)
    yield
    # Shutdown — dispose engine connections
    from recall_alerts.database import engine

    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Recall and vehicle-campaign alerts: paid entitlements, billing reconciliation and targeting.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Domain errors -> HTTP


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"errors": [exc.to_detail()]},
    )


@app.exception_handler(ConflictError)
async def conflict_error_handler(request: Request, exc: ConflictError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"errors": [exc.to_detail()]},
    )


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": f"{exc.kind.capitalize()} not found"},
    )


@app.exception_handler(LockContention)
async def lock_contention_handler(request: Request, exc: LockContention) -> JSONResponse:
    logger.warning("Request %s %s hit lock contention: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "The subscriber is being updated, try again later"},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(AggregateClosed)
async def aggregate_closed_handler(request: Request, exc: AggregateClosed) -> JSONResponse:
    logger.error("Request %s %s wrote through a closed aggregate: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "The subscriber is being updated, try again later"},
        headers={"Retry-After": "1"},
    )


# Routers
app.include_router(billing_router)
app.include_router(subscribers_router)
app.include_router(webhooks_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}
