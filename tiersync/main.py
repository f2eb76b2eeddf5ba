"""
TierSync - Main Application
Subscription tier tracking driven by Dodo Payments webhooks.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, NoResultFound

from tiersync.api.routes import admin, checkout, subscription, users, webhooks
from tiersync.core.config import settings
from tiersync.core.database import AsyncSessionLocal, Base, engine
from tiersync.core.errors import BillingError, ProviderError
from tiersync.schemas.schemas import HealthResponse
from tiersync.services.dodo_payments import get_provider_mode
from tiersync.services.reconciliation import ReconciliationConfig, ReconciliationJob
from tiersync.services.subscription_state import SubscriptionStateMachine
from tiersync.services.tier_catalog import get_tier_catalog

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Dodo Payments mode: {get_provider_mode()}")
    logger.info(f"Webhook signatures: {'ENFORCED' if settings.webhook_signature_enforced else 'WARN ONLY'}")

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    job = ReconciliationJob(AsyncSessionLocal, SubscriptionStateMachine(get_tier_catalog()))
    app.state.reconciliation_job = job
    if settings.RECONCILIATION_ENABLED:
        job.start(ReconciliationConfig.from_settings())
    else:
        logger.info("Reconciliation job DISABLED: RECONCILIATION_ENABLED=false")

    yield

    job.stop()
    logger.info(f"Shutting down {settings.APP_NAME}")


app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Subscription tier tracking for Dodo Payments. Reconciles webhook events "
        "and API-initiated checkouts and plan changes into one user record."
    ),
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# ── CORS ─────────────────────────────────────────────────────────────────────
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error Responder ──────────────────────────────────────────────────────────
def _error(status_code: int, code: str, message: str, **details) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": code, "message": message, **details},
    )


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return _error(status.HTTP_400_BAD_REQUEST, "validation_error", "Invalid request", errors=errors)


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning(f"Integrity error on {request.url.path}: {exc.orig}")
    return _error(status.HTTP_409_CONFLICT, "resource_conflict", "Resource already exists or conflicts")


@app.exception_handler(NoResultFound)
async def not_found_handler(request: Request, exc: NoResultFound):
    return _error(status.HTTP_404_NOT_FOUND, "resource_not_found", "Resource not found")


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    logger.error(f"Payment provider error on {request.url.path}: {exc.status_code} {exc.message}")
    return _error(
        status.HTTP_502_BAD_GATEWAY,
        "provider_error",
        exc.message,
        provider_status=exc.status_code,
        provider_code=exc.code,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_server_error", "Internal server error")


# ── Routes ───────────────────────────────────────────────────────────────────
app.include_router(users.router, prefix="/api/v1/users", tags=["Users"])
app.include_router(checkout.router, prefix="/api/v1/dodopayments", tags=["Checkout"])
app.include_router(subscription.router, prefix="/api/v1/dodopayments/subscription", tags=["Subscription"])
app.include_router(webhooks.router, prefix="/api/v1/dodopayments", tags=["Webhooks"])
app.include_router(admin.router, prefix="/api/v1/admin", tags=["Admin"])


# ── Health Check ─────────────────────────────────────────────────────────────
@app.get("/api/health", response_model=HealthResponse, tags=["Health"])
async def health_check(request: Request):
    job = getattr(request.app.state, "reconciliation_job", None)
    return HealthResponse(
        status="healthy",
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        provider_mode=get_provider_mode(),
        reconciliation_running=job.is_running() if job else False,
    )


@app.get("/", tags=["Root"])
async def root():
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/api/docs",
    }
