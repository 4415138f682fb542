import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coupon_wallet.core.config import ALEMBIC_CONFIG_PATH, CORS_ORIGINS, DATABASE_URL
from coupon_wallet.core.database import Base, engine
from coupon_wallet.core.errors import register_error_handlers
from coupon_wallet.core.logging_setup import configure_logging
from coupon_wallet.core.startup_checks import ensure_migrations_applied, validate_database_environment
from coupon_wallet.middleware.observability import ObservabilityMiddleware
import coupon_wallet.models  # noqa: F401  registers every table on Base

from coupon_wallet.routers.admin_events import router as admin_events_router
from coupon_wallet.routers.approvals import router as approvals_router
from coupon_wallet.routers.billing import router as billing_router
from coupon_wallet.routers.coupons import router as coupons_router
from coupon_wallet.routers.scan import router as scan_router
from coupon_wallet.routers.wallet import router as wallet_router

configure_logging()

logger = logging.getLogger(__name__)
STARTUP_PREFIX = "[STARTUP]"


def _startup_tasks() -> None:
    try:
        validate_database_environment()
        if DATABASE_URL.startswith("sqlite"):
            Base.metadata.create_all(bind=engine)
        ensure_migrations_applied(engine=engine, alembic_config_path=ALEMBIC_CONFIG_PATH)
    except Exception:
        logger.exception("%s ERROR startup failed", STARTUP_PREFIX)
        raise


@asynccontextmanager
async def lifespan(_: FastAPI):
    _startup_tasks()
    yield


app = FastAPI(
    title="Coupon Wallet API",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ObservabilityMiddleware)
register_error_handlers(app)

# Routers
app.include_router(coupons_router)
app.include_router(approvals_router)
app.include_router(wallet_router)
app.include_router(scan_router)
app.include_router(billing_router)
app.include_router(admin_events_router)


@app.get("/")
def root():
    return {"status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}
