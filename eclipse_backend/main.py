import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from dotenv import load_dotenv

# Load env from the working directory's .env
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

# Import after dotenv is loaded
from eclipse_backend.core.config import settings, validate_config, cors_origins
from eclipse_backend.core.logging import configure_logging
from eclipse_backend.core.middleware.request_id import RequestIdMiddleware
from eclipse_backend.core.middleware.metrics import MetricsMiddleware
from eclipse_backend.core.validation import validate_env
from eclipse_backend.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from eclipse_backend.core.database import create_all_tables
from eclipse_backend.api import billing, entitlement, health, metrics

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("eclipse")
    logger.info("Starting Eclipse entitlement backend...")
    app.state.startup_time = time.time()
    if settings.STORE_BACKEND.lower() == "sql":
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("eclipse").info("Stopping Eclipse entitlement backend...")


app = FastAPI(title="Eclipse - Entitlement Backend", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router, tags=["health"])
app.include_router(metrics.router, tags=["metrics"])
app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(entitlement.router, prefix="/api", tags=["entitlement"])
# Pre-/api root paths; the desktop client and Stripe webhook endpoints still call them
app.include_router(billing.legacy_router)
app.include_router(entitlement.router, tags=["entitlement-legacy"])

# Checkout success/cancel pages; mounted last so API routes take precedence
if settings.STATIC_DIR and os.path.isdir(settings.STATIC_DIR):
    app.mount("/", StaticFiles(directory=settings.STATIC_DIR, html=True), name="static")
