"""
Health endpoints.

Lightweight probes for operational monitoring without exposing secrets.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from eclipse_backend.core.database import get_engine
from eclipse_backend.features.entitlements.store import SqlEntitlementStore, get_store

logger = logging.getLogger("eclipse")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = ("user_entitlements", "processed_billing_events")


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: entitlement store reachable (+ tables for the SQL backend)."""
    try:
        store = get_store()
        if not store.ping():
            return JSONResponse(status_code=503, content={"status": "error", "detail": "store unreachable"})

        if isinstance(store, SqlEntitlementStore):
            inspector = inspect(get_engine())
            missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
            if missing:
                detail = f"missing tables: {', '.join(missing)}"
                logger.warning(f"[readyz] {detail}")
                return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "store unreachable"})
