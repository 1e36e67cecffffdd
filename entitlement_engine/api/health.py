"""
Health endpoints.

Lightweight liveness and readiness probes; no secrets are ever returned.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from entitlement_engine.core.database import get_engine
from entitlement_engine.features.entitlements.store import SqlEntitlementStore

logger = logging.getLogger(__name__)

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "entitlements",
    "access_codes",
    "access_code_redemptions",
    "webhook_event_log",
]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(request: Request):
    """Readiness check: DB connectivity + required tables."""
    if not isinstance(request.app.state.store, SqlEntitlementStore):
        return {"status": "ok", "store": "memory"}

    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok", "store": "sql"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
