"""
Health endpoints for the billing service.

Lightweight liveness and readiness probes that never expose secrets.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from interview_billing.core.database import check_connection, get_engine, metadata

logger = logging.getLogger("interview_billing")

root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + ledger tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    try:
        inspector = inspect(get_engine())
        missing = [name for name in sorted(metadata.tables) if not inspector.has_table(name)]
    except Exception as e:
        logger.error("[readyz] schema inspection failed", extra={"error": str(e)})
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning("[readyz] not ready", extra={"detail": detail})
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok"}
