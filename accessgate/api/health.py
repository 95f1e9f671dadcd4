"""
Health endpoints.

/healthz is liveness only; /readyz also checks the database and the tables
the service cannot run without.
"""
import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from accessgate.core.database import get_engine

logger = logging.getLogger("accessgate")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = (
    "accounts",
    "access_admin_audit",
    "billing_events",
    "billing_job_runs",
)


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning("[readyz] %s", detail)
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except (SQLAlchemyError, ValueError) as e:
        logger.error("[readyz] readiness check failed: %s", e)
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
