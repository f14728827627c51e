"""
Health, readiness and metrics endpoints.

Safe to expose: no secrets, DSNs or stack traces in responses.
"""

import logging

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse

from gobbledata.core.database import REQUIRED_TABLES
from gobbledata.core.metrics import render_metrics
from gobbledata.dependencies import Services, get_services

logger = logging.getLogger("gobbledata")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz(services: Services = Depends(get_services)):
    """Readiness check: DB connectivity + required tables."""
    database = services.database
    if not database.check_connection():
        logger.error("readyz.database_unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    missing = database.missing_tables(REQUIRED_TABLES)
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning("readyz.missing_tables", extra={"missing": missing})
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok", "billing_enabled": services.billing.enabled}


@router.get("/metrics")
def metrics_endpoint():
    return Response(content=render_metrics(), media_type="text/plain")
