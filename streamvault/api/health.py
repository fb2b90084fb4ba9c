"""
Liveness and readiness probes. Neither exposes configuration or secrets.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from streamvault.core.database import check_connection, get_engine, metadata

logger = logging.getLogger("streamvault")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = sorted(metadata.tables)


def _not_ready(detail: str) -> JSONResponse:
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@root_router.get("/healthz")
def healthz():
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Ready once the database answers and the schema is in place."""
    if not check_connection():
        return _not_ready("database unreachable")

    existing = set(inspect(get_engine()).get_table_names())
    missing = [name for name in REQUIRED_TABLES if name not in existing]
    if missing:
        logger.warning("readyz.missing_tables", extra={"missing": ",".join(missing)})
        return _not_ready(f"missing tables: {', '.join(missing)}")
    return {"status": "ok"}
