from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from app.api.routers import rbac
from app.infra.audit import AuditMiddleware
from app.infra.db import check_db_ready
from app.infra.logging_config import configure_logging
from app.infra.request_context import RequestIdMiddleware
from app.services.catalog_service import CatalogService

RBAC_BOOTSTRAP_ON_STARTUP = os.getenv("RBAC_BOOTSTRAP_ON_STARTUP", "false").lower() in {"1", "true", "yes"}

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    if RBAC_BOOTSTRAP_ON_STARTUP:
        CatalogService().initialize_rbac()
    logger.info("agency-rbac started")
    yield


app = FastAPI(
    title="agency-rbac",
    description="Role-based access control core for multi-tenant education agency CRM.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(AuditMiddleware)
app.add_middleware(RequestIdMiddleware)

app.include_router(rbac.router, prefix="/api/rbac", tags=["rbac"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
