from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.domain.models import AccessAuditLog, AccessResult, AuditLog, now_utc
from app.infra.db import engine
from app.infra.request_context import get_request_id

logger = logging.getLogger(__name__)

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
AUDIT_CONTEXT_STATE_KEY = "_audit_context"
UNAUDITED_PATHS = {"/healthz", "/readyz"}


@dataclass(frozen=True)
class AccessAuditEntry:
    user_id: str
    tenant_id: str | None
    resource: str
    action: str
    result: AccessResult
    reason: str
    resource_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    duration_ms: float | None = None
    context: dict[str, Any] = field(default_factory=dict)


class AccessAuditLogger:
    def log_access(self, entry: AccessAuditEntry) -> None:
        row = AccessAuditLog(
            tenant_id=entry.tenant_id,
            user_id=entry.user_id,
            resource=entry.resource,
            action=entry.action,
            resource_id=entry.resource_id,
            result=entry.result,
            reason=entry.reason,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            duration_ms=entry.duration_ms,
            context=entry.context,
        )
        try:
            with Session(engine) as session:
                session.add(row)
                session.commit()
        except Exception:
            logger.exception(
                "access audit write failed user=%s resource=%s action=%s result=%s reason=%s",
                entry.user_id,
                entry.resource,
                entry.action,
                entry.result,
                entry.reason,
            )


def write_audit_log(
    *,
    tenant_id: str,
    actor_id: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> None:
    log = AuditLog(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action=action,
        resource=resource,
        method=method,
        status_code=status_code,
        detail=detail or {},
    )
    with Session(engine) as session:
        session.add(log)
        session.commit()


def _status_outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403, 404}:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "success"


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    context_raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
    context = dict(context_raw) if isinstance(context_raw, dict) else {}
    if action is not None:
        context["action"] = action
    if resource is not None:
        context["resource"] = resource
    if detail:
        previous = context.get("detail")
        context["detail"] = {**previous, **detail} if isinstance(previous, dict) else detail
    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


class AuditMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        path = request.url.path
        method = request.method
        if path in UNAUDITED_PATHS or method not in WRITE_METHODS:
            return response

        context_raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
        context = context_raw if isinstance(context_raw, dict) else {}
        claims = getattr(request.state, "claims", {})
        tenant_id = claims.get("tenant_id", "system")
        actor_id = claims.get("sub")
        raw_action = context.get("action")
        raw_resource = context.get("resource")
        action: str = raw_action if isinstance(raw_action, str) else f"{method}:{path}"
        resource: str = raw_resource if isinstance(raw_resource, str) else path

        detail: dict[str, Any] = {
            "request_ts": now_utc().isoformat(),
            "path": path,
            "client_ip": request.client.host if request.client is not None else None,
            "outcome": _status_outcome(response.status_code),
            "request_id": get_request_id(),
        }
        context_detail = context.get("detail")
        if isinstance(context_detail, dict):
            detail.update(context_detail)

        try:
            write_audit_log(
                tenant_id=tenant_id,
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=method,
                status_code=response.status_code,
                detail=detail,
            )
        except Exception:
            logger.exception("request audit write failed for %s %s", method, path)
        return response
