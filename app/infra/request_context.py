from __future__ import annotations

from contextvars import ContextVar
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"

tenant_id_ctx: ContextVar[str | None] = ContextVar("tenant_id", default=None)
principal_id_ctx: ContextVar[str | None] = ContextVar("principal_id", default=None)
request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)


def bind_principal(tenant_id: str | None, principal_id: str | None) -> None:
    tenant_id_ctx.set(tenant_id)
    principal_id_ctx.set(principal_id)


def get_request_id() -> str | None:
    return request_id_ctx.get()


def current_log_fields() -> dict[str, str]:
    fields: dict[str, str] = {}
    for key, var in (
        ("request_id", request_id_ctx),
        ("tenant_id", tenant_id_ctx),
        ("user_id", principal_id_ctx),
    ):
        value = var.get()
        if value:
            fields[key] = value
    return fields


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        token = request_id_ctx.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
