from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from app.domain.models import AccessDecision, PermissionCheck, RequestContext
from app.infra.auth import TokenError, decode_access_token
from app.infra.request_context import bind_principal
from app.services.access_service import AccessEvaluator, AccessStoreError

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/rbac/dev-token")


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    bind_principal(claims.get("tenant_id"), claims.get("sub"))
    return claims


def get_access_evaluator() -> AccessEvaluator:
    return AccessEvaluator()


def request_context(request: Request, claims: dict[str, Any], branch_id: str | None = None) -> RequestContext:
    return RequestContext(
        agency_id=claims.get("tenant_id"),
        branch_id=branch_id,
        ip_address=request.client.host if request.client is not None else None,
        user_agent=request.headers.get("user-agent"),
    )


def raise_for_decision(decision: AccessDecision) -> None:
    if not decision.allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=decision.reason)


def raise_store_unavailable(exc: AccessStoreError) -> None:
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="access evaluation unavailable",
    ) from exc


def require_access(permission: str) -> Callable[..., AccessDecision]:
    resource, _, action = permission.partition(".")

    def _checker(
        request: Request,
        claims: Annotated[dict[str, Any], Depends(get_current_claims)],
        evaluator: Annotated[AccessEvaluator, Depends(get_access_evaluator)],
    ) -> AccessDecision:
        check = PermissionCheck(resource=resource, action=action)
        try:
            decision = evaluator.check_permission(claims["sub"], check, request_context(request, claims))
        except AccessStoreError as exc:
            raise_store_unavailable(exc)
            raise
        raise_for_decision(decision)
        request.state.access_decision = decision
        return decision

    return _checker
