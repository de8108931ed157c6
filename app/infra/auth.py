from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import jwt

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_ISSUER = os.getenv("JWT_ISSUER", "agency-rbac")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
DEV_TOKENS_ENABLED = os.getenv("RBAC_DEV_TOKENS", "false").lower() in {"1", "true", "yes"}


class TokenError(Exception):
    pass


@dataclass(frozen=True)
class PrincipalClaims:
    user_id: str
    tenant_id: str
    token_id: str

    def as_dict(self) -> dict[str, Any]:
        return {"sub": self.user_id, "tenant_id": self.tenant_id, "jti": self.token_id}


def create_access_token(
    *,
    user_id: str,
    tenant_id: str,
    expires_minutes: int | None = None,
) -> str:
    issued = datetime.now(UTC)
    lifetime = timedelta(minutes=expires_minutes or JWT_EXPIRES_MIN)
    payload: dict[str, Any] = {
        "iss": JWT_ISSUER,
        "sub": user_id,
        "tenant_id": tenant_id,
        "jti": uuid4().hex,
        "iat": int(issued.timestamp()),
        "exp": int((issued + lifetime).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_principal(token: str) -> PrincipalClaims:
    try:
        decoded = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            issuer=JWT_ISSUER,
            options={"require": ["exp", "iss", "sub"]},
        )
    except jwt.PyJWTError as exc:
        raise TokenError(str(exc)) from exc
    user_id = decoded.get("sub")
    tenant_id = decoded.get("tenant_id")
    if not isinstance(user_id, str) or not isinstance(tenant_id, str):
        raise TokenError("token is missing principal claims")
    return PrincipalClaims(user_id=user_id, tenant_id=tenant_id, token_id=str(decoded.get("jti") or ""))


def decode_access_token(token: str) -> dict[str, Any]:
    return decode_principal(token).as_dict()
