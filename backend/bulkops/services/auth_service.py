from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from bulkops.config import settings


@dataclass(frozen=True)
class TokenClaims:
    user_id: uuid.UUID
    company_id: uuid.UUID
    tier: str = "standard"
    is_admin: bool = False


def create_access_token(
    user_id: uuid.UUID,
    company_id: uuid.UUID,
    tier: str = "standard",
    is_admin: bool = False,
) -> str:
    expire = datetime.now(UTC) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "sub": str(user_id),
        "company_id": str(company_id),
        "tier": tier,
        "is_admin": is_admin,
        "exp": expire,
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> TokenClaims | None:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = payload.get("sub")
        company_id = payload.get("company_id")
        if user_id is None or company_id is None:
            return None
        return TokenClaims(
            user_id=uuid.UUID(user_id),
            company_id=uuid.UUID(company_id),
            tier=payload.get("tier") or "standard",
            is_admin=bool(payload.get("is_admin", False)),
        )
    except (JWTError, ValueError):
        return None
