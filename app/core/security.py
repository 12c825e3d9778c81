"""
JWT helpers — the coordinator trusts identities, it never issues them.

- Access tokens are minted by the authentication service and signed
  with the shared `SECRET_KEY`.  The coordinator only verifies them and
  reads `sub` / `user_id` and `roles` into a `Principal`.
- `create_access_token` exists for tooling and tests that need to act
  as the auth service.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from app.core.config import settings

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, as resolved by the auth service."""

    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)


# ── JWT ──────────────────────────────────────────────────────────────


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode & validate a JWT.  Raises HTTPException on failure."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        return payload
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


# ── Per-request principal ────────────────────────────────────────────


async def get_current_principal(token: str = Depends(oauth2_scheme)) -> Principal:
    """
    FastAPI dependency — decodes the bearer JWT and returns the caller.

    The user id is opaque to the coordinator; it is only used as the
    key for sessions, locks and liveness records.
    """
    payload = decode_access_token(token)

    user_id = payload.get("sub") or payload.get("user_id")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload — missing user id",
            headers={"WWW-Authenticate": "Bearer"},
        )

    roles = payload.get("roles") or payload.get("role_names") or []
    if isinstance(roles, str):
        roles = [roles]
    return Principal(user_id=str(user_id), roles=frozenset(str(r) for r in roles))
