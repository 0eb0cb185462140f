"""
Authentication middleware for JWT verification.

This module provides secure authentication by:
1. Extracting the bearer token from the Authorization header
2. Verifying its HS256 signature against JWT_SECRET
3. Returning a verified AuthContext that routes can trust

Tokens are issued by the product's login service; this service only
verifies them. Expected claims: ``sub`` (profile id), ``org_id``, ``role``
and optionally ``email``.

SECURITY: Never trust user_id or organization_id from client query parameters.
Always use the AuthContext returned by these dependencies.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from jose import JWTError, jwt

from config import settings

logger = logging.getLogger(__name__)

ADMIN_ROLES: frozenset[str] = frozenset({"admin", "global_admin"})


@dataclass
class AuthContext:
    """
    Verified authentication context.

    All values come from a signature-verified JWT. Routes should ONLY use
    these values, never client-provided parameters.
    """
    user_id: UUID
    organization_id: UUID
    email: Optional[str]
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def user_id_str(self) -> str:
        """String representation of user_id for APIs that need strings."""
        return str(self.user_id)


def _extract_token(authorization: Optional[str]) -> str:
    """
    Extract the JWT token from the Authorization header.

    Raises:
        HTTPException: If header is missing or malformed
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header format. Expected: Bearer <token>",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return parts[1]


def _verify_jwt(token: str) -> dict[str, Any]:
    """Verify the signature and expiry; return the payload."""
    if not settings.JWT_SECRET:
        logger.error("JWT_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication not configured",
        )

    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
    except JWTError as e:
        logger.warning("JWT verification failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def _claim_uuid(payload: dict[str, Any], claim: str) -> UUID:
    value = payload.get(claim)
    if not value:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: missing {claim}",
        )
    try:
        return UUID(str(value))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: malformed {claim}",
        )


def auth_context_from_token(token: str) -> AuthContext:
    payload = _verify_jwt(token)
    return AuthContext(
        user_id=_claim_uuid(payload, "sub"),
        organization_id=_claim_uuid(payload, "org_id"),
        email=payload.get("email"),
        role=payload.get("role") or "member",
    )


async def get_current_auth(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> AuthContext:
    """
    FastAPI dependency that verifies the JWT and returns AuthContext.

    Usage:
        @router.get("/protected")
        async def protected_route(auth: AuthContext = Depends(get_current_auth)):
            # auth.user_id and auth.organization_id are verified
            ...
    """
    token = _extract_token(authorization)
    return auth_context_from_token(token)


async def require_admin(
    auth: AuthContext = Depends(get_current_auth),
) -> AuthContext:
    """Require an organization admin (mutating integration routes)."""
    if not auth.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return auth
