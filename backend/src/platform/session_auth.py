"""
Session token authentication.

Clients send a bearer JWT signed with HS256 using SESSION_JWT_SECRET. The
'sub' claim carries the account id. Token issuance lives in the auth
service; this module only verifies tokens and extracts the principal.
"""

import os
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Request, HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

logger = logging.getLogger(__name__)

# Security scheme for extracting Bearer token
security = HTTPBearer(auto_error=False)

SESSION_JWT_ALGORITHM = "HS256"
OPERATOR_ROLES = frozenset({"admin", "operator"})


@dataclass
class SessionPrincipal:
    """Principal extracted from a session token."""
    account_id: str
    claims: Dict[str, Any] = field(default_factory=dict)


class SessionTokenVerifier:
    """Verifies HS256 session tokens."""

    def __init__(self, secret: Optional[str] = None):
        self.secret = secret or os.getenv("SESSION_JWT_SECRET")
        if not self.secret:
            raise ValueError("SESSION_JWT_SECRET environment variable is required")

    def verify_session_token(self, token: str) -> SessionPrincipal:
        """
        Verify a session token and extract the principal.

        Raises:
            HTTPException: 401 if the token is invalid, expired or has no subject
        """
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[SESSION_JWT_ALGORITHM],
                options={"verify_signature": True, "verify_exp": True},
            )
        except jwt.ExpiredSignatureError:
            logger.warning("Session token expired")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Session token has expired"
            )
        except jwt.InvalidSignatureError:
            logger.warning("Session token invalid signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Session token signature is invalid"
            )
        except jwt.InvalidTokenError as e:
            logger.warning("Session token decode error", extra={"error": str(e)})
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Session token is malformed"
            )

        account_id = payload.get("sub")
        if not account_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Session token missing 'sub' claim"
            )

        return SessionPrincipal(account_id=str(account_id), claims=payload)


def create_session_token(
    account_id: str,
    secret: Optional[str] = None,
    expires_in: timedelta = timedelta(hours=1),
    role: Optional[str] = None,
) -> str:
    """Sign a session token for an account (local tooling and tests)."""
    now = datetime.now(timezone.utc)
    payload = {"sub": account_id, "iat": now, "exp": now + expires_in}
    if role:
        payload["role"] = role
    return jwt.encode(
        payload,
        secret or os.getenv("SESSION_JWT_SECRET"),
        algorithm=SESSION_JWT_ALGORITHM,
    )


async def get_session_principal(request: Request) -> SessionPrincipal:
    """
    FastAPI dependency to extract and verify the session token.

    Usage:
        @router.get("/api/payments/subscription-status")
        async def status(principal: SessionPrincipal = Depends(get_session_principal)):
            ...

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    credentials: Optional[HTTPAuthorizationCredentials] = await security(request)

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization token"
        )

    try:
        verifier = SessionTokenVerifier()
    except ValueError:
        logger.error("Session authentication is not configured")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication is not configured"
        )
    return verifier.verify_session_token(credentials.credentials)


async def get_operator_principal(
    principal: SessionPrincipal = Depends(get_session_principal),
) -> SessionPrincipal:
    """
    FastAPI dependency for operator-only routes (recovery, metrics).

    Raises:
        HTTPException: 403 if the token does not carry an operator role
    """
    if principal.claims.get("role") not in OPERATOR_ROLES:
        logger.warning("Operator route denied", extra={"account_id": principal.account_id})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator role required"
        )
    return principal
