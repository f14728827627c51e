"""
Auth utilities for the gobbledata API.

Validates Supabase-issued HS256 JWTs and extracts the user id (`sub`) and
email. Outside production, an X-User-Id header is accepted instead (tests,
local tooling).
"""
from dataclasses import dataclass
from typing import Optional
import logging

import jwt
from fastapi import Depends, Header, HTTPException, Request


logger = logging.getLogger("gobbledata")


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: Optional[str] = None


def verify_supabase_jwt(token: str, secret: str, audience: Optional[str] = None) -> AuthenticatedUser:
    """
    Verify a Supabase JWT.

    Raises:
        HTTPException 401: Invalid or expired token
    """
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=audience,
            options={"verify_signature": True, "verify_exp": True, "verify_aud": bool(audience)},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug("auth.invalid_token", extra={"reason": str(e)})
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return AuthenticatedUser(id=user_id, email=payload.get("email"))


def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Non-production: caller user ID"),
    x_user_email: Optional[str] = Header(None),
) -> AuthenticatedUser:
    """
    Resolve the caller.

    Priority:
    1. Bearer JWT from the Authorization header
    2. JWT in the `token` query parameter (browser redirects cannot set headers)
    3. X-User-Id header (not honoured when ENV=production)
    4. 401
    """
    settings = request.app.state.services.settings

    auth_header = request.headers.get("Authorization", "")
    token = auth_header[7:] if auth_header.startswith("Bearer ") else request.query_params.get("token")
    if token:
        if not settings.AUTH_JWT_SECRET:
            raise HTTPException(status_code=401, detail="Token verification not configured")
        return verify_supabase_jwt(token, settings.AUTH_JWT_SECRET, settings.AUTH_JWT_AUDIENCE)

    if x_user_id and not settings.is_production:
        return AuthenticatedUser(id=x_user_id, email=x_user_email)

    raise HTTPException(status_code=401, detail="Unauthorized - No token provided")


def get_current_user_id(user: AuthenticatedUser = Depends(get_current_user)) -> str:
    return user.id
