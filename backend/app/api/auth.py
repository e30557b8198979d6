############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# auth.py: Session verification for API requests
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""API authentication.

Sessions are issued by the auth service as itsdangerous-signed tokens
carrying the user's identity. This module only verifies them and maps
the identity onto a local user row.
"""

from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from backend.app.db import crud
from backend.app.db.models import User
from backend.app.db.session import session_scope
from backend.app.logging_config import bind_request_context, get_logger
from backend.app.settings import Settings

logger = get_logger(__name__)

SESSION_SALT = "session"

# Security scheme
bearer_scheme = HTTPBearer(auto_error=False)


def get_serializer(settings: Settings) -> URLSafeTimedSerializer:
    """Timed serializer shared with the auth service."""
    return URLSafeTimedSerializer(settings.secret_key, salt=SESSION_SALT)


def issue_session_token(settings: Settings, external_id: str, **claims: Any) -> str:
    """Sign a session token (used by tooling and tests; the auth service issues real ones)."""
    return get_serializer(settings).dumps({"sub": external_id, **claims})


def read_session_token(settings: Settings, token: str) -> Optional[Dict[str, Any]]:
    """Verify a session token, returning its claims or None."""
    try:
        data = get_serializer(settings).loads(token, max_age=settings.session_max_age_seconds)
    except SignatureExpired:
        logger.info("session_expired")
        return None
    except BadSignature:
        logger.warning("session_invalid_signature")
        return None

    if isinstance(data, (str, int)):
        data = {"sub": str(data)}
    if not isinstance(data, dict) or not data.get("sub"):
        return None
    return data


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> User:
    """
    Resolve the calling user.

    Accepts the session cookie, or the same token as a Bearer credential
    for programmatic clients. The user row is committed before the
    route runs so services writing in their own sessions can see it.
    """
    settings: Settings = request.app.state.settings
    token = request.cookies.get(settings.session_cookie_name)
    if not token and credentials and credentials.credentials:
        token = credentials.credentials

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    claims = read_session_token(settings, token)
    if claims is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
        )

    async with session_scope(request.app.state.session_factory) as db:
        user = await crud.get_or_create_user(
            db,
            external_id=str(claims["sub"]),
            display_name=claims.get("name"),
            email=claims.get("email"),
        )
    bind_request_context(user_id=user.id)
    return user
