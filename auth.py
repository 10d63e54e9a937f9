"""Session-based authentication.

Sign-up and sign-in hand out an HS256 JWT carrying the user id (``sub``), a
unique token id (``jti``) and the role. Sign-out stores the ``jti`` in the
``revoked_sessions`` table. The FastAPI dependency ``get_current_user``:
1. Extracts the ``Authorization: Bearer <token>`` header.
2. Verifies signature and expiration.
3. Rejects revoked tokens.
4. Loads the ``models.User`` row.

With ``AUTH_ENABLED=false`` every request acts as a local development user.
"""
from __future__ import annotations

import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

import bcrypt
import structlog
from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt
from pydantic import ValidationError
from sqlalchemy.orm import Session

import crud
import models
import schemas
from database import get_db
from settings import Settings, get_settings

logger = structlog.get_logger(__name__)

LOCAL_DEV_EMAIL = "local@example.com"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        # malformed stored hash or over-long password
        return False


def create_session(user: models.User) -> schemas.Session:
    settings = get_settings()
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.session_ttl_minutes)
    claims = {
        "sub": str(user.id),
        "jti": uuid.uuid4().hex,
        "role": user.role,
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return schemas.Session(
        access_token=token,
        expires_at=expires_at,
        user=schemas.User.model_validate(user),
    )


def verify_token(token: str) -> schemas.TokenPayload:
    """Decode a session token and return its payload.

    Raises HTTPException(401) on failure.
    """
    settings = get_settings()
    if not settings.auth_enabled:
        # Return dummy payload for local usage
        return schemas.TokenPayload(
            sub="0",
            jti="local-dev",
            role=settings.local_dev_role,
            exp=int(time.time()) + 3600,
        )

    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        return schemas.TokenPayload.model_validate(payload)
    except (JWTError, ValidationError) as exc:
        logger.warning("Session token verification failed", exc=str(exc))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def authenticate_token(db: Session, token: str) -> models.User:
    """Resolve a bearer token to its user, rejecting revoked sessions."""
    payload = verify_token(token)
    if crud.is_session_revoked(db, payload.jti):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session has been signed out")

    user = crud.get_user_by_id(db, int(payload.sub))
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user in token")
    return user


def local_dev_user(db: Session) -> models.User:
    user = crud.get_user_by_email(db, LOCAL_DEV_EMAIL)
    if not user:
        user = crud.create_user(
            db,
            schemas.UserCreate(email=LOCAL_DEV_EMAIL, password="local-dev", full_name="Local Developer"),
            hashed_password=hash_password("local-dev"),
            role=get_settings().local_dev_role,
        )
        db.commit()
    return user


# Helper to extract Authorization header (works with FastAPI DI)
def _get_authorization_header(request: Request) -> Optional[str]:
    return request.headers.get("Authorization")


def get_bearer_token(
    authorization: Annotated[Optional[str], Depends(_get_authorization_header)],
) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    return authorization.split(" ", 1)[1].strip()


# --- FastAPI dependencies ---
async def get_current_user(
    authorization: Annotated[Optional[str], Depends(_get_authorization_header)],
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> models.User:
    if not settings.auth_enabled:
        return local_dev_user(db)

    token = get_bearer_token(authorization)
    return authenticate_token(db, token)


def require_roles(*roles: str):
    """Dependency factory admitting only users whose role is in ``roles``."""

    async def _require_roles(current_user: models.User = Depends(get_current_user)) -> models.User:
        if current_user.role not in roles:
            logger.warning(
                "Role not permitted",
                user_id=current_user.id,
                role=current_user.role,
                allowed=list(roles),
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"This action requires one of the roles: {', '.join(roles)}",
            )
        return current_user

    return _require_roles


require_employer = require_roles(models.UserRole.EMPLOYER, models.UserRole.ADMIN)
require_admin = require_roles(models.UserRole.ADMIN)
require_seeker = require_roles(models.UserRole.SEEKER, models.UserRole.COLLEGE)
