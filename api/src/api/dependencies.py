"""FastAPI dependency injection."""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from fluentdesk.config import get_settings
from fluentdesk.database import get_session_factory
from fluentdesk.models import User
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; committed when the handler returns cleanly."""
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        else:
            await session.commit()


def _bearer_token(request: Request) -> str:
    scheme, _, credentials = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        raise _unauthorized("Missing token")
    return credentials.strip()


def _token_subject(request: Request) -> str:
    """Return the user id carried by the identity provider's JWT."""
    settings = get_settings()
    try:
        claims = jwt.decode(
            _bearer_token(request),
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise _unauthorized("Invalid token")
    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise _unauthorized("Invalid token")
    return subject


async def get_current_user(request: Request, db: AsyncSession = Depends(get_db)) -> User:
    user = await db.get(User, _token_subject(request))
    if user is None or not user.is_active:
        raise _unauthorized("User not found")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if (user.role or "").strip().lower() != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
