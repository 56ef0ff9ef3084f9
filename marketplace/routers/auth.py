"""Authentication router.

Endpoints for registration, login, token refresh, and logout.
"""

import hashlib
import uuid
from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, Request, status
from jose import JWTError
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.core.clock import ensure_utc, utcnow
from marketplace.core.dependencies import get_current_user
from marketplace.core.exceptions import ConflictError, UnauthorizedError
from marketplace.core.rate_limit import limiter
from marketplace.core.security import (
    create_access_token,
    create_refresh_token,
    decode_token,
    get_password_hash,
    verify_password,
)
from marketplace.database import get_db
from marketplace.models.user import RefreshToken, User
from marketplace.schemas.auth import (
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
)
from marketplace.schemas.user import UserResponse

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Return the currently authenticated user, including verification state."""
    return current_user


def _hash_token(token: str) -> str:
    """Return the SHA-256 hex digest of a raw token string."""
    return hashlib.sha256(token.encode()).hexdigest()


async def _create_tokens_for_user(
    db: AsyncSession, user: User
) -> TokenResponse:
    """Create an access + refresh token pair and persist the refresh token."""
    access_token = create_access_token(data={"sub": str(user.id)})
    raw_refresh = create_refresh_token(data={"sub": str(user.id)})

    db.add(RefreshToken(
        user_id=user.id,
        token_hash=_hash_token(raw_refresh),
        expires_at=utcnow() + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
    ))
    await db.flush()

    return TokenResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
    )


async def _find_active_refresh_token(
    db: AsyncSession, raw_token: str,
) -> RefreshToken | None:
    result = await db.execute(
        select(RefreshToken).where(
            RefreshToken.token_hash == _hash_token(raw_token),
            RefreshToken.revoked == False,  # noqa: E712
        )
    )
    return result.scalar_one_or_none()


@router.post("/register", response_model=TokenResponse)
async def register(
    body: RegisterRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Register a new marketplace user and log them in."""
    email = body.email.strip().lower()
    username = body.username.strip().lower()

    existing = await db.execute(
        select(User.email, User.username).where(
            or_(func.lower(User.email) == email, func.lower(User.username) == username)
        )
    )
    row = existing.first()
    if row is not None:
        if row.email.lower() == email:
            raise ConflictError("Email already registered")
        raise ConflictError("Username already taken")

    user = User(
        email=email,
        username=username,
        avatar_url=body.avatar_url,
        role="user",
        password_hash=get_password_hash(body.password),
    )
    db.add(user)
    await db.flush()

    return await _create_tokens_for_user(db, user)


@router.post("/login", response_model=TokenResponse)
@limiter.limit("10/minute")
async def login(
    request: Request,
    body: LoginRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Authenticate with email + password and return tokens."""
    result = await db.execute(
        select(User).where(func.lower(User.email) == body.email.strip().lower())
    )
    user = result.scalar_one_or_none()

    if (
        user is None
        or user.password_hash is None
        or not verify_password(body.password, user.password_hash)
    ):
        raise UnauthorizedError("Invalid email or password")

    return await _create_tokens_for_user(db, user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    body: RefreshRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Exchange a valid refresh token for a new token pair (rotation)."""
    try:
        payload = decode_token(body.refresh_token)
        user_id = uuid.UUID(payload.get("sub") or "")
    except (JWTError, ValueError):
        raise UnauthorizedError("Invalid refresh token")
    if payload.get("type") != "refresh":
        raise UnauthorizedError("Invalid refresh token")

    stored_token = await _find_active_refresh_token(db, body.refresh_token)
    if stored_token is None:
        raise UnauthorizedError("Refresh token not found or already revoked")

    if ensure_utc(stored_token.expires_at) < utcnow():
        raise UnauthorizedError("Refresh token expired")

    # Revoke the old token (rotation)
    stored_token.revoked = True
    await db.flush()

    user = await db.get(User, user_id)
    if user is None:
        raise UnauthorizedError("User not found")

    return await _create_tokens_for_user(db, user)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    body: RefreshRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Revoke the provided refresh token."""
    stored_token = await _find_active_refresh_token(db, body.refresh_token)
    if stored_token is not None:
        stored_token.revoked = True
        await db.flush()

    # Always 204, whether or not the token was known
    return None
