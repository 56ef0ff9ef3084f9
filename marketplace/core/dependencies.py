import uuid
from typing import Annotated

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.exceptions import ForbiddenError, UnauthorizedError
from marketplace.core.security import decode_token
from marketplace.database import get_db

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")


async def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Extract and validate the JWT from the Authorization header.

    Returns the User ORM instance for the authenticated user.

    Raises:
        UnauthorizedError: If the token is missing, invalid, or the user
            does not exist.
    """
    credentials_error = UnauthorizedError("Could not validate credentials")

    try:
        payload = decode_token(token)
        token_type: str | None = payload.get("type")
        user_id = uuid.UUID(payload.get("sub") or "")
    except (JWTError, ValueError):
        raise credentials_error

    if token_type != "access":
        raise credentials_error

    # Import here to avoid circular imports (models -> database -> dependencies)
    from marketplace.models.user import User

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None:
        raise credentials_error

    return user


async def require_admin(
    current_user=Depends(get_current_user),
):
    """Dependency that ensures the current user has the 'admin' role.

    Raises:
        ForbiddenError: If the user is not an admin.
    """
    if not current_user.is_admin:
        raise ForbiddenError("Admin role required")
    return current_user
