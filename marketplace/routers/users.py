"""Users router.

Admin-only hooks around a user's DoD verification.  Sponsors must be DoD
verified before family members can request their approval.
"""

import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.clock import utcnow
from marketplace.core.dependencies import require_admin
from marketplace.core.exceptions import NotFoundError
from marketplace.database import get_db
from marketplace.models.user import User
from marketplace.schemas.user import UserResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["Users"])


async def _get_user_or_404(db: AsyncSession, user_id: uuid.UUID) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: User = Depends(require_admin),
):
    return await _get_user_or_404(db, user_id)


@router.post("/{user_id}/dow-verification", response_model=UserResponse)
async def mark_dow_verified(
    user_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: User = Depends(require_admin),
):
    """Mark a user as DoD verified. Requires admin role."""
    user = await _get_user_or_404(db, user_id)
    if user.dow_verified_at is None:
        user.dow_verified_at = utcnow()
        await db.flush()
        logger.info("User %s marked DoD verified by %s", user.id, current_user.id)
    await db.refresh(user)
    return user


@router.delete("/{user_id}/dow-verification", response_model=UserResponse)
async def clear_dow_verification(
    user_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: User = Depends(require_admin),
):
    """Withdraw a user's DoD verification. Requires admin role.

    Existing family links are left alone; the user simply cannot receive
    new sponsor requests until verified again.
    """
    user = await _get_user_or_404(db, user_id)
    user.dow_verified_at = None
    await db.flush()
    await db.refresh(user)
    logger.info("DoD verification cleared for user %s by %s", user.id, current_user.id)
    return user
