"""
Access Router - the check the GPT tool makes before each use
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_api_key
from crud.user import UserRepository
from database import get_db
from database_models import utcnow
from models.subscription import AccessResponse
from services.access_policy import evaluate_access
from services.billing_service import validate_email
from utils.errors import NotFoundError, UpstreamError

logger = logging.getLogger(__name__)

access_router = APIRouter(tags=["access"])


@access_router.get("/check-access", response_model=AccessResponse)
async def check_access(
    email: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    _: str = Depends(require_api_key),
):
    """
    Answer whether ``email`` currently has paid access.
    Unknown emails get a fresh record and ``has_access = false``.
    """
    email = validate_email(email)
    user_repo = UserRepository(db)

    try:
        user = await user_repo.get_user_by_email(email)
    except SQLAlchemyError as e:
        logger.error(f"Error finding user {email}: {e}", exc_info=True)
        raise UpstreamError("Failed to check access") from e

    try:
        decision = evaluate_access(user, utcnow())
    except NotFoundError:
        try:
            logger.info(f"Creating new user: {email}")
            await user_repo.create_user(email)
        except SQLAlchemyError as e:
            logger.error(f"Error creating user {email}: {e}", exc_info=True)
            await db.rollback()
            return AccessResponse(
                has_access=False,
                message="User not found and could not be created",
            )
        return AccessResponse(has_access=False, user_created=True)

    return AccessResponse(
        has_access=decision.has_access,
        plan=decision.plan,
        status=decision.status.value if decision.status else None,
        current_period_end=decision.current_period_end.isoformat() if decision.current_period_end else None,
        user_created=False,
    )


@access_router.get("/user/{email}")
async def get_user(
    email: str,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(require_api_key),
):
    """Get stored subscription details for one user."""
    user = await UserRepository(db).get_user_by_email(email)
    if user is None:
        raise NotFoundError("User not found")
    return user.to_dict()
