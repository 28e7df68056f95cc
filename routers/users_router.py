"""
Users Router - administrative upsert and delete of user records
"""

import logging
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_api_key
from config.settings import settings
from crud.user import UserRepository
from database import get_db
from models.subscription import UserUpsertRequest
from services.billing_service import validate_email
from utils.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

users_router = APIRouter(tags=["users"])


def build_upsert_fields(body: UserUpsertRequest, allowed_custom_fields: list, existing: dict) -> dict:
    """
    Translate an upsert request into column values.

    Only allow-listed custom fields are merged. Status and the Stripe
    references are owned by billing and cannot be set here.
    """
    fields = {}
    if body.plan:
        fields["plan"] = body.plan
    if body.custom_fields:
        rejected = sorted(set(body.custom_fields) - set(allowed_custom_fields))
        if rejected:
            raise ValidationError(f"Custom fields not allowed: {', '.join(rejected)}")
        fields["custom_fields"] = {**(existing or {}), **body.custom_fields}
    return fields


@users_router.post("/users")
async def upsert_user(
    body: UserUpsertRequest,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(require_api_key),
):
    """Create or update a user by email."""
    email = validate_email(body.email)
    user_repo = UserRepository(db)

    existing = await user_repo.get_user_by_email(email)
    fields = build_upsert_fields(
        body,
        settings.custom_field_allowlist(),
        existing.custom_fields if existing else None,
    )
    user = await user_repo.upsert_user(email, fields)
    logger.info(f"Upserted user {user.email}")
    return {"action": "upserted", "user": user.to_dict()}


@users_router.delete("/users/{email}")
async def delete_user(
    email: str,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(require_api_key),
):
    """Delete a user record."""
    deleted = await UserRepository(db).delete_user(email)
    if not deleted:
        raise NotFoundError("User not found")
    logger.info(f"Deleted user {email.lower()}")
    return {"message": "User deleted successfully"}
