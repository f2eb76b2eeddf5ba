"""
TierSync - User Routes
"""
import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from tiersync.core.database import get_db
from tiersync.schemas.schemas import UserEnsureRequest, UserEnsureResponse, UserResponse
from tiersync.services.users import ensure_user

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post(
    "",
    response_model=UserEnsureResponse,
    summary="Ensure user",
    description="Return the user for this email, creating it on the FREE tier if it does not exist.",
)
async def ensure_user_route(
    request: UserEnsureRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    user, created = await ensure_user(db, request.email, request.user_uuid)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return UserEnsureResponse(created=created, user=UserResponse.model_validate(user))
