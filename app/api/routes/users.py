from fastapi import APIRouter

from app.api.deps import CurrentUser
from app.schemas.auth import UserResponse
from app.utils.envelopes import api_success

router = APIRouter(tags=["users"])


@router.get("/users/me", response_model=dict)
async def get_current_user_endpoint(current_user: CurrentUser):
	user_data = UserResponse(
		id=str(current_user.id),
		email=current_user.email,
		name=current_user.name,
		role=current_user.role.value,
		created_at=current_user.created_at,
	)
	return api_success(user=user_data.model_dump())
