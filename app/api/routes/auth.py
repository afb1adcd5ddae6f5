from fastapi import APIRouter

from app.api.deps import DB
from app.models.models import User, UserRole
from app.schemas.auth import AuthResponse, LoginRequest, SignupRequest, UserResponse
from app.services.auth_service import AuthService
from app.utils.envelopes import api_success
from app.utils.exceptions import UnauthorizedException

router = APIRouter(tags=["auth"])


def _auth_payload(user: User, remember_me: bool) -> dict:
	token = AuthService.generate_token(user, remember_me=remember_me)
	user_data = UserResponse(
		id=str(user.id),
		email=user.email,
		name=user.name,
		role=user.role.value,
		created_at=user.created_at,
	)
	return AuthResponse(user=user_data, token=token).model_dump()


@router.post("/auth/signup", response_model=dict, status_code=201)
async def signup(payload: SignupRequest, db: DB):
	user = await AuthService.create_user(
		db,
		email=payload.email,
		password=payload.password,
		name=payload.name,
		role=UserRole(payload.role),
	)
	return api_success(_auth_payload(user, payload.remember_me))


@router.post("/auth/login", response_model=dict)
async def login(payload: LoginRequest, db: DB):
	user = await AuthService.authenticate_email(db, payload.email, payload.password)
	if user is None:
		raise UnauthorizedException("Invalid email or password")
	return api_success(_auth_payload(user, payload.remember_me))
