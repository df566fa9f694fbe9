"""Authentication routes: signup, login, me, profile update, password change."""

import logging

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from agrolink.app.errors import AuthenticationError, AuthorizationError, NotFoundError, ValidationError
from agrolink.domain.models import User, utcnow
from agrolink.domain.schemas import (
    PasswordChange,
    ProfileUpdate,
    UserCreate,
    UserLogin,
    UserResponse,
)
from agrolink.infra.database import get_db
from agrolink.services.auth_service import (
    create_access_token,
    create_user,
    get_user_by_email,
    get_user_from_token,
    hash_password,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


def _token_from_request(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.removeprefix("Bearer ")
    return request.cookies.get("token")


async def get_current_user_dep(
    request: Request, db: AsyncSession = Depends(get_db)
) -> User:
    """Dependency: extract current user from Bearer token or ``token`` cookie."""
    token = _token_from_request(request)
    if not token:
        raise AuthenticationError("Not authorized to access this route")
    user = await get_user_from_token(db, token)
    if user is None:
        raise AuthenticationError("Invalid or expired token")
    return user


def require_role(*roles: str):
    """Factory: dependency that checks user has one of the required roles."""

    async def checker(user: User = Depends(get_current_user_dep)):
        if user.role not in roles:
            raise AuthorizationError("Insufficient permissions")
        return user

    return checker


def _token_response(user: User) -> dict:
    return {
        "success": True,
        "access_token": create_access_token(user.id, user.role),
        "token_type": "bearer",
        "user": UserResponse.model_validate(user).model_dump(),
    }


@router.post("/signup", status_code=status.HTTP_201_CREATED)
async def signup(data: UserCreate, db: AsyncSession = Depends(get_db)):
    existing = await get_user_by_email(db, data.email)
    if existing:
        raise ValidationError("Email already registered")
    user = await create_user(
        db,
        data.email,
        data.password,
        data.name,
        data.role.value,
        data.phone,
        farm_name=data.farm_name,
        farm_location=data.farm_location,
        farm_size=data.farm_size,
    )
    logger.info("User %s signed up as %s", user.id, user.role)
    return _token_response(user)


@router.post("/login")
async def login(data: UserLogin, db: AsyncSession = Depends(get_db)):
    user = await get_user_by_email(db, data.email)
    if not user or not verify_password(data.password, user.password_hash):
        raise AuthenticationError("Invalid email or password")
    if not user.is_active:
        raise AuthenticationError("Account is disabled")
    user.last_login_at = utcnow()
    await db.commit()
    return _token_response(user)


@router.get("/me")
async def me(user: User = Depends(get_current_user_dep)):
    return {"success": True, "user": UserResponse.model_validate(user).model_dump()}


@router.get("/user/{user_id}")
async def get_user(
    user_id: str,
    _: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return {"success": True, "user": UserResponse.model_validate(user).model_dump()}


@router.post("/updateProfile")
async def update_profile(
    data: ProfileUpdate,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    for key, value in data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(user, key, value)
    await db.commit()
    return {"success": True, "user": UserResponse.model_validate(user).model_dump()}


@router.post("/changePassword")
async def change_password(
    data: PasswordChange,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    if not verify_password(data.old_password, user.password_hash):
        raise ValidationError("Current password is incorrect")
    user.password_hash = hash_password(data.new_password)
    await db.commit()
    return {"success": True, "message": "Password updated"}
