# routers/auth.py — Registration, login and the current user
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse, CurrentUser,
    ACCESS_TOKEN_EXPIRE_MINUTES, get_current_user, to_current_user,
)
from database import get_db_session

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


def _build_token_response(user_obj) -> TokenResponse:
    return TokenResponse(
        access_token=AuthService.create_access_token(user_obj.id),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=to_current_user(user_obj),
    )


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new user account"""
    user = await AuthService.register_user(user_data, db)
    return _build_token_response(user)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    db: AsyncSession = Depends(get_db_session),
):
    user = await AuthService.authenticate_user(credentials.email, credentials.password, db)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _build_token_response(user)


@router.get("/me", response_model=CurrentUser)
async def get_current_user_info(user: CurrentUser = Depends(get_current_user)):
    return user
