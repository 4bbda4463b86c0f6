import logging
from datetime import timedelta
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.ext.asyncio import AsyncSession

from messenger.auth import authenticate_user, create_access_token, get_current_active_user
from messenger.config import settings
from messenger.database import get_db
from messenger.exceptions import ConflictError
from messenger.models.user import User
from messenger.repositories.user_repository import UserRepository
from messenger.schemas.user import Token, UserCreate, UserLogin, UserResponse

logger = logging.getLogger(__name__)

router = APIRouter()

invalid_credentials = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Invalid credentials",
    headers={"WWW-Authenticate": "Bearer"},
)

def issue_token(user: User) -> Token:
    expires_in = settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60
    access_token = create_access_token(data={"sub": user.username}, expires_delta=timedelta(seconds=expires_in))
    return Token(access_token=access_token, token_type="bearer", expires_in=expires_in)

@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register_user(user_data: UserCreate, db: AsyncSession = Depends(get_db)):
    """Регистрация; логин и email должны быть свободны"""
    user_repo = UserRepository(db)

    if await user_repo.get_by_username(user_data.username):
        raise ConflictError("Username already taken", error_code="USERNAME_TAKEN")
    if await user_repo.get_by_email(user_data.email):
        raise ConflictError("Email already registered", error_code="EMAIL_TAKEN")

    user = await user_repo.create(user_data)
    logger.info("Registered user %s (%s)", user.id, user.username)
    return user

@router.post("/login", response_model=Token)
async def login_user(form_data: OAuth2PasswordRequestForm = Depends(), db: AsyncSession = Depends(get_db)):
    """Вход через OAuth2-форму (используется Swagger UI)"""
    user = await authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise invalid_credentials
    return issue_token(user)

@router.post("/login-json", response_model=Token)
async def login_user_json(credentials: UserLogin, db: AsyncSession = Depends(get_db)):
    user = await authenticate_user(db, credentials.username, credentials.password)
    if not user:
        raise invalid_credentials
    return issue_token(user)

@router.post("/refresh", response_model=Token)
async def refresh_token(current_user: User = Depends(get_current_active_user)):
    return issue_token(current_user)

@router.get("/me", response_model=UserResponse)
async def get_current_user_info(current_user: User = Depends(get_current_active_user)):
    return current_user
