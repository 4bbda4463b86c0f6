from typing import List, Optional
from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from messenger.database import get_db
from messenger.dependencies import get_storage
from messenger.repositories.user_repository import UserRepository
from messenger.schemas.user import ContactResponse, UserResponse, UserSettingsUpdate, UserUpdate
from messenger.auth import get_current_active_user
from messenger.models.user import User
from messenger.storage import LocalMediaStorage

router = APIRouter()

@router.get("/contacts", response_model=List[ContactResponse])
async def get_contacts(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Все остальные пользователи как контакты"""
    user_repo = UserRepository(db)
    return await user_repo.get_contacts(current_user.id)

@router.get("/profile", response_model=UserResponse)
async def get_profile(
    current_user: User = Depends(get_current_active_user)
):
    return current_user

@router.put("/profile", response_model=UserResponse)
async def update_profile(
    name: Optional[str] = Form(None),
    status: Optional[str] = Form(None),
    about: Optional[str] = Form(None),
    avatar: Optional[UploadFile] = File(None),
    db: AsyncSession = Depends(get_db),
    media: LocalMediaStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user)
):
    """Обновление профиля текущего пользователя"""
    user_data = UserUpdate(
        name=name or None,
        status=status or None,
        about=about or None,
        avatar=await media.save_image(avatar) if avatar else None,
    )
    user_repo = UserRepository(db)
    return await user_repo.update(current_user.id, user_data)

@router.put("/settings", response_model=UserResponse)
async def update_settings(
    settings_data: UserSettingsUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    user_repo = UserRepository(db)
    return await user_repo.update_settings(current_user.id, settings_data)
