import json
from typing import List, Optional
from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import ValidationError as PydanticValidationError

from messenger.auth import get_current_active_user
from messenger.dependencies import get_membership, get_storage
from messenger.exceptions import ValidationError
from messenger.models.user import User
from messenger.schemas.chat import GroupResponse, GroupSettingsUpdate, ParticipantRequest
from messenger.services.directory import format_group
from messenger.services.membership import MembershipService
from messenger.storage import LocalMediaStorage

router = APIRouter()

def parse_participants(raw: Optional[str]) -> List[int]:
    try:
        participants = json.loads(raw or "[]")
    except json.JSONDecodeError:
        raise ValidationError("Invalid participants data", error_code="INVALID_PARTICIPANTS")
    if not isinstance(participants, list) or not all(isinstance(p, int) for p in participants):
        raise ValidationError("Participants must be a list of user ids", error_code="INVALID_PARTICIPANTS")
    return participants

def parse_settings(raw: Optional[str]) -> Optional[GroupSettingsUpdate]:
    if not raw:
        return None
    try:
        return GroupSettingsUpdate.model_validate_json(raw)
    except PydanticValidationError:
        raise ValidationError("Invalid settings data", error_code="INVALID_SETTINGS")

@router.post("/", response_model=GroupResponse)
async def create_group(
    name: str = Form(""),
    description: Optional[str] = Form(None),
    participants: Optional[str] = Form(None),
    avatar: Optional[UploadFile] = File(None),
    membership: MembershipService = Depends(get_membership),
    media: LocalMediaStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user)
):
    """Создание группы; создатель становится администратором"""
    member_ids = parse_participants(participants)
    avatar_url = await media.save_image(avatar) if avatar else None

    group = await membership.create_group_chat(
        current_user.id,
        name,
        member_ids,
        description=description,
        avatar=avatar_url,
    )
    return format_group(group)

@router.get("/{group_id}", response_model=GroupResponse)
async def get_group(
    group_id: int,
    membership: MembershipService = Depends(get_membership),
    current_user: User = Depends(get_current_active_user)
):
    group = await membership.get_group(group_id, current_user.id)
    return format_group(group)

@router.put("/{group_id}", response_model=GroupResponse)
async def update_group(
    group_id: int,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    settings: Optional[str] = Form(None),
    avatar: Optional[UploadFile] = File(None),
    membership: MembershipService = Depends(get_membership),
    media: LocalMediaStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user)
):
    """Изменение информации и настроек группы"""
    settings_update = parse_settings(settings)
    avatar_url = await media.save_image(avatar) if avatar else None

    group = await membership.update_group(
        group_id,
        current_user.id,
        name=name,
        description=description,
        settings=settings_update,
        avatar=avatar_url,
    )
    return format_group(group)

@router.delete("/{group_id}")
async def delete_group(
    group_id: int,
    membership: MembershipService = Depends(get_membership),
    current_user: User = Depends(get_current_active_user)
):
    await membership.delete_group(group_id, current_user.id)
    return {"success": True}

@router.post("/{group_id}/participants")
async def add_participant(
    group_id: int,
    participant: ParticipantRequest,
    membership: MembershipService = Depends(get_membership),
    current_user: User = Depends(get_current_active_user)
):
    """Добавление участника (только для администраторов)"""
    await membership.add_member(group_id, current_user.id, participant.participant_id)
    return {"success": True}

@router.delete("/{group_id}/participants")
async def remove_participant(
    group_id: int,
    participant: ParticipantRequest,
    membership: MembershipService = Depends(get_membership),
    current_user: User = Depends(get_current_active_user)
):
    """Удаление участника (только для администраторов)"""
    await membership.remove_member(group_id, current_user.id, participant.participant_id)
    return {"success": True}

@router.post("/{group_id}/admins")
async def promote_admin(
    group_id: int,
    participant: ParticipantRequest,
    membership: MembershipService = Depends(get_membership),
    current_user: User = Depends(get_current_active_user)
):
    await membership.promote_admin(group_id, current_user.id, participant.participant_id)
    return {"success": True}
