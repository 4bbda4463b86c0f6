from typing import List, Optional
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from messenger.auth import get_current_active_user
from messenger.dependencies import get_directory, get_ledger, get_membership, get_storage
from messenger.exceptions import ValidationError
from messenger.models.user import User
from messenger.schemas.chat import (
    ChatSummary,
    CreateDirectChat,
    DirectChatResponse,
    MarkReadRequest,
    MarkReadResponse,
)
from messenger.schemas.message import (
    AttachmentCreate,
    ChatWithMessages,
    MessageResponse,
    ReadReceiptResponse,
)
from messenger.services.directory import ChatDirectory
from messenger.services.ledger import MessageLedger, format_message
from messenger.services.membership import MembershipService
from messenger.storage import LocalMediaStorage

router = APIRouter()

attachments_adapter = TypeAdapter(List[AttachmentCreate])

def parse_attachments(raw: Optional[str]) -> List[AttachmentCreate]:
    """Метаданные уже загруженных вложений приходят JSON-строкой в multipart-форме"""
    if not raw:
        return []
    try:
        return attachments_adapter.validate_json(raw)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Invalid attachments data",
            error_code="INVALID_ATTACHMENTS",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        )

@router.get("/", response_model=List[ChatSummary])
async def get_user_chats(
    directory: ChatDirectory = Depends(get_directory),
    current_user: User = Depends(get_current_active_user)
):
    """Все чаты текущего пользователя, самые активные первыми"""
    return await directory.list_chats(current_user.id)

@router.post("/", response_model=DirectChatResponse)
async def create_direct_chat(
    chat_data: CreateDirectChat,
    membership: MembershipService = Depends(get_membership),
    current_user: User = Depends(get_current_active_user)
):
    """Создание личного чата или возврат существующего"""
    chat_id = await membership.create_direct_chat(current_user.id, chat_data.participant_id)
    return {"chat_id": chat_id}

@router.get("/{chat_id}", response_model=ChatWithMessages)
async def get_chat(
    chat_id: int,
    directory: ChatDirectory = Depends(get_directory),
    ledger: MessageLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user)
):
    """Чат с историей сообщений; открытие чата отмечает сообщения прочитанными"""
    chat = await directory.get_chat(chat_id, current_user.id)
    await ledger.mark_read(chat_id, current_user.id)
    # Последняя страница истории, в хронологическом порядке
    messages = await ledger.list_messages(chat_id, current_user.id, order="desc")
    return {"chat": chat, "messages": [format_message(m) for m in reversed(messages)]}

@router.get("/{chat_id}/messages", response_model=List[MessageResponse])
async def get_chat_messages(
    chat_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    order: str = Query("asc", pattern="^(asc|desc)$"),
    ledger: MessageLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user)
):
    messages = await ledger.list_messages(chat_id, current_user.id, limit=limit, offset=offset, order=order)
    return [format_message(m) for m in messages]

@router.post("/{chat_id}/messages", response_model=MessageResponse)
async def send_message(
    chat_id: int,
    content: str = Form(""),
    attachments: Optional[str] = Form(None),
    client_message_id: Optional[str] = Form(None),
    files: Optional[List[UploadFile]] = File(None),
    ledger: MessageLedger = Depends(get_ledger),
    media: LocalMediaStorage = Depends(get_storage),
    current_user: User = Depends(get_current_active_user)
):
    """Отправка сообщения с вложениями.

    Файлы сохраняются только после проверки прав отправителя и удаляются,
    если сообщение не было записано.
    """
    all_attachments = parse_attachments(attachments)
    await ledger.check_can_send(chat_id, current_user.id)

    stored: List[AttachmentCreate] = []
    try:
        for upload in files or []:
            stored.append(await media.save(upload))
        message = await ledger.append_message(
            chat_id,
            current_user.id,
            content,
            all_attachments + stored,
            client_message_id=client_message_id,
        )
    except Exception:
        await media.discard(stored)
        raise

    # Повторная отправка возвращает уже записанное сообщение со старыми файлами
    kept = {attachment.url for attachment in message.attachments}
    await media.discard([a for a in stored if a.url not in kept])
    return format_message(message)

@router.post("/{chat_id}/read", response_model=MarkReadResponse)
async def mark_chat_read(
    chat_id: int,
    read_data: Optional[MarkReadRequest] = None,
    ledger: MessageLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user)
):
    up_to = read_data.up_to_message_id if read_data else None
    result = await ledger.mark_read(chat_id, current_user.id, up_to)
    return {"marked": result.marked, "unread_count": result.unread_count}

@router.get("/{chat_id}/messages/{message_id}/receipts", response_model=List[ReadReceiptResponse])
async def get_message_receipts(
    chat_id: int,
    message_id: int,
    ledger: MessageLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user)
):
    """Кто из участников получил и прочитал сообщение"""
    return await ledger.get_read_receipts(chat_id, message_id, current_user.id)
