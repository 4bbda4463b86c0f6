import json
import logging
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from messenger.auth import get_user_from_token
from messenger.dependencies import get_chat_locks, get_connection_manager, get_session_factory
from messenger.exceptions import AuthorizationError, MessageSendFailed, MessengerError
from messenger.repositories.chat_repository import ChatRepository
from messenger.schemas.message import (
    ChatChannelRequest,
    MarkMessagesRead,
    MessageReceived,
    SendMessageWebSocket,
    TypingIndicator,
    WebSocketMessageData,
)
from messenger.services.ledger import MessageLedger, format_message
from messenger.services.locks import ChatLockRegistry
from messenger.websocket_manager import (
    MESSAGE_SENT,
    MESSAGE_STATUS_UPDATE,
    ClientSession,
    ConnectionManager,
)

logger = logging.getLogger(__name__)

router = APIRouter()

def send_error(connections: ConnectionManager, session: ClientSession, error: dict):
    connections.send_to_session(session, "error", error)

@router.websocket("/chat")
async def websocket_chat(
    websocket: WebSocket,
    token: str = None,
    connections: ConnectionManager = Depends(get_connection_manager),
    locks: ChatLockRegistry = Depends(get_chat_locks),
    session_factory=Depends(get_session_factory),
):
    if not token:
        await websocket.close(code=1008, reason="Token required")
        return

    async with session_factory() as db:
        user = await get_user_from_token(token, db)
    if user is None or not user.is_active:
        await websocket.close(code=1008, reason="Invalid token")
        return

    session = await connections.connect(websocket, user)

    try:
        while True:
            data = await websocket.receive_text()

            try:
                message_data = WebSocketMessageData(**json.loads(data))
                async with session_factory() as db:
                    await handle_websocket_message(message_data.action, message_data.data, session, db, connections, locks)
            except json.JSONDecodeError:
                send_error(connections, session, {"error": "Invalid JSON format", "error_code": "INVALID_JSON"})
            except PydanticValidationError as exc:
                send_error(connections, session, {
                    "error": "Invalid payload",
                    "error_code": "VALIDATION_ERROR",
                    "details": {"errors": exc.errors(include_url=False, include_context=False)},
                })
            except MessengerError as exc:
                send_error(connections, session, exc.to_dict())
            except Exception:
                logger.exception("Error processing websocket message from user %s", session.user_id)
                send_error(connections, session, {"error": "Internal server error", "error_code": "INTERNAL_ERROR"})

    except WebSocketDisconnect:
        pass
    finally:
        await connections.disconnect(session)

async def handle_websocket_message(
    action: str,
    payload: dict,
    session: ClientSession,
    db: AsyncSession,
    connections: ConnectionManager,
    locks: ChatLockRegistry,
):
    ledger = MessageLedger(db, publisher=connections, locks=locks)

    if action == "join-chat":
        await handle_join_chat(payload, session, db, connections)

    elif action == "leave-chat":
        request = ChatChannelRequest(**payload)
        connections.unsubscribe(request.chat_id, session)

    elif action == "send-message":
        await handle_send_message(payload, session, ledger, connections)

    elif action == "message-received":
        request = MessageReceived(**payload)
        await ledger.mark_delivered(request.chat_id, session.user_id, request.message_ids)

    elif action == "mark-read":
        request = MarkMessagesRead(**payload)
        await ledger.mark_read(request.chat_id, session.user_id, request.up_to_message_id)

    elif action == "typing":
        await handle_typing_indicator(payload, session, db, connections)

    elif action == "ping":
        connections.send_to_session(session, "pong", {})

    else:
        send_error(connections, session, {"error": f"Unknown action: {action}", "error_code": "UNKNOWN_ACTION"})

async def _require_member(db: AsyncSession, chat_id: int, user_id: int):
    if not await ChatRepository(db).is_member(chat_id, user_id):
        raise AuthorizationError("You are not a participant of this chat", error_code="NOT_A_MEMBER")

async def handle_join_chat(payload: dict, session: ClientSession, db: AsyncSession, connections: ConnectionManager):
    """Подписка сессии на события чата"""
    request = ChatChannelRequest(**payload)
    await _require_member(db, request.chat_id, session.user_id)
    connections.subscribe(request.chat_id, session)

async def handle_send_message(payload: dict, session: ClientSession, ledger: MessageLedger, connections: ConnectionManager):
    request = SendMessageWebSocket(**payload)

    try:
        message = await ledger.append_message(
            request.chat_id,
            session.user_id,
            request.content,
            request.attachments,
            client_message_id=request.client_message_id,
            origin_session_id=session.id,
        )
    except MessageSendFailed:
        connections.send_to_session(session, MESSAGE_STATUS_UPDATE, {
            "chat_id": request.chat_id,
            "client_message_id": request.client_message_id,
            "status": "failed",
        })
        raise

    # Подтверждаем отправителю
    connections.send_to_session(session, MESSAGE_SENT, format_message(message).model_dump(mode="json"))

async def handle_typing_indicator(payload: dict, session: ClientSession, db: AsyncSession, connections: ConnectionManager):
    """Обработка индикатора печатания"""
    request = TypingIndicator(**payload)
    await _require_member(db, request.chat_id, session.user_id)
    connections.set_typing(request.chat_id, session.user_id, session.name, request.is_typing)

@router.get("/online-users")
async def get_online_users(connections: ConnectionManager = Depends(get_connection_manager)):
    """Получение списка пользователей в сети"""
    online_users = await connections.get_online_users()
    return {"online_users": online_users, "count": len(online_users)}
