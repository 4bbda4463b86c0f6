"""
Доменные исключения мессенджера.

Каждая ошибка сервисного слоя несёт стабильный машиночитаемый ``error_code``
рядом с человекочитаемым сообщением, поэтому HTTP и WebSocket обработчики
отдают её клиенту одинаково.

Иерархия:
    MessengerError
    ├── ValidationError     - некорректные или отсутствующие данные (400)
    ├── AuthorizationError  - пользователь известен, но действие запрещено (403)
    ├── NotFoundError       - нет чата, группы, сообщения или пользователя (404)
    ├── ConflictError       - повторное участие и подобные гонки (409)
    ├── ChatBusyError       - блокировка чата не получена вовремя (503)
    └── MessageSendFailed   - сообщение не удалось записать (500)
"""

from __future__ import annotations

from typing import Any


class MessengerError(Exception):
    default_error_code: str = "MESSENGER_ERROR"
    status_code: int = 400

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(MessengerError):
    default_error_code = "VALIDATION_ERROR"
    status_code = 400


class AuthorizationError(MessengerError):
    default_error_code = "FORBIDDEN"
    status_code = 403


class NotFoundError(MessengerError):
    default_error_code = "NOT_FOUND"
    status_code = 404


class ConflictError(MessengerError):
    default_error_code = "CONFLICT"
    status_code = 409


class ChatBusyError(MessengerError):
    """Очередь операций чата не освободилась за отведённое время."""

    default_error_code = "CHAT_BUSY"
    status_code = 503


class MessageSendFailed(MessengerError):
    """
    Сообщение не удалось зафиксировать в журнале.

    Клиент получает статус ``failed``; сервер ничего не повторяет,
    отправку нужно выполнить заново.
    """

    default_error_code = "SEND_FAILED"
    status_code = 500
