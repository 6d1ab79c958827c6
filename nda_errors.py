from __future__ import annotations


class GateError(Exception):
    """Base class for errors raised by the NDA gate."""


class ConfigurationError(GateError):
    """No NDA document is configured; joins are let through unrestricted."""


class AuthorizationError(GateError):
    """A non-admin user tried an admin-only action."""


class ValidationError(GateError):
    """Callback payload does not match the clicking user or chat.

    ``notice`` is the short text shown back to the user.
    """

    def __init__(self, notice: str):
        super().__init__(notice)
        self.notice = notice


class PlatformError(GateError):
    """A Telegram API call failed."""

    def __init__(self, action: str, chat_id: int, user_id: int | None, cause: BaseException):
        super().__init__(f"{action} failed chat={chat_id} uid={user_id}: {cause}")
        self.action = action
        self.chat_id = chat_id
        self.user_id = user_id
        self.cause = cause
