"""Error taxonomy shared by the transport, the session store and the orchestrator."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    SERVER = "server"
    NETWORK = "network"
    TIMEOUT = "timeout"
    MISSING_CREDENTIAL = "missing_credential"
    NOT_FOUND = "not_found"
    MODEL_UNSUPPORTED = "model_unsupported"
    STORAGE = "storage"


class ChatError(Exception):
    """Base class for every error surfaced to the user.

    ``kind`` drives how the error is framed for display; ``hint`` is a short
    suggestion of what the user can do about it.
    """

    kind: ErrorKind = ErrorKind.SERVER
    hint: str = ""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthError(ChatError):
    kind = ErrorKind.AUTH
    hint = "Check the API key configured for this provider."

    def __init__(self, message: str = "Invalid API key", **kwargs):
        super().__init__(message, **kwargs)


class RateLimited(ChatError):
    kind = ErrorKind.RATE_LIMITED
    hint = "Too many requests. Wait a moment and try again."

    def __init__(self, message: str = "Too many requests", **kwargs):
        super().__init__(message, **kwargs)


class InvalidRequest(ChatError):
    """HTTP 400; ``message`` carries whatever the server reported."""

    kind = ErrorKind.INVALID_REQUEST
    hint = "The provider rejected the request."

    def __init__(self, message: str = "Invalid request", **kwargs):
        super().__init__(message, **kwargs)

    @property
    def server_message(self) -> str:
        return self.message


class InsufficientBalance(ChatError):
    kind = ErrorKind.INSUFFICIENT_BALANCE
    hint = "Top up your account balance with the provider."

    def __init__(self, message: str = "Insufficient account balance", **kwargs):
        super().__init__(message, **kwargs)


class ServerError(ChatError):
    kind = ErrorKind.SERVER
    hint = "The provider returned an error. Try again later."

    def __init__(self, message: str | None = None, *, status_code: int | None = None):
        if message is None:
            message = f"Server error: {status_code}"
        super().__init__(message, status_code=status_code)


class NetworkError(ChatError):
    kind = ErrorKind.NETWORK
    hint = "Check your network connection."


class Timeout(ChatError):
    kind = ErrorKind.TIMEOUT
    hint = "The provider took too long to answer. Increase the request timeout."

    def __init__(self, message: str = "Request timed out", **kwargs):
        super().__init__(message, **kwargs)


class MissingCredential(ChatError):
    kind = ErrorKind.MISSING_CREDENTIAL
    hint = "Configure an API key: polychat config set-key <key>"

    def __init__(self, message: str = "API key is not configured", **kwargs):
        super().__init__(message, **kwargs)


class NotFound(ChatError):
    kind = ErrorKind.NOT_FOUND
    hint = "The requested item does not exist."


class ModelUnsupported(ChatError):
    """Model name rejected by a provider; ``hint`` explains the expected form."""

    kind = ErrorKind.MODEL_UNSUPPORTED

    def __init__(self, message: str, hint: str):
        super().__init__(message)
        self.hint = hint


class StorageError(ChatError):
    kind = ErrorKind.STORAGE
    hint = "Conversation history could not be saved."
