"""Data models for messages, conversations and provider requests."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .attachments import Attachment, serialize_message
from .config import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    DEFAULT_TITLE,
    PREVIEW_MAX_CHARS,
    TITLE_ELLIPSIS,
    TITLE_MAX_CHARS,
)
from .errors import ChatError, ErrorKind


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    role: Role
    text: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    edited: bool = False
    attachments: tuple[Attachment, ...] = ()

    @property
    def is_user(self) -> bool:
        return self.role is Role.USER

    @property
    def is_assistant(self) -> bool:
        return self.role is Role.ASSISTANT

    def with_text(self, text: str, *, edited: bool | None = None) -> Message:
        update: dict[str, Any] = {"text": text}
        if edited is not None:
            update["edited"] = edited
        return self.model_copy(update=update)

    def append(self, delta: str) -> Message:
        return self.model_copy(update={"text": self.text + delta})


def derive_title(text: str) -> str:
    """Session title from the first user message.

    Text of up to TITLE_MAX_CHARS characters is returned as is; longer text is
    cut at the last whole word that fits and gets an ellipsis.
    """
    content = text.strip()
    if not content:
        return DEFAULT_TITLE
    if len(content) <= TITLE_MAX_CHARS:
        return content

    result = ""
    for word in content.split(" "):
        candidate = f"{result} {word}" if result else word
        if len(candidate) > TITLE_MAX_CHARS:
            break
        result = candidate

    if not result:
        result = content[:TITLE_MAX_CHARS]
    return result.rstrip() + TITLE_ELLIPSIS


def title_for_messages(messages: tuple[Message, ...] | list[Message]) -> str:
    first_user = next((m for m in messages if m.is_user and m.text.strip()), None)
    return derive_title(first_user.text) if first_user else DEFAULT_TITLE


def has_user_messages(messages: tuple[Message, ...] | list[Message]) -> bool:
    return any(m.is_user for m in messages)


class Conversation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    title: str = DEFAULT_TITLE
    messages: tuple[Message, ...] = ()
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_timestamps(self) -> Conversation:
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not be earlier than created_at")
        return self

    @classmethod
    def new(cls, title: str | None = None, messages: tuple[Message, ...] = ()) -> Conversation:
        now = utcnow()
        return cls(
            title=title or title_for_messages(messages),
            messages=messages,
            created_at=now,
            updated_at=now,
        )

    def with_messages(self, messages: tuple[Message, ...]) -> Conversation:
        """Copy with a new message list and a fresh updated_at."""
        return self.model_copy(
            update={"messages": tuple(messages), "updated_at": max(utcnow(), self.created_at)}
        )

    def with_updated_title(self) -> Conversation:
        return self.model_copy(update={"title": title_for_messages(self.messages)})

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def is_empty(self) -> bool:
        return not self.messages

    @property
    def last_message_preview(self) -> str:
        if not self.messages:
            return "No messages"
        content = self.messages[-1].text.strip()
        if len(content) <= PREVIEW_MAX_CHARS:
            return content
        return content[:PREVIEW_MAX_CHARS] + TITLE_ELLIPSIS


class Phase(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    EDITING = "editing"


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    hint: str = ""

    @classmethod
    def from_error(cls, error: ChatError) -> ErrorInfo:
        return cls(kind=error.kind, message=error.message, hint=error.hint)


class EditDraft(BaseModel):
    model_config = ConfigDict(frozen=True)

    target_message_id: str
    draft_text: str


class ConversationState(BaseModel):
    """Snapshot of the orchestrator's live view, replaced on every transition."""

    model_config = ConfigDict(frozen=True)

    active_conversation_id: str | None = None
    messages: tuple[Message, ...] = ()
    is_streaming: bool = False
    error: ErrorInfo | None = None
    editing: EditDraft | None = None
    warning: str | None = None

    @property
    def phase(self) -> Phase:
        if self.is_streaming:
            return Phase.STREAMING
        if self.editing is not None:
            return Phase.EDITING
        return Phase.IDLE

    @property
    def pending_error(self) -> ErrorKind | None:
        return self.error.kind if self.error else None

    def replace(self, **changes: Any) -> ConversationState:
        return self.model_copy(update=changes)


class ChatRequest(BaseModel):
    model: str
    messages: list[Message]
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    stream: bool = False

    async def to_payload(self) -> dict[str, Any]:
        """JSON body for the chat-completions endpoint."""
        messages = await asyncio.gather(*(serialize_message(m) for m in self.messages))
        return {
            "model": self.model,
            "messages": list(messages),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": self.stream,
        }


class ChatResponse(BaseModel):
    id: str = ""
    text: str
    finish_reason: str | None = None
    used_tokens: int | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ChatResponse:
        """Parse a chat-completions envelope; raises ValueError when malformed."""
        if not isinstance(data, dict):
            raise ValueError("API response is not a JSON object")
        choices = data.get("choices")
        if not choices:
            raise ValueError("Empty response from API")
        first = choices[0] if isinstance(choices, list) else None
        if not isinstance(first, dict):
            raise ValueError("Malformed choices in API response")
        message = first.get("message")
        if not isinstance(message, dict):
            raise ValueError("No message found in API response")

        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        return cls(
            id=data.get("id") or "",
            text=message.get("content") or "",
            finish_reason=first.get("finish_reason"),
            used_tokens=usage.get("total_tokens"),
        )


class StreamEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    delta_text: str = ""
    is_final: bool = False
    finish_reason: str | None = None
