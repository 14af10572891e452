"""Conversation orchestrator: sending, streaming, editing and autosave.

The orchestrator owns the working message list of the active conversation.
Every transition replaces the published ``ConversationState`` snapshot and
notifies subscribers; UI code only reads snapshots and issues commands.

States are Idle, Streaming and Editing (see ``ConversationState.phase``). At
most one response is in flight: starting a new send cancels the previous
stream task and bumps a generation counter, so late deltas from a superseded
stream are dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Sequence

from . import events as ev
from .attachments import Attachment
from .client import ChatClient
from .config import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE
from .errors import ChatError, MissingCredential, ModelUnsupported, NotFound, ServerError, StorageError
from .events import EventSink, LoggingEventSink
from .models import (
    ChatRequest,
    Conversation,
    ConversationState,
    EditDraft,
    ErrorInfo,
    Message,
    Role,
    has_user_messages,
)
from .providers import REGISTRY, ProviderDescriptor, ProviderRegistry
from .settings import SettingsSource
from .storage import SessionStore

logger = logging.getLogger(__name__)

StateListener = Callable[[ConversationState], None]


class ChatOrchestrator:
    def __init__(
        self,
        store: SessionStore,
        settings: SettingsSource,
        client: ChatClient,
        registry: ProviderRegistry = REGISTRY,
        events: EventSink | None = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        self.store = store
        self.settings = settings
        self.client = client
        self.registry = registry
        self.events = events or LoggingEventSink()
        self.temperature = temperature
        self.max_tokens = max_tokens

        self._state = ConversationState()
        self._listeners: list[StateListener] = []
        self._task: asyncio.Task | None = None
        self._generation = 0

    # -- state publication ---------------------------------------------------

    @property
    def state(self) -> ConversationState:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener`` with every new snapshot; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: ConversationState):
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.warning("State listener %r failed", listener, exc_info=True)

    def _record_error(self, error: ChatError):
        self._set_state(self._state.replace(is_streaming=False, error=ErrorInfo.from_error(error)))
        self.events.emit(ev.ERROR, kind=error.kind.value, message=error.message)

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> ConversationState:
        """Activate the stored active conversation, creating one if there is none."""
        conv = self.store.get_active()
        if conv is None:
            conv = self.store.create()
            logger.info("Started new conversation %s", conv.id)
        else:
            logger.info("Resumed conversation %s (%d messages)", conv.id, conv.message_count)
        self._set_state(ConversationState(active_conversation_id=conv.id, messages=conv.messages))
        return self._state

    async def aclose(self):
        await self.cancel()
        self._listeners.clear()

    async def wait_idle(self):
        """Wait for the in-flight response, if any, to finish."""
        task = self._task
        if task is not None:
            await asyncio.wait({task})

    async def cancel(self):
        """Cancel the in-flight stream; no callbacks fire after this returns."""
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._state.is_streaming:
            self._set_state(self._state.replace(is_streaming=False))
            self.events.emit(ev.CANCELLED, conversation_id=self._state.active_conversation_id)

    # -- commands ------------------------------------------------------------

    async def send_message(self, text: str, attachments: Sequence[Attachment] | None = None) -> bool:
        """Append a user message and request a reply. Returns False for an empty send."""
        return await self._send(text, tuple(attachments or ()), edited=False)

    def start_editing(self, message_id: str) -> bool:
        if self._state.is_streaming:
            logger.debug("Ignoring edit request while a response is streaming")
            return False
        message = next((m for m in self._state.messages if m.id == message_id), None)
        if message is None:
            self._record_error(NotFound(f"Message not found: {message_id}"))
            return False
        draft = EditDraft(target_message_id=message.id, draft_text=message.text)
        self._set_state(self._state.replace(editing=draft))
        return True

    def cancel_editing(self):
        if self._state.editing is not None:
            self._set_state(self._state.replace(editing=None))

    async def commit_edit(self, new_text: str) -> bool:
        """Replace the edited message and everything after it, then resend.

        The working list is cut to the messages strictly before the edited one;
        the new text goes out as a fresh user message marked as edited.
        """
        draft = self._state.editing
        if draft is None:
            return False

        messages = self._state.messages
        index = next((i for i, m in enumerate(messages) if m.id == draft.target_message_id), None)
        if index is None or not new_text.strip():
            self.cancel_editing()
            return False

        await self.cancel()
        self._set_state(self._state.replace(messages=messages[:index], editing=None))
        return await self._send(new_text, (), edited=True)

    async def clear_conversation(self):
        """Drop the working state and switch to a fresh, empty conversation."""
        await self.cancel()
        try:
            conv = self.store.create()
        except StorageError as e:
            logger.error("Failed to create conversation: %s", e)
            self._record_error(e)
            return
        self._set_state(ConversationState(active_conversation_id=conv.id))

    async def load_conversation(self, conversation_id: str) -> bool:
        await self.cancel()
        try:
            conv = self.store.get(conversation_id)
            if conv is None:
                raise NotFound(f"Conversation not found: {conversation_id}")
            self.store.set_active(conversation_id)
        except ChatError as e:
            self._record_error(e)
            return False
        self._set_state(ConversationState(active_conversation_id=conv.id, messages=conv.messages))
        return True

    async def delete_conversation(self, conversation_id: str):
        """Delete a stored conversation; deleting the active one starts a fresh chat."""
        try:
            self.store.delete(conversation_id)
        except StorageError as e:
            self._record_error(e)
            return
        if conversation_id == self._state.active_conversation_id:
            await self.clear_conversation()

    async def delete_all_conversations(self):
        try:
            self.store.delete_all()
        except StorageError as e:
            self._record_error(e)
            return
        await self.clear_conversation()

    def clear_error(self):
        if self._state.error is not None or self._state.warning is not None:
            self._set_state(self._state.replace(error=None, warning=None))

    # -- sending -------------------------------------------------------------

    async def _send(self, text: str, attachments: tuple[Attachment, ...], edited: bool) -> bool:
        if not text.strip() and not attachments:
            return False

        await self.cancel()
        if self._state.active_conversation_id is None:
            await self.start()
        # Another send may have started a task while this one was cancelling
        while self._task is not None:
            await self.cancel()

        user = Message(role=Role.USER, text=text, attachments=attachments, edited=edited)
        placeholder = Message(role=Role.ASSISTANT)
        messages = self._state.messages + (user, placeholder)
        self._set_state(self._state.replace(messages=messages, is_streaming=True, editing=None))
        generation = self._generation

        try:
            provider, model, credential, timeout, stream = self._resolve()
        except ChatError as e:
            # The optimistic user message stays visible next to the error
            self._record_error(e)
            return True

        self.events.emit(
            ev.SEND_START,
            conversation_id=self._state.active_conversation_id,
            provider=provider.provider_id,
            model=model,
            messages=len(messages) - 1,
            attachments=len(attachments),
            stream=stream,
        )

        # Copied messages share Attachment instances so cached file reads carry over
        history = [m.model_copy(update={"attachments": tuple(m.attachments)}) for m in messages[:-1]]
        request = ChatRequest(
            model=model,
            messages=history,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            stream=stream,
        )
        self._task = asyncio.create_task(
            self._run(generation, provider, credential, request, timeout, stream)
        )
        return True

    def _resolve(self) -> tuple[ProviderDescriptor, str, str, int, bool]:
        provider = self.registry.get(self.settings.get_selected_provider())

        credential = self.settings.get_credential()
        if not credential:
            raise MissingCredential(f"No API key configured for {provider.display_name}")

        model = self.settings.get_model_name()
        try:
            self.registry.validate_model(provider, model)
        except ModelUnsupported as e:
            self.events.emit(
                ev.MODEL_FALLBACK, requested=model, fallback=provider.default_model, hint=e.hint
            )
            model = provider.default_model

        return (
            provider,
            model,
            credential,
            self.settings.get_request_timeout_seconds(),
            self.settings.get_stream_responses(),
        )

    async def _run(
        self,
        generation: int,
        provider: ProviderDescriptor,
        credential: str,
        request: ChatRequest,
        timeout: int,
        stream: bool,
    ):
        try:
            if stream:
                async with contextlib.aclosing(
                    self.client.stream(provider, credential, request, timeout)
                ) as events:
                    async for event in events:
                        if generation != self._generation:
                            return
                        if event.delta_text:
                            self._append_delta(event.delta_text)
                        if event.is_final:
                            break
            else:
                response = await self.client.complete(provider, credential, request, timeout)
                if generation != self._generation:
                    return
                self._append_delta(response.text)
        except ChatError as e:
            if generation == self._generation:
                self._record_error(e)
            return
        except Exception as e:
            # Never let a response failure escape the orchestrator
            logger.exception("Unexpected failure while receiving a response")
            if generation == self._generation:
                self._record_error(ServerError(f"Unexpected error: {e}"))
            return

        if generation == self._generation:
            self._complete()

    def _append_delta(self, delta: str):
        messages = self._state.messages
        last = messages[-1]
        if not last.is_assistant:
            return
        self._set_state(self._state.replace(messages=messages[:-1] + (last.append(delta),)))
        self.events.emit(ev.DELTA, size=len(delta))

    def _complete(self):
        self._set_state(self._state.replace(is_streaming=False, error=None))
        self.events.emit(
            ev.COMPLETE,
            conversation_id=self._state.active_conversation_id,
            chars=len(self._state.messages[-1].text),
        )
        self._autosave()

    def _autosave(self):
        """Persist the working list; failures only produce a warning."""
        conv_id = self._state.active_conversation_id
        if conv_id is None:
            return
        messages = self._state.messages

        try:
            existing = self.store.get(conv_id)
            if existing is None:
                existing = Conversation.new().model_copy(update={"id": conv_id})
            updated = existing.with_messages(messages)
            if not has_user_messages(existing.messages) and has_user_messages(messages):
                updated = updated.with_updated_title()
            self.store.update(updated)
        except StorageError as e:
            logger.error("Autosave of conversation %s failed: %s", conv_id, e)
            self._set_state(self._state.replace(warning=f"Autosave failed: {e.message}"))
            self.events.emit(ev.AUTOSAVE_FAILED, conversation_id=conv_id, message=e.message)
