#!/usr/bin/env python3

"""
Chat Controller - drives one conversation

Owns the active context and the message list of the conversation, runs at
most one generation at a time and persists every turn through the session
store. Callers serialize their own calls (send, stop, clear); the
controller is not safe for concurrent use from several tasks.
"""

import asyncio
from dataclasses import replace
from typing import Callable, List, Optional

import structlog

from ..exceptions import (
    ContextError, LLMProviderError, OneShotError, SessionError,
    SessionExportError, MessageNotFoundError
)
from ..services.context_optimizer import ContextOptimizer
from ..services.context_resolver import ContextResolver
from ..services.context_store import ContextStore
from ..services.llm_providers.base_provider import framing_tokens
from ..services.metrics_service import MetricsAggregator
from ..services.models.context_models import ContextItem, ContextOptimizationStrategy
from ..services.models.llm_models import (
    ChatMessage, FinishReason, LLMConfiguration, MessageRole
)
from ..services.models.metrics_models import DiagnosticEvent, DiagnosticEventType
from ..services.models.session_models import ExportFormat, Message, Session
from ..services.provider_registry import ProviderRegistry
from ..services.session_service import SessionStore
from ..services.streaming.message_accumulator import MessageAccumulator, MessageSnapshot
from ..services.token_estimator import estimate_tokens, estimate_total

log = structlog.get_logger(__name__)

SnapshotCallback = Callable[[MessageSnapshot], None]

TITLE_LENGTH = 50


class ChatController:
    """
    Conversation controller.

    ``send_message`` returns the assistant message. A provider failure does
    not raise: the message keeps whatever content arrived, its metadata
    carries the error text and ``error`` holds the exception so the caller
    can offer a retry when ``error.is_transient``.
    """

    def __init__(self, registry: ProviderRegistry, resolver: ContextResolver,
                 optimizer: ContextOptimizer, session_store: SessionStore,
                 configuration: LLMConfiguration,
                 metrics: Optional[MetricsAggregator] = None,
                 on_snapshot: Optional[SnapshotCallback] = None):
        self.registry = registry
        self.resolver = resolver
        self.optimizer = optimizer
        self.session_store = session_store
        self.configuration = configuration
        self.metrics = metrics
        self.on_snapshot = on_snapshot

        self.context = ContextStore()
        self.messages: List[Message] = []
        self.session: Optional[Session] = None
        self.error: Optional[OneShotError] = None

        self._generation_task: Optional[asyncio.Task] = None
        self._stopped_task: Optional[asyncio.Task] = None
        self._partial: Optional[Message] = None

    @property
    def is_generating(self) -> bool:
        return self._generation_task is not None and not self._generation_task.done()

    # Sending

    async def send_message(self, text: str) -> Message:
        """
        Send a user message and stream the reply.

        Any generation still running is stopped first. ``@file:``,
        ``@folder:`` and ``@clipboard`` references in the text are resolved
        and added to the context before sending.

        Raises:
            ValueError: Empty message
            ContextError: An inline reference could not be resolved
            NotConfiguredError, ModelNotAvailableError: Nothing was sent
        """
        if not text or not text.strip():
            raise ValueError("Message is empty")
        await self.stop_generation()
        return await self._run(self._generate(text))

    async def retry_last_message(self) -> Message:
        """Drop the last user message and everything after it, then send it again"""
        index = self._last_index(MessageRole.USER)
        if index is None:
            raise MessageNotFoundError("last user message")
        await self.stop_generation()

        text = self.messages[index].content
        self.messages = self.messages[:index]
        self._save_session_messages()
        log.info("chat.retry", session_id=self._session_id)
        return await self._run(self._generate(text))

    async def regenerate_last_response(self) -> Message:
        """Replace the last assistant reply with a new one for the same user message"""
        await self.stop_generation()
        if self.messages and self.messages[-1].role is MessageRole.ASSISTANT:
            self.messages.pop()
        if not self.messages or self.messages[-1].role is not MessageRole.USER:
            raise MessageNotFoundError("user message to regenerate from")

        self._save_session_messages()
        log.info("chat.regenerate", session_id=self._session_id)
        return await self._run(self._generate(self.messages[-1].content, resend=True))

    async def stop_generation(self) -> None:
        """Cancel the running generation, if any, and wait for it to wind down"""
        task = self._generation_task
        if task is None or task.done():
            return
        self._stopped_task = task
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("chat.stopped_with_error", error=str(e))
        log.info("chat.generation_stopped", session_id=self._session_id)

    async def _run(self, coroutine) -> Message:
        task = asyncio.ensure_future(coroutine)
        self._generation_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._stopped_task is task and self._partial is not None:
                return self._partial
            raise
        finally:
            if self._generation_task is task:
                self._generation_task = None

    async def _generate(self, text: str, resend: bool = False) -> Message:
        self.error = None
        self._partial = None

        try:
            for reference in self.resolver.find_references(text):
                self.add_context_reference(reference)
        except ContextError as e:
            self.error = e
            raise

        configuration = self.configuration
        history_messages = self.messages[:-1] if resend else self.messages
        history = [ChatMessage(m.role, m.content) for m in history_messages if m.content]

        budget = self._context_budget(text, history)
        context = self.optimizer.optimize(self.context.items, budget,
                                          configuration.context_optimization)

        try:
            stream = self.registry.send(text, context, configuration, history)
        except LLMProviderError as e:
            self.error = e
            log.error("chat.send_failed", session_id=self._session_id,
                      error_type=type(e).__name__, error=str(e))
            raise

        session = self._ensure_session(text)
        if not resend:
            user_message = Message(content=text, role=MessageRole.USER, context_items=tuple(context))
            self.messages.append(user_message)
            self._persist(user_message)

        accumulator = MessageAccumulator(MessageRole.ASSISTANT)
        self._publish(accumulator.snapshot())
        try:
            async with stream:
                async for chunk in stream:
                    self._publish(accumulator.append(chunk.content))
        except asyncio.CancelledError:
            self._publish(accumulator.finish(FinishReason.CANCELLED))
            self._partial = self._finalize(accumulator, stream)
            raise
        except LLMProviderError as e:
            self.error = e
            log.warning("chat.generation_failed", session_id=session.id,
                        error_type=type(e).__name__, transient=e.is_transient, error=str(e))
            self._publish(accumulator.fail(str(e)))
            return self._finalize(accumulator, stream)

        self._publish(accumulator.finish(stream.finish_reason or FinishReason.STOP))
        return self._finalize(accumulator, stream)

    def _finalize(self, accumulator: MessageAccumulator, stream) -> Message:
        parameters = self.configuration.parameters
        message = accumulator.to_message(
            token_usage=stream.usage,
            latency=stream.latency,
            model_id=self.configuration.model.id,
            temperature=parameters.temperature,
            max_tokens=parameters.max_tokens,
        )
        self.messages.append(message)
        self._persist(message)
        return message

    def _context_budget(self, text: str, history: List[ChatMessage]) -> int:
        """Model window minus prompt, history, context framing and reply reservation"""
        configuration = self.configuration
        budget = configuration.model.context_window_tokens
        budget -= estimate_tokens(text)
        budget -= estimate_total(m.content for m in history)
        budget -= framing_tokens(self.context.items)
        if configuration.system_prompt:
            budget -= estimate_tokens(configuration.system_prompt)
        budget -= configuration.parameters.max_tokens or 0
        return max(0, budget)

    def _publish(self, snapshot: MessageSnapshot):
        if self.on_snapshot is None:
            return
        try:
            self.on_snapshot(snapshot)
        except Exception as e:
            log.warning("chat.snapshot_callback_failed", error=str(e))

    # Context

    def add_context_reference(self, reference: str) -> ContextItem:
        item = self.resolver.resolve(reference)
        self.context.add(item)
        log.debug("chat.context_added", item_id=item.id, type=item.type.value, tokens=item.token_count)
        self._record_event(DiagnosticEventType.CONTEXT_ADDED, type=item.type.value)
        return item

    def add_context_item(self, item: ContextItem) -> None:
        self.context.add(item)
        self._record_event(DiagnosticEventType.CONTEXT_ADDED, type=item.type.value)

    def remove_context(self, item_id: str) -> Optional[ContextItem]:
        item = self.context.remove(item_id)
        if item is not None:
            self._record_event(DiagnosticEventType.CONTEXT_REMOVED, type=item.type.value)
        return item

    def clear_context(self) -> None:
        count = len(self.context)
        self.context.clear()
        if count:
            self._record_event(DiagnosticEventType.CONTEXT_REMOVED, count=str(count))

    def set_optimization_strategy(self, strategy: ContextOptimizationStrategy) -> None:
        self.configuration = replace(self.configuration, context_optimization=strategy)

    # Sessions

    async def new_session(self, title: Optional[str] = None) -> Session:
        await self.stop_generation()
        provider = self.registry.current_provider
        provider_id = provider.id if provider is not None else ""
        self.session = self.session_store.create_session(provider_id, self.configuration.model.id, title)
        self.messages = []
        self.context.clear()
        self.error = None
        return self.session

    async def load_session(self, session_id: str) -> Session:
        await self.stop_generation()
        session = self.session_store.get_session(session_id)
        self.session = session
        self.messages = list(session.messages)
        self.context.clear()
        self.error = None
        log.info("chat.session_loaded", session_id=session_id, messages=len(self.messages))
        return session

    def export_session(self, export_format: ExportFormat) -> bytes:
        if self.session is None:
            raise SessionExportError("No active session to export")
        return self.session_store.export_session(self.session.id, export_format)

    async def import_session(self, data: bytes, export_format: ExportFormat = ExportFormat.JSON) -> Session:
        session = self.session_store.import_session(data, export_format)
        return await self.load_session(session.id)

    @property
    def _session_id(self) -> Optional[str]:
        return self.session.id if self.session is not None else None

    def _ensure_session(self, first_text: str) -> Session:
        if self.session is None:
            provider = self.registry.current_provider
            provider_id = provider.id if provider is not None else ""
            title = first_text.strip().splitlines()[0][:TITLE_LENGTH]
            self.session = self.session_store.create_session(provider_id, self.configuration.model.id, title)
        return self.session

    def _persist(self, message: Message):
        try:
            self.session_store.save_message(message, self.session.id)
        except SessionError as e:
            self.error = e
            log.error("chat.persist_failed", session_id=self.session.id,
                      message_id=message.id, error=str(e))
        if self.metrics is not None:
            try:
                self.metrics.record_message()
            except Exception as e:
                log.warning("chat.metrics_failed", error=str(e))

    def _save_session_messages(self):
        if self.session is None:
            return
        self.session = replace(self.session, messages=tuple(self.messages))
        try:
            self.session_store.save_session(self.session)
        except SessionError as e:
            self.error = e
            log.error("chat.persist_failed", session_id=self.session.id, error=str(e))

    def _last_index(self, role: MessageRole) -> Optional[int]:
        for index in range(len(self.messages) - 1, -1, -1):
            if self.messages[index].role is role:
                return index
        return None

    def _record_event(self, event_type: DiagnosticEventType, **properties: str):
        if self.metrics is None:
            return
        try:
            self.metrics.record_event(DiagnosticEvent(event_type, properties=properties))
        except Exception as e:
            log.warning("chat.event_failed", error=str(e))
