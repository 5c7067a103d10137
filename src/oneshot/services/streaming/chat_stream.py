#!/usr/bin/env python3

"""
Chat Stream - lazy sequence of response chunks for a single chat request

Wraps a provider's chunk generator and owns the request state machine:

    IDLE -> SENT -> STREAMING -> COMPLETED | FAILED | CANCELLED

The backend request is opened on the first pull. Completion and failure are
reported through the supplied callbacks; a cancelled request reports
nothing.
"""

import asyncio
import time
import uuid
from typing import AsyncIterator, Callable, List, Optional

import structlog

from ...exceptions import APIProviderError, LLMProviderError
from ..models.llm_models import FinishReason, MessageChunk, RequestState, TokenUsage
from ..token_estimator import estimate_tokens

log = structlog.get_logger(__name__)

CompletionCallback = Callable[['ChatStream'], None]
ErrorCallback = Callable[['ChatStream', LLMProviderError], None]


class ChatStream:
    """
    Async iterator of content chunks for one request.

    Only chunks with content are yielded. The adapter's terminal chunk is
    consumed here: its usage and finish reason become ``usage`` and
    ``finish_reason`` and nothing is yielded after it.

    Use ``async with`` or call ``aclose()`` when abandoning a stream early so
    the connection is released at once; a stream dropped without either is
    cancelled when it is garbage collected.
    """

    def __init__(self, source_factory: Callable[[], AsyncIterator[MessageChunk]], *,
                 provider_id: str, model_id: str, prompt_text: str = "",
                 on_complete: Optional[CompletionCallback] = None,
                 on_error: Optional[ErrorCallback] = None):
        self.request_id = str(uuid.uuid4())
        self.provider_id = provider_id
        self.model_id = model_id
        self._source_factory = source_factory
        self._source: Optional[AsyncIterator[MessageChunk]] = None
        self._prompt_text = prompt_text
        self._on_complete = on_complete
        self._on_error = on_error

        self._state = RequestState.IDLE
        self._parts: List[str] = []
        self._usage: Optional[TokenUsage] = None
        self._finish_reason: Optional[FinishReason] = None
        self._error: Optional[LLMProviderError] = None
        self._started_at: Optional[float] = None
        self._latency: Optional[float] = None
        self._close_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> RequestState:
        return self._state

    @property
    def content(self) -> str:
        """Text received so far"""
        return "".join(self._parts)

    @property
    def usage(self) -> Optional[TokenUsage]:
        return self._usage

    @property
    def finish_reason(self) -> Optional[FinishReason]:
        return self._finish_reason

    @property
    def error(self) -> Optional[LLMProviderError]:
        return self._error

    @property
    def latency(self) -> Optional[float]:
        """Seconds from the first pull to completion or failure"""
        return self._latency

    def __aiter__(self) -> 'ChatStream':
        return self

    async def __anext__(self) -> MessageChunk:
        if self._state.is_terminal:
            raise StopAsyncIteration

        if self._state is RequestState.IDLE:
            self._started_at = time.monotonic()
            self._source = self._source_factory()
            self._state = RequestState.SENT

        while True:
            try:
                chunk = await self._source.__anext__()
            except StopAsyncIteration:
                # Clean end of content without a terminal chunk
                self._complete()
                raise
            except asyncio.CancelledError:
                self._mark_cancelled()
                raise
            except LLMProviderError as e:
                self._fail(e)
                raise
            except Exception as e:
                error = APIProviderError(f"Unexpected error during streaming: {e}")
                self._fail(error)
                raise error from e

            if self._state is RequestState.CANCELLED:
                await self._close_source()
                raise StopAsyncIteration

            if chunk.is_complete:
                self._usage = chunk.usage
                self._finish_reason = FinishReason.from_backend(chunk.finish_reason)
                await self._close_source()
                self._complete()
                raise StopAsyncIteration

            if not chunk.content:
                continue

            self._state = RequestState.STREAMING
            self._parts.append(chunk.content)
            return chunk

    async def collect(self) -> str:
        """Consume the rest of the stream and return the full text"""
        async for _ in self:
            pass
        return self.content

    async def aclose(self) -> None:
        """Abandon the request and release its connection"""
        if not self._state.is_terminal:
            self._mark_cancelled()
        await self._close_source()

    def cancel(self) -> None:
        """Fire-and-forget abandon; the connection is closed in the background"""
        if self._state.is_terminal:
            return
        self._mark_cancelled()
        if self._source is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._close_task = loop.create_task(self._close_source())

    async def __aenter__(self) -> 'ChatStream':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def __del__(self):
        # Dropped mid-stream without aclose(): release the backend in the background
        if self._source is not None and not self._state.is_terminal:
            self.cancel()

    def _mark_cancelled(self):
        if self._state.is_terminal:
            return
        self._state = RequestState.CANCELLED
        self._finish_reason = FinishReason.CANCELLED
        log.debug("stream.cancelled", provider_id=self.provider_id,
                  model_id=self.model_id, request_id=self.request_id)

    async def _close_source(self):
        source = self._source
        if source is None:
            return
        aclose = getattr(source, 'aclose', None)
        if aclose is None:
            return
        try:
            await aclose()
        except RuntimeError as e:
            # Generator is mid-step in another task; it is closed on its next pull
            log.debug("stream.close_deferred", request_id=self.request_id, error=str(e))

    def _complete(self):
        if self._state.is_terminal:
            return
        self._latency = time.monotonic() - (self._started_at or time.monotonic())
        if self._finish_reason is None:
            self._finish_reason = FinishReason.STOP
        if self._usage is None:
            output = self.content
            self._usage = TokenUsage(
                input=estimate_tokens(self._prompt_text),
                output=estimate_tokens(output) if output else 0,
            )
        self._state = RequestState.COMPLETED

        if self._on_complete is not None:
            try:
                self._on_complete(self)
            except Exception as e:
                log.warning("stream.completion_callback_failed", request_id=self.request_id, error=str(e))

    def _fail(self, error: LLMProviderError):
        if self._state.is_terminal:
            return
        self._latency = time.monotonic() - (self._started_at or time.monotonic())
        self._error = error
        self._finish_reason = FinishReason.ERROR
        self._state = RequestState.FAILED

        if self._on_error is not None:
            try:
                self._on_error(self, error)
            except Exception as e:
                log.warning("stream.error_callback_failed", request_id=self.request_id, error=str(e))
