"""Conversation-scoped chat state machine.

`ChatSession` drives one turn at a time: `idle -> submitted -> streaming ->
{idle, error}`. The user message is persisted before any network I/O; the
assistant message is persisted only when its stream ends normally. A stopped
turn keeps its partial message in memory with `was_interrupted` set and writes
nothing.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Literal

from chatstream.chat.assembler import (
    ChatMessage,
    FilePart,
    apply,
    create_message,
    file_parts,
    from_persisted,
    message_to_dict,
    text_content,
    to_db_content,
)
from chatstream.chat.errors import ConversationNotFoundError
from chatstream.chat.events import (
    CanonicalEvent,
    ReasoningDelta,
    StreamEnded,
    TextDelta,
    UsageReported,
)
from chatstream.chat.normalizer import EventNormalizer
from chatstream.chat.providers import (
    ChatRequest,
    ChatTurn,
    FileRef,
    GenerationParams,
    get_provider,
)
from chatstream.chat.sse import iter_sse_events
from chatstream.chat.transport import Transport
from chatstream.core.config import Settings, settings
from chatstream.core.logging import conversation_id_ctx_var
from chatstream.metrics.prometheus import ChatStreamLabels, record_chat_stream
from chatstream.transcript.store import AttachmentMeta, MessageCreate, TranscriptStore


logger = logging.getLogger(__name__)

SessionStatus = Literal["idle", "submitted", "streaming", "error"]
Listener = Callable[[dict[str, object]], Awaitable[None]]


@dataclass(frozen=True)
class ModelSelection:
    provider: str
    model_id: str
    model_name: str = ""

    @property
    def display_name(self) -> str:
        return self.model_name or self.model_id


@dataclass(frozen=True)
class UsageTotals:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(self, usage: UsageReported) -> UsageTotals:
        return UsageTotals(
            input_tokens=self.input_tokens + (usage.input_tokens or 0),
            output_tokens=self.output_tokens + (usage.output_tokens or 0),
            total_tokens=self.total_tokens + usage.resolved_total(),
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class _TurnStats:
    started: float = field(default_factory=time.monotonic)
    ttft_ms: int | None = None
    output_chunks: int = 0
    output_chars: int = 0
    usage: UsageReported | None = None
    ended: bool = False

    def elapsed_ms(self) -> int:
        return max(0, int((time.monotonic() - self.started) * 1000))


def _decoded_size(b64: str) -> int:
    if not b64:
        return 0
    try:
        return len(base64.b64decode(b64, validate=False))
    except (binascii.Error, ValueError):
        return 0


class ChatSession:
    def __init__(
        self,
        *,
        store: TranscriptStore,
        transport: Transport,
        model: ModelSelection | None = None,
        params: GenerationParams | None = None,
        conversation_id: str | None = None,
        s: Settings | None = None,
    ) -> None:
        self._settings: Settings = s or settings
        self.store: TranscriptStore = store
        self.transport: Transport = transport
        self.model: ModelSelection | None = model
        self.params: GenerationParams = params or GenerationParams()

        self.messages: list[ChatMessage] = []
        self.status: SessionStatus = "idle"
        self.error: str | None = None
        self.metadata: UsageReported | None = None
        self.cumulative_usage: UsageTotals = UsageTotals()
        self.was_interrupted: bool = False
        self.conversation_id: str | None = None
        if conversation_id is not None:
            self._attach(conversation_id)

        self._listeners: list[Listener] = []
        self._stop: asyncio.Event | None = None
        self._stop_requested: bool = False
        self._pump_task: asyncio.Task[None] | None = None
        self._settled: asyncio.Event = asyncio.Event()
        self._settled.set()

    # -- observation -----------------------------------------------------

    @property
    def busy(self) -> bool:
        return self.status in ("submitted", "streaming")

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def snapshot(self) -> dict[str, object]:
        return {
            "conversation_id": self.conversation_id,
            "status": self.status,
            "error": self.error,
            "was_interrupted": self.was_interrupted,
            "model": (
                {"provider": self.model.provider, "model_id": self.model.model_id}
                if self.model is not None
                else None
            ),
            "metadata": self.metadata.as_dict() if self.metadata is not None else None,
            "cumulative_usage": self.cumulative_usage.as_dict(),
            "messages": [message_to_dict(m) for m in self.messages],
        }

    async def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            await listener(snap)

    def _attach(self, conversation_id: str | None) -> None:
        self.conversation_id = conversation_id
        _ = conversation_id_ctx_var.set(conversation_id or "-")

    # -- configuration ---------------------------------------------------

    def select_model(self, model: ModelSelection, params: GenerationParams | None = None) -> None:
        self.model = model
        if params is not None:
            self.params = params

    # -- operations ------------------------------------------------------

    async def send_message(self, text: str, files: list[FileRef] | None = None) -> bool:
        """Send a user turn and stream the reply. Returns False when the send is refused."""
        if text.strip() == "" or self.model is None or self.busy:
            return False
        model = self.model
        files = files or []

        self._begin_turn()
        try:
            user = create_message(
                "user",
                text,
                [FilePart(name=f.name, format=f.format, size=_decoded_size(f.bytes)) for f in files],
            )
            self.messages.append(user)
            await self._notify()

            try:
                seq = await self._persist_user(user, text, model)
            except Exception as e:
                await self._fail_persistence(e)
                raise
            self._set_sequence(user.id, seq)

            await self._run_turn(model, tuple(files))
            return True
        finally:
            self._end_turn()

    async def regenerate(self, index: int) -> bool:
        """Drop everything after the user turn at or before `index` and generate again."""
        if self.busy or self.model is None:
            return False
        if index < 0 or index >= len(self.messages):
            return False
        model = self.model

        user_idx = next(
            (i for i in range(index, -1, -1) if self.messages[i].role == "user"), None
        )
        if user_idx is None:
            logger.warning("regenerate: no user message at or before index=%d", index)
            return False

        user = self.messages[user_idx]
        removed = self.messages[user_idx + 1 :]

        self._begin_turn()
        try:
            self.messages = self.messages[: user_idx + 1]
            await self._notify()

            from_seq: int | None = None
            if user.sequence is not None:
                from_seq = user.sequence + 1
            else:
                seqs = [m.sequence for m in removed if m.sequence is not None]
                from_seq = min(seqs) if seqs else None

            if self.conversation_id is not None and from_seq is not None:
                try:
                    _ = await asyncio.to_thread(
                        self.store.delete_messages_from_sequence, self.conversation_id, from_seq
                    )
                except Exception as e:
                    await self._fail_persistence(e)
                    raise

            # Attachment bytes are not retained, so the turn is re-sent as text only.
            await self._run_turn(model, ())
            return True
        finally:
            self._end_turn()

    async def stop_generation(self) -> None:
        if not self.busy:
            return
        self._stop_requested = True
        if self._stop is not None:
            self._stop.set()
        task = self._pump_task
        if task is not None and not task.done():
            _ = task.cancel()
        await self._settled.wait()

    async def clear_messages(self) -> None:
        await self.stop_generation()
        self.messages = []
        self.metadata = None
        self.error = None
        self.status = "idle"
        self.was_interrupted = False
        self._attach(None)
        await self._notify()

    async def reset_usage(self) -> None:
        self.cumulative_usage = UsageTotals()
        self.metadata = None
        await self._notify()

    async def load_conversation(self, conversation_id: str) -> None:
        await self.stop_generation()
        data = await asyncio.to_thread(self.store.get_with_messages, conversation_id)
        if data is None:
            raise ConversationNotFoundError(conversation_id)

        start, end = self._settings.think_start_marker, self._settings.think_end_marker
        self.messages = [
            from_persisted(
                id=m.id,
                role=m.role,
                content=m.content,
                created_at=m.created_at,
                sequence=m.sequence,
                attachments=m.attachments,
                start_marker=start,
                end_marker=end,
            )
            for m in data.messages
        ]
        self._attach(conversation_id)
        self.status = "idle"
        self.error = None
        self.metadata = None
        self.was_interrupted = False
        logger.info("conversation loaded messages=%d", len(self.messages))
        await self._notify()

    # -- turn internals --------------------------------------------------

    def _begin_turn(self) -> None:
        self.status = "submitted"
        self.error = None
        self.was_interrupted = False
        self._stop_requested = False
        self._settled.clear()

    def _end_turn(self) -> None:
        # Still busy here means the caller was cancelled outside the stream,
        # e.g. while a store write was in flight.
        if self.busy:
            self.status = "idle"
            self.was_interrupted = True
            logger.info("chat turn cancelled during persistence")
        self._settled.set()

    def _set_sequence(self, message_id: str, seq: int) -> None:
        for i, m in enumerate(self.messages):
            if m.id == message_id:
                self.messages[i] = replace(m, sequence=seq)
                return

    async def _fail_persistence(self, e: Exception) -> None:
        logger.exception("failed to persist chat message")
        self.status = "error"
        self.error = f"Failed to save message: {e}"
        await self._notify()

    async def _persist_user(
        self, user: ChatMessage, text: str, model: ModelSelection
    ) -> int:
        conversation_id = self.conversation_id
        if conversation_id is None:
            conv = await asyncio.to_thread(self.store.create_conversation)
            conversation_id = conv.id
            self._attach(conversation_id)

        data = MessageCreate(
            conversation_id=conversation_id,
            role="user",
            content=text,
            provider=model.provider,
            model_id=model.model_id,
            model_name=model.display_name,
            attachments=[
                AttachmentMeta(name=p.name, format=p.format, size_bytes=p.size or 0)
                for p in file_parts(user)
            ]
            or None,
        )
        persisted = await asyncio.to_thread(self.store.add_message, data)
        return persisted.sequence

    def _request_turns(self, files: tuple[FileRef, ...]) -> tuple[ChatTurn, ...]:
        turns: list[ChatTurn] = []
        last_user = max(
            (i for i, m in enumerate(self.messages) if m.role == "user"), default=-1
        )
        for i, m in enumerate(self.messages):
            turns.append(
                ChatTurn(
                    role=m.role,
                    content=text_content(m),
                    files=files if i == last_user else (),
                )
            )
        return tuple(turns)

    async def _run_turn(self, model: ModelSelection, files: tuple[FileRef, ...]) -> None:
        stats = _TurnStats()
        error: str | None = None
        interrupted = False
        wire = "unknown"
        normalizer: EventNormalizer | None = None

        try:
            spec = get_provider(model.provider)
            wire = spec.wire
            req = ChatRequest(
                provider=spec,
                model=model.model_id,
                turns=self._request_turns(files),
                params=self.params,
            )
            normalizer = EventNormalizer(
                spec,
                start_marker=self._settings.think_start_marker,
                end_marker=self._settings.think_end_marker,
            )

            if self._stop_requested:
                interrupted = True
            else:
                stop = asyncio.Event()
                self._stop = stop
                task = asyncio.create_task(self._pump(req, normalizer, stop, stats))
                self._pump_task = task
                await task
                interrupted = self._stop_requested
        except asyncio.CancelledError:
            interrupted = True
            if not self._stop_requested:
                # The caller itself was cancelled (e.g. the connection closed).
                if normalizer is not None:
                    self._release_held_text(normalizer, stats)
                self.status = "idle"
                self.was_interrupted = True
                raise
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning(
                "chat stream failed provider=%s model=%s: %s", model.provider, model.model_id, error
            )
        finally:
            self._stop = None
            self._pump_task = None
            usage = stats.usage
            record_chat_stream(
                labels=ChatStreamLabels(provider=model.provider, wire=wire, model=model.model_id),
                latency_ms=stats.elapsed_ms(),
                ttft_ms=stats.ttft_ms,
                output_chunks=stats.output_chunks,
                output_chars=stats.output_chars,
                interrupted=interrupted,
                error=error,
                input_tokens=usage.input_tokens if usage is not None else None,
                output_tokens=usage.output_tokens if usage is not None else None,
                total_tokens=usage.resolved_total() if usage is not None else None,
            )

        if normalizer is not None and (interrupted or error is not None):
            self._release_held_text(normalizer, stats)

        if interrupted:
            self.status = "idle"
            self.was_interrupted = True
            logger.info("chat stream interrupted chunks=%d", stats.output_chunks)
            await self._notify()
            return

        if error is not None:
            self.status = "error"
            self.error = error
            await self._notify()
            return

        await self._complete_turn(model, stats)

    async def _pump(
        self,
        req: ChatRequest,
        normalizer: EventNormalizer,
        stop: asyncio.Event,
        stats: _TurnStats,
    ) -> None:
        async with self.transport.open_stream(req, stop=stop) as chunks:
            self.status = "streaming"
            self.messages.append(create_message("assistant"))
            await self._notify()

            async for raw in iter_sse_events(chunks):
                events = normalizer.normalize(raw)
                if events:
                    self._apply_events(events, stats)
                    await self._notify()

        if stop.is_set():
            return
        self._apply_events(normalizer.finish(stats.elapsed_ms()), stats)

    def _release_held_text(self, normalizer: EventNormalizer, stats: _TurnStats) -> None:
        # A cut-off stream may end on a partial marker; keep it in the partial reply.
        if not self.messages or self.messages[-1].role != "assistant":
            return
        self._apply_events(normalizer.flush_pending(), stats)

    def _apply_events(self, events: list[CanonicalEvent], stats: _TurnStats) -> None:
        for ev in events:
            if isinstance(ev, UsageReported):
                stats.usage = ev
                continue
            if isinstance(ev, StreamEnded):
                stats.ended = True
                continue
            if isinstance(ev, (TextDelta, ReasoningDelta)):
                if stats.ttft_ms is None:
                    stats.ttft_ms = stats.elapsed_ms()
                stats.output_chunks += 1
                stats.output_chars += len(ev.text)
            self.messages[-1] = apply(self.messages[-1], ev)

    async def _complete_turn(self, model: ModelSelection, stats: _TurnStats) -> None:
        usage = stats.usage or UsageReported(latency_ms=stats.elapsed_ms())
        if usage.latency_ms is None:
            usage = replace(usage, latency_ms=stats.elapsed_ms())
        self.metadata = usage
        self.cumulative_usage = self.cumulative_usage.add(usage)

        assistant = self.messages[-1]
        if self.conversation_id is not None and assistant.role == "assistant":
            data = MessageCreate(
                conversation_id=self.conversation_id,
                role="assistant",
                content=to_db_content(
                    assistant,
                    self._settings.think_start_marker,
                    self._settings.think_end_marker,
                ),
                provider=model.provider,
                model_id=model.model_id,
                model_name=model.display_name,
                parameters=self.params.as_persisted(),
                usage=usage.as_dict() or None,
            )
            try:
                persisted = await asyncio.to_thread(self.store.add_message, data)
            except Exception as e:
                await self._fail_persistence(e)
                raise
            self._set_sequence(assistant.id, persisted.sequence)

        self.status = "idle"
        await self._notify()
