# pyright: reportMissingImports=false
# pyright: reportUnknownArgumentType=false
# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false
# pyright: reportDeprecated=false
from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, cast

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from chatstream.chat.errors import ConversationNotFoundError
from chatstream.core.config import settings
from chatstream.db.models import Conversation, Message
from chatstream.db.session import SessionLocal


logger = logging.getLogger(__name__)

ConversationStatus = Literal["active", "archived"]
MessageRole = Literal["user", "assistant", "system"]

DEFAULT_TITLE = "New Conversation"


class AttachmentMeta(BaseModel):
    name: str
    format: str
    size_bytes: int = Field(default=0, ge=0)


class MessageCreate(BaseModel):
    conversation_id: str
    role: MessageRole
    content: str
    provider: str
    model_id: str
    model_name: str
    sequence: int | None = Field(default=None, ge=1)
    parameters: dict[str, object] | None = None
    usage: dict[str, int] | None = None
    attachments: list[AttachmentMeta] | None = None


class PersistedMessage(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    role: MessageRole
    content: str
    sequence: int
    created_at: datetime
    provider: str
    model_id: str
    model_name: str
    parameters: dict[str, object] | None = None
    usage: dict[str, object] | None = None
    attachments: list[dict[str, object]] | None = None


class ConversationRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    status: ConversationStatus
    message_count: int
    total_input_tokens: int
    total_output_tokens: int
    providers: list[str]
    models: list[str]
    created_at: datetime
    updated_at: datetime


class ConversationWithMessages(BaseModel):
    conversation: ConversationRecord
    messages: list[PersistedMessage]


class ConversationStats(BaseModel):
    total_conversations: int
    active_conversations: int
    total_messages: int
    provider_breakdown: dict[str, int]


_WS_RE = re.compile(r"\s+")


def generate_title(content: str, max_length: int = 50) -> str:
    cleaned = _WS_RE.sub(" ", content.strip())
    if len(cleaned) <= max_length:
        return cleaned
    return cleaned[: max_length - 3] + "..."


def _usage_int(usage: dict[str, int] | None, key: str) -> int:
    if not usage:
        return 0
    v = usage.get(key)
    return v if isinstance(v, int) and v > 0 else 0


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class TranscriptStore:
    """Durable conversations and messages.

    Methods are synchronous and open a short-lived session each; async callers
    run them through `asyncio.to_thread`. Writes for one conversation are
    serialized on a per-conversation lock so sequence allocation cannot race.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        title_max_length: int | None = None,
    ) -> None:
        self._session_factory: Callable[[], Session] = session_factory
        self._title_max_length: int = title_max_length or settings.conversation_title_max_length
        self._locks: dict[str, _LockEntry] = {}
        self._locks_guard: threading.Lock = threading.Lock()

    @contextmanager
    def _locked(self, conversation_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(conversation_id)
            if entry is None:
                entry = _LockEntry()
                self._locks[conversation_id] = entry
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            # Entries live only while a writer holds or waits on them.
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[conversation_id]

    # -- conversations ---------------------------------------------------

    def create_conversation(self, title: str | None = None) -> ConversationRecord:
        now = datetime.utcnow()
        with self._session_factory() as db, db.begin():
            conv = Conversation(
                title=(title or "").strip() or DEFAULT_TITLE,
                status="active",
                message_count=0,
                total_input_tokens=0,
                total_output_tokens=0,
                providers=[],
                models=[],
                created_at=now,
                updated_at=now,
            )
            db.add(conv)
            db.flush()
            out = ConversationRecord.model_validate(conv)
        logger.info("conversation created id=%s", out.id)
        return out

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._session_factory() as db:
            conv = db.get(Conversation, conversation_id)
            return ConversationRecord.model_validate(conv) if conv is not None else None

    def list_conversations(
        self,
        *,
        status: ConversationStatus = "active",
        limit: int | None = None,
        offset: int = 0,
    ) -> list[ConversationRecord]:
        lim = limit if limit is not None else settings.conversation_list_default_limit
        stmt = (
            select(Conversation)
            .where(Conversation.status == status)
            .order_by(Conversation.updated_at.desc(), Conversation.created_at.desc())
            .offset(max(0, offset))
            .limit(max(0, lim))
        )
        with self._session_factory() as db:
            rows = db.execute(stmt).scalars().all()
            return [ConversationRecord.model_validate(c) for c in rows]

    def update_conversation(
        self,
        conversation_id: str,
        *,
        title: str | None = None,
        status: ConversationStatus | None = None,
    ) -> ConversationRecord:
        with self._locked(conversation_id):
            with self._session_factory() as db, db.begin():
                conv = db.get(Conversation, conversation_id)
                if conv is None:
                    raise ConversationNotFoundError(conversation_id)
                if title is not None:
                    conv.title = title.strip() or DEFAULT_TITLE
                if status is not None:
                    conv.status = status
                conv.updated_at = datetime.utcnow()
                db.flush()
                return ConversationRecord.model_validate(conv)

    def archive(self, conversation_id: str) -> ConversationRecord:
        return self.update_conversation(conversation_id, status="archived")

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._locked(conversation_id):
            with self._session_factory() as db, db.begin():
                conv = db.get(Conversation, conversation_id)
                if conv is None:
                    return False
                _ = db.execute(delete(Message).where(Message.conversation_id == conversation_id))
                db.delete(conv)
        logger.info("conversation deleted id=%s", conversation_id)
        return True

    def clear_all(self) -> None:
        with self._session_factory() as db, db.begin():
            _ = db.execute(delete(Message))
            _ = db.execute(delete(Conversation))
        logger.info("all conversations cleared")

    def get_stats(self) -> ConversationStats:
        with self._session_factory() as db:
            total = db.execute(select(func.count()).select_from(Conversation)).scalar_one()
            active = db.execute(
                select(func.count()).select_from(Conversation).where(Conversation.status == "active")
            ).scalar_one()
            total_messages = db.execute(select(func.count()).select_from(Message)).scalar_one()
            rows = db.execute(
                select(Message.provider, func.count()).group_by(Message.provider)
            ).tuples().all()
        return ConversationStats(
            total_conversations=int(total),
            active_conversations=int(active),
            total_messages=int(total_messages),
            provider_breakdown={str(p): int(n) for (p, n) in rows},
        )

    # -- messages --------------------------------------------------------

    @staticmethod
    def _max_sequence(db: Session, conversation_id: str) -> int:
        v = db.execute(
            select(func.max(Message.sequence)).where(Message.conversation_id == conversation_id)
        ).scalar_one_or_none()
        return int(v) if v is not None else 0

    def next_sequence(self, conversation_id: str) -> int:
        with self._session_factory() as db:
            return self._max_sequence(db, conversation_id) + 1

    def add_message(self, data: MessageCreate) -> PersistedMessage:
        """Persist one message and roll its side effects into the conversation.

        Sequence allocation (when `data.sequence` is None), the message row and
        the conversation counters, title, provider/model lists and token totals
        are written in one transaction.
        """
        cid = data.conversation_id
        with self._locked(cid):
            with self._session_factory() as db, db.begin():
                conv = db.get(Conversation, cid)
                if conv is None:
                    raise ConversationNotFoundError(cid)

                seq = data.sequence or self._max_sequence(db, cid) + 1
                now = datetime.utcnow()
                msg = Message(
                    conversation_id=cid,
                    role=data.role,
                    content=data.content,
                    sequence=seq,
                    provider=data.provider,
                    model_id=data.model_id,
                    model_name=data.model_name,
                    parameters=data.parameters,
                    usage=cast(dict[str, object] | None, data.usage),
                    attachments=(
                        [a.model_dump() for a in data.attachments] if data.attachments else None
                    ),
                    created_at=now,
                )
                db.add(msg)

                if conv.message_count == 0 and data.role == "user":
                    title = generate_title(data.content, self._title_max_length)
                    if title:
                        conv.title = title
                conv.message_count = conv.message_count + 1
                # JSON columns are not mutation-tracked; assign new lists.
                if data.provider not in conv.providers:
                    conv.providers = [*conv.providers, data.provider]
                if data.model_id not in conv.models:
                    conv.models = [*conv.models, data.model_id]
                conv.total_input_tokens = conv.total_input_tokens + _usage_int(
                    data.usage, "input_tokens"
                )
                conv.total_output_tokens = conv.total_output_tokens + _usage_int(
                    data.usage, "output_tokens"
                )
                conv.updated_at = now

                db.flush()
                out = PersistedMessage.model_validate(msg)

        logger.debug("message persisted conversation=%s sequence=%d role=%s", cid, seq, data.role)
        return out

    def get_messages(
        self, conversation_id: str, *, limit: int | None = None, offset: int = 0
    ) -> list[PersistedMessage]:
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.sequence.asc())
            .offset(max(0, offset))
        )
        if limit:
            stmt = stmt.limit(limit)
        with self._session_factory() as db:
            rows = db.execute(stmt).scalars().all()
            return [PersistedMessage.model_validate(m) for m in rows]

    def delete_messages_from_sequence(self, conversation_id: str, from_sequence: int) -> int:
        """Delete every message with sequence >= `from_sequence`; returns the count.

        Conversation token totals are left untouched.
        """
        with self._locked(conversation_id):
            with self._session_factory() as db, db.begin():
                where = (Message.conversation_id == conversation_id, Message.sequence >= from_sequence)
                count = db.execute(
                    select(func.count()).select_from(Message).where(*where)
                ).scalar_one()
                if count == 0:
                    return 0
                _ = db.execute(delete(Message).where(*where))
                conv = db.get(Conversation, conversation_id)
                if conv is not None:
                    conv.message_count = max(0, conv.message_count - int(count))
                    conv.updated_at = datetime.utcnow()
        logger.info(
            "messages deleted conversation=%s from_sequence=%d count=%d",
            conversation_id,
            from_sequence,
            count,
        )
        return int(count)

    def get_with_messages(self, conversation_id: str) -> ConversationWithMessages | None:
        conv = self.get_conversation(conversation_id)
        if conv is None:
            return None
        return ConversationWithMessages(conversation=conv, messages=self.get_messages(conversation_id))
