# pyright: reportMissingImports=false
# pyright: reportDeprecated=false
# pyright: reportIncompatibleVariableOverride=false
# pyright: reportUnknownVariableType=false
from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chatstream.db.base import Base


def _uuid_str() -> str:
    return str(uuid4())


class Conversation(Base):
    __tablename__: str = "conversations"
    __table_args__: tuple[object, ...] = (
        CheckConstraint("status IN ('active', 'archived')", name="ck_conversations_status"),
        CheckConstraint("message_count >= 0", name="ck_conversations_message_count_ge_0"),
        CheckConstraint(
            "total_input_tokens >= 0", name="ck_conversations_total_input_tokens_ge_0"
        ),
        CheckConstraint(
            "total_output_tokens >= 0", name="ck_conversations_total_output_tokens_ge_0"
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="New Conversation")
    status: Mapped[str] = mapped_column(String(20), index=True, nullable=False, default="active")

    message_count: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    total_input_tokens: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    total_output_tokens: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)

    # Insertion-ordered unique lists.
    providers: Mapped[list[str]] = mapped_column(JSON(), nullable=False, default=list)
    models: Mapped[list[str]] = mapped_column(JSON(), nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(), index=True, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(), index=True, default=datetime.utcnow, nullable=False
    )

    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.sequence",
    )


class Message(Base):
    __tablename__: str = "messages"
    __table_args__: tuple[object, ...] = (
        UniqueConstraint("conversation_id", "sequence", name="uq_messages_conversation_sequence"),
        CheckConstraint("sequence >= 1", name="ck_messages_sequence_ge_1"),
        CheckConstraint("role IN ('user', 'assistant', 'system')", name="ck_messages_role"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    conversation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text(), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer(), nullable=False)

    provider: Mapped[str] = mapped_column(String(50), index=True, nullable=False)
    model_id: Mapped[str] = mapped_column(String(200), nullable=False)
    model_name: Mapped[str] = mapped_column(String(200), nullable=False)

    parameters: Mapped[dict[str, object] | None] = mapped_column(JSON(), nullable=True)
    usage: Mapped[dict[str, object] | None] = mapped_column(JSON(), nullable=True)
    attachments: Mapped[list[dict[str, object]] | None] = mapped_column(JSON(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(), index=True, default=datetime.utcnow, nullable=False
    )

    conversation: Mapped[Conversation] = relationship("Conversation", back_populates="messages")
