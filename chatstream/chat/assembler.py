"""Fold canonical events into an immutable chat message.

`apply` is pure: it returns a new `ChatMessage` and never mutates its input.
Parts are kept bucketed by kind and re-linearized as attachments, reasoning,
tool calls, then text. Within a kind, arrival order is preserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Literal, TypeAlias
from uuid import uuid4

from chatstream.chat.events import (
    CanonicalEvent,
    ReasoningDelta,
    TextDelta,
    ToolCallResult,
    ToolCallStarted,
)
from chatstream.chat.think_tags import split_reasoning, wrap_reasoning


MessageRole = Literal["user", "assistant", "system"]
ToolStatus = Literal["pending", "complete", "error"]


@dataclass(frozen=True)
class TextPart:
    text: str
    kind: Literal["text"] = "text"


@dataclass(frozen=True)
class ReasoningPart:
    text: str
    kind: Literal["reasoning"] = "reasoning"


@dataclass(frozen=True)
class ToolCallPart:
    id: str
    name: str
    args: dict[str, object] = field(default_factory=dict)
    status: ToolStatus = "pending"
    result: object = None
    kind: Literal["tool_call"] = "tool_call"


@dataclass(frozen=True)
class FilePart:
    name: str
    format: str
    size: int | None = None
    kind: Literal["file"] = "file"


MessagePart: TypeAlias = TextPart | ReasoningPart | ToolCallPart | FilePart


@dataclass(frozen=True)
class ChatMessage:
    id: str
    role: MessageRole
    parts: tuple[MessagePart, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # Persisted row sequence; None until written to the transcript store.
    sequence: int | None = None


def _new_id() -> str:
    return str(uuid4())


def create_message(
    role: MessageRole,
    text: str = "",
    files: list[FilePart] | tuple[FilePart, ...] | None = None,
) -> ChatMessage:
    parts: list[MessagePart] = list(files or ())
    if text:
        parts.append(TextPart(text))
    return ChatMessage(id=_new_id(), role=role, parts=tuple(parts))


def _linearize(parts: list[MessagePart]) -> tuple[MessagePart, ...]:
    reasoning = [p for p in parts if isinstance(p, ReasoningPart)]
    tools = [p for p in parts if isinstance(p, ToolCallPart)]
    files = [p for p in parts if isinstance(p, FilePart)]
    text = [p for p in parts if isinstance(p, TextPart)]
    return (*files, *reasoning, *tools, *text)


def _extend(parts: list[MessagePart], kind: type[TextPart] | type[ReasoningPart], s: str) -> None:
    for i, p in enumerate(parts):
        if isinstance(p, kind):
            parts[i] = kind(p.text + s)
            return
    parts.append(kind(s))


def apply(message: ChatMessage, event: CanonicalEvent) -> ChatMessage:
    """Return `message` with `event` folded in; events without content are no-ops."""
    parts = list(message.parts)

    if isinstance(event, TextDelta):
        if event.text == "":
            return message
        _extend(parts, TextPart, event.text)
    elif isinstance(event, ReasoningDelta):
        if event.text == "":
            return message
        _extend(parts, ReasoningPart, event.text)
    elif isinstance(event, ToolCallStarted):
        if any(isinstance(p, ToolCallPart) and p.id == event.id for p in parts):
            return message
        parts.append(ToolCallPart(id=event.id, name=event.name, args=dict(event.args)))
    elif isinstance(event, ToolCallResult):
        for i, p in enumerate(parts):
            if isinstance(p, ToolCallPart) and p.id == event.id:
                if p.status != "pending":
                    return message
                parts[i] = replace(
                    p, status="error" if event.is_error else "complete", result=event.result
                )
                break
        else:
            return message
    else:
        return message

    return replace(message, parts=_linearize(parts))


def text_content(message: ChatMessage) -> str:
    return "".join(p.text for p in message.parts if isinstance(p, TextPart))


def reasoning_content(message: ChatMessage) -> str | None:
    out = "".join(p.text for p in message.parts if isinstance(p, ReasoningPart))
    return out or None


def file_parts(message: ChatMessage) -> list[FilePart]:
    return [p for p in message.parts if isinstance(p, FilePart)]


def to_db_content(
    message: ChatMessage, start_marker: str = "<think>", end_marker: str = "</think>"
) -> str:
    return wrap_reasoning(
        reasoning_content(message), text_content(message), start_marker, end_marker
    )


def from_persisted(
    *,
    id: str,
    role: MessageRole,
    content: str,
    created_at: datetime,
    sequence: int | None = None,
    attachments: list[dict[str, object]] | None = None,
    start_marker: str = "<think>",
    end_marker: str = "</think>",
) -> ChatMessage:
    parts: list[MessagePart] = []
    for a in attachments or []:
        name = a.get("name")
        fmt = a.get("format")
        size = a.get("size_bytes", a.get("size"))
        if isinstance(name, str) and isinstance(fmt, str):
            parts.append(FilePart(name=name, format=fmt, size=size if isinstance(size, int) else None))

    if role == "assistant":
        reasoning, main = split_reasoning(content, start_marker, end_marker)
        if reasoning:
            parts.append(ReasoningPart(reasoning))
        if main:
            parts.append(TextPart(main))
    elif content:
        parts.append(TextPart(content))

    return ChatMessage(
        id=id,
        role=role,
        parts=_linearize(parts),
        created_at=created_at,
        sequence=sequence,
    )


def part_to_dict(p: MessagePart) -> dict[str, object]:
    if isinstance(p, ToolCallPart):
        return {
            "type": p.kind,
            "id": p.id,
            "name": p.name,
            "args": p.args,
            "status": p.status,
            "result": p.result,
        }
    if isinstance(p, FilePart):
        return {"type": p.kind, "name": p.name, "format": p.format, "size": p.size}
    return {"type": p.kind, "text": p.text}


def message_to_dict(m: ChatMessage) -> dict[str, object]:
    return {
        "id": m.id,
        "role": m.role,
        "sequence": m.sequence,
        "created_at": m.created_at.isoformat(),
        "parts": [part_to_dict(p) for p in m.parts],
    }
