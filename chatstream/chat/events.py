"""Provider-agnostic stream events.

Every backend stream is reduced to this union before it reaches the message
assembler. Within one stream events are totally ordered, and `UsageReported`
(at most once) followed by `StreamEnded` close it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TypeAlias


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStarted:
    id: str
    name: str
    args: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCallResult:
    id: str
    result: object = None
    is_error: bool = False


@dataclass(frozen=True)
class UsageReported:
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    latency_ms: int | None = None

    def resolved_total(self) -> int:
        if self.total_tokens is not None:
            return self.total_tokens
        return (self.input_tokens or 0) + (self.output_tokens or 0)

    def as_dict(self) -> dict[str, int]:
        out: dict[str, int] = {}
        if self.input_tokens is not None:
            out["input_tokens"] = self.input_tokens
        if self.output_tokens is not None:
            out["output_tokens"] = self.output_tokens
        if self.total_tokens is not None:
            out["total_tokens"] = self.total_tokens
        if self.latency_ms is not None:
            out["latency_ms"] = self.latency_ms
        return out


@dataclass(frozen=True)
class StreamEnded:
    pass


CanonicalEvent: TypeAlias = (
    TextDelta | ReasoningDelta | ToolCallStarted | ToolCallResult | UsageReported | StreamEnded
)
