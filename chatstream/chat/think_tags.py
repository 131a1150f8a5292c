"""Inline reasoning markers (`<think>...</think>`) embedded in plain content.

Some backends only have a single content field and put the model's reasoning
inside it between a start and an end marker. `ThinkTagExtractor` splits such a
stream into reasoning and visible text as increments arrive.

The extractor is a two-state machine (outside / inside a marker block). Markers
are always searched for in the cumulative buffer, never in a single increment,
so a marker split across chunk boundaries is still recognised. Text that could
be the beginning of a marker is held back until the next increment decides it;
`flush()` releases whatever is still held when the stream ends.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal


SegmentKind = Literal["text", "reasoning"]


@dataclass(frozen=True)
class ExtractResult:
    # Ordered as they appeared in the stream; adjacent segments never share a kind.
    segments: tuple[tuple[SegmentKind, str], ...] = ()

    @property
    def text_delta(self) -> str | None:
        out = "".join(s for kind, s in self.segments if kind == "text")
        return out or None

    @property
    def reasoning_delta(self) -> str | None:
        out = "".join(s for kind, s in self.segments if kind == "reasoning")
        return out or None

    def __bool__(self) -> bool:
        return bool(self.segments)


@dataclass
class MarkerState:
    buffer: str = ""
    inside: bool = False
    reasoning_sent: int = 0
    content_sent: int = 0


def _partial_suffix_len(buf: str, marker: str) -> int:
    """Length of the longest suffix of `buf` that is a proper prefix of `marker`."""
    for k in range(min(len(buf), len(marker) - 1), 0, -1):
        if buf.endswith(marker[:k]):
            return k
    return 0


class ThinkTagExtractor:
    def __init__(self, start: str = "<think>", end: str = "</think>") -> None:
        if not start or not end:
            raise ValueError("markers must be non-empty")
        if start == end:
            raise ValueError("start and end markers must differ")
        self.start: str = start
        self.end: str = end
        self.state: MarkerState = MarkerState()
        self._segments: list[tuple[SegmentKind, str]] = []

    def feed(self, increment: str) -> ExtractResult:
        st = self.state
        st.buffer += increment

        while True:
            if not st.inside:
                idx = st.buffer.find(self.start)
                if idx < 0:
                    self._emit("text", len(st.buffer) - _partial_suffix_len(st.buffer, self.start))
                    break
                self._emit("text", idx)
                st.buffer = st.buffer[idx + len(self.start) :]
                st.inside = True
                st.content_sent = 0
                st.reasoning_sent = 0

            idx = st.buffer.find(self.end)
            if idx < 0:
                self._emit("reasoning", len(st.buffer) - _partial_suffix_len(st.buffer, self.end))
                break
            self._emit("reasoning", idx)
            # Content after the end marker becomes the new buffer and is scanned
            # in the same call, so it is flushed together with this increment.
            st.buffer = st.buffer[idx + len(self.end) :]
            st.inside = False
            st.content_sent = 0
            st.reasoning_sent = 0

        self._compact()
        return self._take()

    def flush(self) -> ExtractResult:
        """Emit everything still buffered. An unclosed block stays reasoning."""
        st = self.state
        self._emit("reasoning" if st.inside else "text", len(st.buffer))
        self.state = MarkerState()
        return self._take()

    def _emit(self, kind: SegmentKind, upto: int) -> None:
        st = self.state
        sent = st.reasoning_sent if kind == "reasoning" else st.content_sent
        if upto <= sent:
            return
        chunk = st.buffer[sent:upto]
        if kind == "reasoning":
            st.reasoning_sent = upto
        else:
            st.content_sent = upto
        if self._segments and self._segments[-1][0] == kind:
            self._segments[-1] = (kind, self._segments[-1][1] + chunk)
        else:
            self._segments.append((kind, chunk))

    def _compact(self) -> None:
        # Emitted text can never become part of a later marker match.
        st = self.state
        sent = st.reasoning_sent if st.inside else st.content_sent
        if sent:
            st.buffer = st.buffer[sent:]
            st.reasoning_sent = 0
            st.content_sent = 0

    def _take(self) -> ExtractResult:
        out = ExtractResult(tuple(self._segments))
        self._segments = []
        return out


def split_reasoning(
    content: str, start: str = "<think>", end: str = "</think>"
) -> tuple[str | None, str]:
    """Split persisted content into (reasoning, visible text).

    Only the first marker block is treated as reasoning.
    """
    pattern = re.compile(re.escape(start) + r"(.*?)" + re.escape(end), re.DOTALL)
    m = pattern.search(content)
    if m is None:
        return None, content
    reasoning = m.group(1).strip()
    main = (content[: m.start()] + content[m.end() :]).strip()
    return (reasoning or None), main


def wrap_reasoning(
    reasoning: str | None, text: str, start: str = "<think>", end: str = "</think>"
) -> str:
    """Inverse of `split_reasoning`: reasoning block, newline, then text."""
    out = ""
    if reasoning:
        out += f"{start}{reasoning}{end}\n"
    out += text
    return out.strip()
