"""Map raw provider stream objects onto canonical events.

One `EventNormalizer` per active stream. There is one mapping function per wire
shape; provider differences beyond the wire shape come from `ProviderSpec`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import cast

from chatstream.chat.events import (
    CanonicalEvent,
    ReasoningDelta,
    StreamEnded,
    TextDelta,
    ToolCallResult,
    ToolCallStarted,
    UsageReported,
)
from chatstream.chat.providers import ProviderSpec
from chatstream.chat.think_tags import ExtractResult, ThinkTagExtractor


logger = logging.getLogger(__name__)


@dataclass
class _UsageCapture:
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    latency_ms: int | None = None
    seen: bool = False


@dataclass
class _ToolFragment:
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class _ToolLedger:
    started: set[str] = field(default_factory=set)
    finished: set[str] = field(default_factory=set)


def _as_dict(v: object) -> dict[str, object] | None:
    if isinstance(v, dict):
        return cast(dict[str, object], v)
    return None


def _non_neg_int(v: object) -> int | None:
    if isinstance(v, bool):
        return None
    if isinstance(v, int) and v >= 0:
        return v
    if isinstance(v, float) and v >= 0 and v.is_integer():
        return int(v)
    return None


def _first_int(d: dict[str, object], *keys: str) -> int | None:
    for k in keys:
        n = _non_neg_int(d.get(k))
        if n is not None:
            return n
    return None


def _parse_tool_args(raw: object) -> dict[str, object]:
    if isinstance(raw, dict):
        return cast(dict[str, object], raw)
    if not isinstance(raw, str) or raw.strip() == "":
        return {}
    try:
        parsed = cast(object, json.loads(raw))
    except ValueError:
        return {"arguments": raw}
    if isinstance(parsed, dict):
        return cast(dict[str, object], parsed)
    return {"arguments": parsed}


class EventNormalizer:
    def __init__(
        self,
        provider: ProviderSpec,
        *,
        start_marker: str = "<think>",
        end_marker: str = "</think>",
    ) -> None:
        self.provider: ProviderSpec = provider
        self._extractor: ThinkTagExtractor | None = (
            ThinkTagExtractor(start_marker, end_marker) if provider.inline_markers else None
        )
        self._usage: _UsageCapture = _UsageCapture()
        self._tools: _ToolLedger = _ToolLedger()
        # chat_completions streams tool calls as fragments keyed by index.
        self._fragments: dict[int, _ToolFragment] = {}
        self._ended: bool = False

    @property
    def ended(self) -> bool:
        return self._ended

    def normalize(self, raw: dict[str, object]) -> list[CanonicalEvent]:
        if self._ended:
            return []
        wire = self.provider.wire
        if wire == "proxy":
            return self._from_proxy(raw)
        if wire == "chat_completions":
            return self._from_chat_completions(raw)
        return self._from_responses(raw)

    def flush_pending(self) -> list[CanonicalEvent]:
        """Release text the marker extractor is holding back, without ending the stream."""
        if self._ended or self._extractor is None:
            return []
        return self._segments(self._extractor.flush())

    def finish(self, latency_ms: int | None = None) -> list[CanonicalEvent]:
        """Close the stream: pending text, at most one usage event, then `StreamEnded`."""
        if self._ended:
            return []
        out = self.flush_pending()
        out.extend(self._drain_fragments())

        u = self._usage
        if u.seen:
            out.append(
                UsageReported(
                    input_tokens=u.input_tokens,
                    output_tokens=u.output_tokens,
                    total_tokens=u.total_tokens,
                    latency_ms=u.latency_ms if u.latency_ms is not None else latency_ms,
                )
            )
        out.append(StreamEnded())
        self._ended = True
        return out

    # -- shared helpers -------------------------------------------------

    def _content(self, text: str) -> list[CanonicalEvent]:
        if text == "":
            return []
        if self._extractor is None:
            return [TextDelta(text)]
        return self._segments(self._extractor.feed(text))

    def _reasoning(self, text: object) -> list[CanonicalEvent]:
        if not self.provider.structured_reasoning:
            return []
        if isinstance(text, str) and text != "":
            return [ReasoningDelta(text)]
        return []

    @staticmethod
    def _segments(res: ExtractResult) -> list[CanonicalEvent]:
        out: list[CanonicalEvent] = []
        for kind, s in res.segments:
            out.append(ReasoningDelta(s) if kind == "reasoning" else TextDelta(s))
        return out

    def _tool_started(self, call_id: str, name: str, args: object) -> list[CanonicalEvent]:
        if call_id == "" or call_id in self._tools.started:
            return []
        self._tools.started.add(call_id)
        return [ToolCallStarted(id=call_id, name=name, args=_parse_tool_args(args))]

    def _tool_result(self, call_id: str, result: object, is_error: bool) -> list[CanonicalEvent]:
        if call_id not in self._tools.started or call_id in self._tools.finished:
            logger.debug("dropping tool result for unknown or finished call id=%s", call_id)
            return []
        self._tools.finished.add(call_id)
        return [ToolCallResult(id=call_id, result=result, is_error=is_error)]

    def _capture_usage(self, usage: dict[str, object]) -> None:
        u = self._usage
        inp = _first_int(usage, "prompt_tokens", "input_tokens", "inputTokens")
        outp = _first_int(usage, "completion_tokens", "output_tokens", "outputTokens")
        total = _first_int(usage, "total_tokens", "totalTokens")
        if total is None and inp is not None and outp is not None:
            total = int(inp + outp)

        if inp is not None:
            u.input_tokens = inp
        if outp is not None:
            u.output_tokens = outp
        if total is not None:
            u.total_tokens = total
        if inp is not None or outp is not None or total is not None:
            u.seen = True

    def _capture_latency(self, v: object) -> None:
        n = _non_neg_int(v)
        if n is not None:
            self._usage.latency_ms = n

    # -- proxy ----------------------------------------------------------

    def _from_proxy(self, raw: dict[str, object]) -> list[CanonicalEvent]:
        out: list[CanonicalEvent] = []

        content = raw.get("content")
        if isinstance(content, str):
            out.extend(self._content(content))

        out.extend(self._reasoning(raw.get("reasoning")))

        call = _as_dict(raw.get("toolCall"))
        if call is not None:
            call_id = call.get("id")
            name = call.get("name")
            if isinstance(call_id, str) and isinstance(name, str):
                out.extend(self._tool_started(call_id, name, call.get("args")))

        res = _as_dict(raw.get("toolResult"))
        if res is not None:
            call_id = res.get("id")
            if isinstance(call_id, str):
                is_error = res.get("isError") is True or "error" in res
                result = res.get("error") if "error" in res else res.get("result")
                out.extend(self._tool_result(call_id, result, is_error))

        meta = _as_dict(raw.get("metadata"))
        if meta is not None:
            usage = _as_dict(meta.get("usage"))
            if usage is not None:
                self._capture_usage(usage)
            self._capture_latency(meta.get("latencyMs"))
            metrics = _as_dict(meta.get("metrics"))
            if metrics is not None:
                self._capture_latency(metrics.get("latencyMs"))

        return out

    # -- chat_completions -----------------------------------------------

    def _from_chat_completions(self, raw: dict[str, object]) -> list[CanonicalEvent]:
        out: list[CanonicalEvent] = []

        usage = _as_dict(raw.get("usage"))
        if usage is not None:
            self._capture_usage(usage)

        choices = raw.get("choices")
        if not isinstance(choices, list) or not choices:
            return out
        c0 = _as_dict(cast(object, choices[0]))
        if c0 is None:
            return out

        delta = _as_dict(c0.get("delta"))
        if delta is not None:
            # Field name varies by model family.
            out.extend(self._reasoning(delta.get("reasoning")))
            out.extend(self._reasoning(delta.get("reasoning_content")))

            content = delta.get("content")
            if isinstance(content, str):
                out.extend(self._content(content))

            self._collect_fragments(delta.get("tool_calls"))

        finish_reason = c0.get("finish_reason")
        if isinstance(finish_reason, str) and finish_reason != "":
            out.extend(self._drain_fragments())
        return out

    def _collect_fragments(self, calls: object) -> None:
        if not isinstance(calls, list):
            return
        for item in cast(list[object], calls):
            d = _as_dict(item)
            if d is None:
                continue
            idx = _non_neg_int(d.get("index"))
            frag = self._fragments.setdefault(idx if idx is not None else 0, _ToolFragment())
            call_id = d.get("id")
            if isinstance(call_id, str) and call_id:
                frag.id = call_id
            fn = _as_dict(d.get("function"))
            if fn is None:
                continue
            name = fn.get("name")
            if isinstance(name, str) and name:
                frag.name = name
            args = fn.get("arguments")
            if isinstance(args, str):
                frag.arguments += args

    def _drain_fragments(self) -> list[CanonicalEvent]:
        out: list[CanonicalEvent] = []
        for idx in sorted(self._fragments):
            frag = self._fragments[idx]
            call_id = frag.id or f"call_{idx}"
            out.extend(self._tool_started(call_id, frag.name, frag.arguments))
        self._fragments.clear()
        return out

    # -- responses ------------------------------------------------------

    def _from_responses(self, raw: dict[str, object]) -> list[CanonicalEvent]:
        typ = raw.get("type")
        if not isinstance(typ, str):
            return []

        if typ == "response.output_text.delta":
            delta = raw.get("delta")
            return self._content(delta) if isinstance(delta, str) else []

        if typ in ("response.reasoning_text.delta", "response.reasoning_summary_text.delta"):
            return self._reasoning(raw.get("delta"))

        if typ in ("response.output_item.added", "response.output_item.done"):
            item = _as_dict(raw.get("item"))
            if item is None:
                return []
            return self._responses_item(item, done=typ.endswith(".done"))

        if typ in ("response.completed", "response.incomplete"):
            resp = _as_dict(raw.get("response"))
            usage = _as_dict(resp.get("usage")) if resp is not None else None
            if usage is not None:
                self._capture_usage(usage)
            return []

        if typ in ("error", "response.failed"):
            logger.warning("provider reported a stream error event type=%s", typ)
        return []

    def _responses_item(self, item: dict[str, object], *, done: bool) -> list[CanonicalEvent]:
        kind = item.get("type")
        item_id = item.get("id")

        if kind == "function_call" and done:
            call_id = item.get("call_id") or item_id
            name = item.get("name")
            if isinstance(call_id, str) and isinstance(name, str):
                return self._tool_started(call_id, name, item.get("arguments"))
            return []

        if kind == "web_search_call" and isinstance(item_id, str):
            action = _as_dict(item.get("action")) or {}
            query = action.get("query")
            out = self._tool_started(
                item_id, "web_search", {"query": query} if isinstance(query, str) else {}
            )
            if done:
                status = item.get("status")
                out.extend(self._tool_result(item_id, {"status": status}, status == "failed"))
            return out

        return []
