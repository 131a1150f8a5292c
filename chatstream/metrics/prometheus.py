# pyright: reportMissingImports=false
# pyright: reportUnknownMemberType=false
from __future__ import annotations

from dataclasses import dataclass

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, Counter, Histogram, generate_latest


@dataclass(frozen=True)
class ChatStreamLabels:
    provider: str
    wire: str
    model: str


_LABELS = ("provider", "wire", "model")

_STREAMS = Counter(
    "chatstream_streams_total",
    "Chat generations started.",
    labelnames=_LABELS,
)
_ERRORS = Counter(
    "chatstream_stream_errors_total",
    "Chat generations that ended in the error state.",
    labelnames=_LABELS,
)
_INTERRUPTED = Counter(
    "chatstream_stream_interrupted_total",
    "Chat generations stopped by the user or a closed connection.",
    labelnames=_LABELS,
)

_LATENCY = Histogram(
    "chatstream_stream_latency_seconds",
    "Wall-clock time from request to end of stream.",
    labelnames=_LABELS,
)
_TTFT = Histogram(
    "chatstream_stream_ttft_seconds",
    "Time to the first text or reasoning delta.",
    labelnames=_LABELS,
)

_OUT_CHUNKS = Counter(
    "chatstream_stream_output_chunks_total",
    "Text and reasoning deltas received.",
    labelnames=_LABELS,
)
_OUT_CHARS = Counter(
    "chatstream_stream_output_chars_total",
    "Characters of text and reasoning received.",
    labelnames=_LABELS,
)

_TOK_INPUT = Counter(
    "chatstream_input_tokens_total",
    "Input tokens reported by providers.",
    labelnames=_LABELS,
)
_TOK_OUTPUT = Counter(
    "chatstream_output_tokens_total",
    "Output tokens reported by providers.",
    labelnames=_LABELS,
)
_TOK_TOTAL = Counter(
    "chatstream_total_tokens_total",
    "Total tokens reported by providers.",
    labelnames=_LABELS,
)


def record_chat_stream(
    *,
    labels: ChatStreamLabels,
    latency_ms: int,
    ttft_ms: int | None,
    output_chunks: int,
    output_chars: int,
    interrupted: bool,
    error: str | None,
    input_tokens: int | None,
    output_tokens: int | None,
    total_tokens: int | None,
) -> None:
    l = (labels.provider, labels.wire, labels.model)

    _STREAMS.labels(*l).inc()
    if error:
        _ERRORS.labels(*l).inc()
    if interrupted:
        _INTERRUPTED.labels(*l).inc()

    if latency_ms >= 0:
        _LATENCY.labels(*l).observe(latency_ms / 1000.0)
    if ttft_ms is not None and ttft_ms >= 0:
        _TTFT.labels(*l).observe(ttft_ms / 1000.0)

    if output_chunks > 0:
        _OUT_CHUNKS.labels(*l).inc(output_chunks)
    if output_chars > 0:
        _OUT_CHARS.labels(*l).inc(output_chars)

    if input_tokens:
        _TOK_INPUT.labels(*l).inc(input_tokens)
    if output_tokens:
        _TOK_OUTPUT.labels(*l).inc(output_tokens)
    if total_tokens:
        _TOK_TOTAL.labels(*l).inc(total_tokens)


def metrics_payload() -> tuple[bytes, str]:
    return generate_latest(REGISTRY), str(CONTENT_TYPE_LATEST)
