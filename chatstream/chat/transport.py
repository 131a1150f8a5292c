from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

import httpx

from chatstream.chat.errors import ChatError, StreamOpenError
from chatstream.chat.providers import ChatRequest, WireShape, build_request_body, endpoint_url
from chatstream.chat.sse import stream_open_error
from chatstream.core.config import Settings, settings


class Transport(Protocol):
    def open_stream(
        self, req: ChatRequest, *, stop: asyncio.Event
    ) -> AbstractAsyncContextManager[AsyncIterator[bytes]]: ...


async def _until_stopped(chunks: AsyncIterator[bytes], stop: asyncio.Event) -> AsyncIterator[bytes]:
    async for chunk in chunks:
        if stop.is_set():
            return
        yield chunk


class HttpxTransport:
    """POST the request as JSON and expose the SSE response body as raw bytes.

    The response is released when the `async with` block exits, whether the
    stream finished, failed or was cancelled.
    """

    def __init__(self, s: Settings | None = None) -> None:
        self._settings: Settings = s or settings

    def _timeout(self) -> httpx.Timeout:
        total = self._settings.chat_timeout_seconds
        connect = min(self._settings.chat_connect_timeout_seconds, total)
        return httpx.Timeout(total, connect=connect)

    @asynccontextmanager
    async def open_stream(
        self, req: ChatRequest, *, stop: asyncio.Event
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        url = endpoint_url(req.provider, self._settings)
        payload = build_request_body(req)
        headers = {"Accept": "text/event-stream", "Content-Type": "application/json"}

        opened = False
        async with httpx.AsyncClient(timeout=self._timeout(), trust_env=False) as client:
            try:
                async with client.stream("POST", url, headers=headers, json=payload) as resp:
                    if resp.status_code < 200 or resp.status_code >= 300:
                        raise stream_open_error(resp.status_code, await resp.aread())
                    opened = True
                    yield _until_stopped(resp.aiter_bytes(), stop)
            except httpx.HTTPError as e:
                detail = str(e) or type(e).__name__
                if opened:
                    raise ChatError(f"stream interrupted: {detail}") from e
                raise StreamOpenError(f"failed to reach provider: {detail}") from e


def _sse(obj: object) -> bytes:
    return f"data: {json.dumps(obj, ensure_ascii=False)}\n\n".encode("utf-8")


def fake_frames(wire: WireShape, reply: str, *, input_tokens: int) -> list[bytes]:
    """SSE frames in the given wire shape that stream `reply` char by char."""
    output_tokens = len(reply)
    total = input_tokens + output_tokens
    if wire == "proxy":
        frames = [_sse({"content": ch}) for ch in reply]
        frames.append(
            _sse(
                {
                    "metadata": {
                        "usage": {
                            "inputTokens": input_tokens,
                            "outputTokens": output_tokens,
                            "totalTokens": total,
                        },
                        "latencyMs": 0,
                    }
                }
            )
        )
    elif wire == "chat_completions":
        frames = [_sse({"choices": [{"delta": {"content": ch}}]}) for ch in reply]
        frames.append(_sse({"choices": [{"delta": {}, "finish_reason": "stop"}]}))
        frames.append(
            _sse(
                {
                    "choices": [],
                    "usage": {
                        "prompt_tokens": input_tokens,
                        "completion_tokens": output_tokens,
                        "total_tokens": total,
                    },
                }
            )
        )
    else:
        frames = [_sse({"type": "response.output_text.delta", "delta": ch}) for ch in reply]
        frames.append(
            _sse(
                {
                    "type": "response.completed",
                    "response": {
                        "usage": {
                            "input_tokens": input_tokens,
                            "output_tokens": output_tokens,
                            "total_tokens": total,
                        }
                    },
                }
            )
        )
    frames.append(b"data: [DONE]\n\n")
    return frames


class FakeTransport:
    """Echo transport for local development and tests: replies `AI: <prompt>`."""

    def __init__(self, *, chunk_delay_s: float = 0.0) -> None:
        self.chunk_delay_s: float = chunk_delay_s
        self.requests: list[ChatRequest] = []

    @asynccontextmanager
    async def open_stream(
        self, req: ChatRequest, *, stop: asyncio.Event
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        self.requests.append(req)
        prompt = next((t.content for t in reversed(req.turns) if t.role == "user"), "")
        input_tokens = sum(len(t.content.split()) for t in req.turns)
        frames = fake_frames(req.provider.wire, f"AI: {prompt}", input_tokens=input_tokens)

        async def _chunks() -> AsyncIterator[bytes]:
            for frame in frames:
                await asyncio.sleep(self.chunk_delay_s)
                yield frame

        yield _until_stopped(_chunks(), stop)


def build_transport(s: Settings | None = None) -> Transport:
    s = s or settings
    if s.chat_transport == "fake":
        return FakeTransport()
    return HttpxTransport(s)
