# pyright: reportMissingImports=false

from __future__ import annotations

import asyncio
import json
import socket
import threading
import time
from collections.abc import Callable, Iterator
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import cast, override

import pytest

from chatstream.chat.assembler import text_content
from chatstream.chat.errors import StreamOpenError
from chatstream.chat.providers import ChatRequest, ChatTurn, GenerationParams, get_provider
from chatstream.chat.session import ChatSession, ModelSelection
from chatstream.chat.sse import iter_sse_events
from chatstream.chat.transport import HttpxTransport
from chatstream.core.config import Settings
from chatstream.transcript.store import TranscriptStore


def _free_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        s.bind(("127.0.0.1", 0))
        sockname = cast(tuple[str, int], s.getsockname())
        return sockname[1]
    finally:
        s.close()


def _sse(obj: object) -> bytes:
    return f"data: {json.dumps(obj)}\n\n".encode("utf-8")


class _StubProviderHandler(BaseHTTPRequestHandler):
    # Bodies received by the stub, keyed by path.
    received: dict[str, dict[str, object]] = {}
    # Set once a held-open stream notices the client went away.
    client_closed: threading.Event = threading.Event()

    @override
    def log_message(self, format: str, *args: object) -> None:  # noqa: A003
        return

    def _read_json_body(self) -> dict[str, object]:
        length_raw = self.headers.get("Content-Length")
        length = int(length_raw) if length_raw else 0
        raw = self.rfile.read(length) if length > 0 else b"{}"
        obj = cast(object, json.loads(raw.decode("utf-8")))
        return cast(dict[str, object], obj) if isinstance(obj, dict) else {}

    def do_POST(self) -> None:  # noqa: N802
        body = self._read_json_body()
        type(self).received[self.path] = body

        if self.path == "/api/bedrock-aisdk/chat":
            self._stream(
                [
                    _sse({"content": "Hel"}),
                    _sse({"reasoning": "short"}),
                    _sse({"content": "lo"}),
                    _sse({"metadata": {"usage": {"inputTokens": 3, "outputTokens": 2}, "latencyMs": 12}}),
                    b"data: [DONE]\n\n",
                ]
            )
            return

        if self.path == "/api/ollama/chat":
            self._hold_open([_sse({"content": "Hel"})])
            return

        if self.path == "/custom/groq":
            self._stream(
                [
                    _sse({"choices": [{"delta": {"content": "routed"}}]}),
                    _sse({"choices": [{"delta": {}, "finish_reason": "stop"}]}),
                    b"data: [DONE]\n\n",
                ]
            )
            return

        payload = json.dumps({"error": "model overloaded"}).encode("utf-8")
        self.send_response(500)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        _ = self.wfile.write(payload)

    def _hold_open(self, frames: list[bytes]) -> None:
        self.send_response(200)
        self.send_header("Content-Type", "text/event-stream")
        self.send_header("Cache-Control", "no-cache")
        self.end_headers()
        deadline = time.monotonic() + 5.0
        try:
            for frame in frames:
                _ = self.wfile.write(frame)
                self.wfile.flush()
            while time.monotonic() < deadline:
                time.sleep(0.05)
                _ = self.wfile.write(b": keepalive\n\n")
                self.wfile.flush()
        except OSError:
            type(self).client_closed.set()

    def _stream(self, frames: list[bytes]) -> None:
        self.send_response(200)
        self.send_header("Content-Type", "text/event-stream")
        self.send_header("Cache-Control", "no-cache")
        self.send_header("Connection", "close")
        self.end_headers()
        for frame in frames:
            _ = self.wfile.write(frame)
            self.wfile.flush()


@pytest.fixture()
def stub_settings() -> Iterator[Settings]:
    port = _free_port()
    server = ThreadingHTTPServer(("127.0.0.1", port), _StubProviderHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    _StubProviderHandler.received = {}
    _StubProviderHandler.client_closed = threading.Event()
    try:
        yield Settings(
            provider_base_url=f"http://127.0.0.1:{port}",
            provider_endpoints={"groq": f"http://127.0.0.1:{port}/custom/groq"},
        )
    finally:
        server.shutdown()
        server.server_close()


def _collect(s: Settings, req: ChatRequest) -> list[dict[str, object]]:
    async def _main() -> list[dict[str, object]]:
        out: list[dict[str, object]] = []
        async with HttpxTransport(s).open_stream(req, stop=asyncio.Event()) as chunks:
            async for raw in iter_sse_events(chunks):
                out.append(raw)
        return out

    return asyncio.run(_main())


def test_proxy_stream_posts_request_body_and_streams_frames(stub_settings: Settings) -> None:
    req = ChatRequest(
        provider=get_provider("bedrock"),
        model="m1",
        turns=(ChatTurn(role="user", content="hi"), ChatTurn(role="assistant", content="")),
        params=GenerationParams(max_tokens=64),
    )
    events = _collect(stub_settings, req)
    assert [e.get("content") for e in events if "content" in e] == ["Hel", "lo"]

    body = _StubProviderHandler.received["/api/bedrock-aisdk/chat"]
    assert body["model"] == "m1"
    assert body["max_tokens"] == 64
    assert body["messages"] == [{"role": "user", "content": "hi", "files": []}]


def test_endpoint_override_is_used(stub_settings: Settings) -> None:
    req = ChatRequest(
        provider=get_provider("groq"),
        model="llama",
        turns=(ChatTurn(role="user", content="hi"),),
    )
    events = _collect(stub_settings, req)
    assert len(events) == 2
    body = _StubProviderHandler.received["/custom/groq"]
    assert body["stream"] is True
    assert body["stream_options"] == {"include_usage": True}


def test_non_success_status_raises_with_body_message(stub_settings: Settings) -> None:
    req = ChatRequest(
        provider=get_provider("lmstudio"),
        model="qwen",
        turns=(ChatTurn(role="user", content="hi"),),
    )
    with pytest.raises(StreamOpenError) as excinfo:
        _ = _collect(stub_settings, req)
    assert excinfo.value.status_code == 500
    assert str(excinfo.value) == "model overloaded"


def test_unreachable_provider_raises_stream_open_error() -> None:
    s = Settings(provider_base_url=f"http://127.0.0.1:{_free_port()}")
    req = ChatRequest(
        provider=get_provider("bedrock"),
        model="m1",
        turns=(ChatTurn(role="user", content="hi"),),
    )
    with pytest.raises(StreamOpenError, match="failed to reach provider"):
        _ = _collect(s, req)


def test_session_over_http_stream(stub_settings: Settings) -> None:
    store = TranscriptStore()

    async def _main() -> ChatSession:
        session = ChatSession(
            store=store,
            transport=HttpxTransport(stub_settings),
            model=ModelSelection(provider="bedrock", model_id="m1"),
            s=stub_settings,
        )
        assert await session.send_message("hi") is True
        return session

    session = asyncio.run(_main())
    assert session.status == "idle"
    assert session.metadata is not None
    assert session.metadata.latency_ms == 12
    assert session.cumulative_usage.total_tokens == 5

    assert session.conversation_id is not None
    rows = store.get_messages(session.conversation_id)
    assert rows[1].content == "<think>short</think>\nHello"


def test_session_surfaces_provider_error(stub_settings: Settings) -> None:
    async def _main() -> ChatSession:
        session = ChatSession(
            store=TranscriptStore(),
            transport=HttpxTransport(stub_settings),
            model=ModelSelection(provider="lmstudio", model_id="qwen"),
            s=stub_settings,
        )
        assert await session.send_message("hi") is True
        return session

    session = asyncio.run(_main())
    assert session.status == "error"
    assert session.error == "model overloaded"


async def _wait_for(cond: Callable[[], bool], timeout_s: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not cond():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.parametrize("how", ["stop", "cancel"])
def test_interrupted_http_stream_closes_the_connection(stub_settings: Settings, how: str) -> None:
    store = TranscriptStore()

    async def _main() -> ChatSession:
        session = ChatSession(
            store=store,
            transport=HttpxTransport(stub_settings),
            model=ModelSelection(provider="ollama", model_id="llama3"),
            s=stub_settings,
        )
        task = asyncio.create_task(session.send_message("hi"))
        await _wait_for(
            lambda: bool(session.messages)
            and session.messages[-1].role == "assistant"
            and text_content(session.messages[-1]) == "Hel"
        )
        if how == "stop":
            await session.stop_generation()
            assert await task is True
        else:
            _ = task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        return session

    session = asyncio.run(_main())
    assert session.status == "idle"
    assert session.was_interrupted is True
    assert text_content(session.messages[-1]) == "Hel"

    assert session.conversation_id is not None
    assert [r.role for r in store.get_messages(session.conversation_id)] == ["user"]
    assert _StubProviderHandler.client_closed.wait(3.0)
