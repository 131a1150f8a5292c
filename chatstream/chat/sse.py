from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import cast

from chatstream.chat.errors import StreamOpenError


logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_TOKEN = "[DONE]"

_MAX_ERROR_TEXT = 300


async def iter_sse_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    # Partial lines and split UTF-8 sequences are carried over to the next chunk.
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buf = ""
    async for chunk in chunks:
        buf += decoder.decode(chunk)
        lines = buf.split("\n")
        buf = lines.pop()
        for line in lines:
            yield line.rstrip("\r")

    buf += decoder.decode(b"", final=True)
    if buf:
        yield buf.rstrip("\r")


async def iter_sse_data(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    async for line in iter_sse_lines(chunks):
        if not line.startswith(DATA_PREFIX):
            continue
        data = line[len(DATA_PREFIX) :].strip()
        if data == DONE_TOKEN:
            return
        if data == "":
            continue
        yield data


async def iter_sse_events(chunks: AsyncIterable[bytes]) -> AsyncIterator[dict[str, object]]:
    """Raw JSON object payloads in arrival order, up to the `[DONE]` token.

    Unparseable payloads are dropped so that one corrupt line does not lose an
    otherwise healthy response.
    """
    async for data in iter_sse_data(chunks):
        try:
            obj = cast(object, json.loads(data))
        except ValueError:
            logger.debug("dropping malformed sse payload (len=%d)", len(data))
            continue
        if not isinstance(obj, dict):
            continue
        yield cast(dict[str, object], obj)


def error_message_from_body(status_code: int, body: bytes) -> str:
    fallback = f"HTTP error! status: {status_code}"
    text = body.decode("utf-8", errors="replace").strip()
    if text == "":
        return fallback

    try:
        obj = cast(object, json.loads(text))
    except ValueError:
        return text[:_MAX_ERROR_TEXT]

    if isinstance(obj, dict):
        d = cast(dict[str, object], obj)
        err = d.get("error")
        if isinstance(err, str) and err.strip():
            return err.strip()
        if isinstance(err, dict):
            msg = cast(dict[str, object], err).get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        detail = d.get("detail")
        if isinstance(detail, str) and detail.strip():
            return detail.strip()
    return fallback


def stream_open_error(status_code: int, body: bytes) -> StreamOpenError:
    return StreamOpenError(error_message_from_body(status_code, body), status_code=status_code)
