from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Literal, TypedDict, cast

from fastapi import APIRouter, WebSocket
from pydantic import BaseModel, Field, ValidationError
from starlette.websockets import WebSocketDisconnect

from chatstream.api.v1.conversations import get_store
from chatstream.chat.errors import ConversationNotFoundError
from chatstream.chat.providers import PROVIDERS, FileRef, GenerationParams
from chatstream.chat.session import ChatSession, ModelSelection
from chatstream.chat.transport import build_transport


logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1


class WSFrame(TypedDict, total=True):
    protocol_version: int
    type: str
    payload: object


def _frame(frame_type: str, payload: object = None) -> WSFrame:
    return {"protocol_version": PROTOCOL_VERSION, "type": frame_type, "payload": payload}


class ModelPayload(BaseModel):
    provider: str
    model_id: str
    model_name: str = ""


class ParamsPayload(BaseModel):
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_p: float = Field(default=0.9, ge=0.0, le=1.0)
    max_tokens: int = Field(default=2048, ge=1)
    sampling_parameter: Literal["temperature", "top_p"] = "temperature"
    enable_web_search: bool = False
    enable_thinking: bool = False
    thinking_budget: int | None = Field(default=None, ge=1)

    def to_params(self) -> GenerationParams:
        return GenerationParams(**self.model_dump())


class FilePayload(BaseModel):
    name: str
    format: str
    bytes: str = ""


class ChatSendPayload(BaseModel):
    text: str
    model: ModelPayload | None = None
    params: ParamsPayload | None = None
    files: list[FilePayload] = Field(default_factory=list)


class RegeneratePayload(BaseModel):
    index: int
    model: ModelPayload | None = None
    params: ParamsPayload | None = None


class LoadPayload(BaseModel):
    conversation_id: str


router = APIRouter()


@router.websocket("/ws/v1")
async def ws_v1(websocket: WebSocket) -> None:
    conversation_id = websocket.query_params.get("conversation_id") or None

    await websocket.accept()

    send_lock = asyncio.Lock()
    turn_task: asyncio.Task[None] | None = None
    session = ChatSession(store=get_store(), transport=build_transport())

    async def _safe_send_json(frame: WSFrame) -> None:
        async with send_lock:
            await websocket.send_json(frame)

    async def _push_state(snapshot: dict[str, object]) -> None:
        try:
            await _safe_send_json(_frame("STATE", snapshot))
        except (WebSocketDisconnect, RuntimeError):
            # The socket is gone; the turn keeps its own state.
            logger.debug("dropping STATE frame for closed websocket")

    async def _send_error(code: str, message: str) -> None:
        await _safe_send_json(_frame("ERROR", {"code": code, "message": message}))

    _ = session.add_listener(_push_state)

    def _apply_selection(model: ModelPayload | None, params: ParamsPayload | None) -> None:
        if model is not None:
            session.select_model(
                ModelSelection(
                    provider=model.provider, model_id=model.model_id, model_name=model.model_name
                ),
                params.to_params() if params is not None else None,
            )
        elif params is not None:
            session.params = params.to_params()

    async def _run(op: Awaitable[bool], what: str) -> None:
        try:
            accepted = await op
        except Exception as e:
            # Already logged and reflected in STATE by the session.
            await _send_error("persistence_failed", str(e))
            return
        if not accepted:
            await _send_error("rejected", f"{what} was rejected")

    def _turn_running() -> bool:
        return session.busy or (turn_task is not None and not turn_task.done())

    await _safe_send_json(
        _frame(
            "HELLO",
            {"conversation_id": conversation_id, "providers": sorted(PROVIDERS)},
        )
    )

    try:
        if conversation_id is not None:
            try:
                await session.load_conversation(conversation_id)
            except ConversationNotFoundError:
                await _send_error("not_found", "Conversation not found")
        else:
            await _push_state(session.snapshot())

        while True:
            raw_obj = cast(object, await websocket.receive_json())
            if not isinstance(raw_obj, dict):
                await websocket.close(code=1003)
                return

            msg = cast(dict[str, object], raw_obj)
            msg_type = msg.get("type")
            payload_obj = msg.get("payload")

            if msg_type == "PING":
                await _safe_send_json(_frame("PONG", payload_obj))
                continue

            if msg_type == "INTERRUPT":
                await session.stop_generation()
                continue

            if msg_type == "CLEAR":
                await session.clear_messages()
                continue

            if msg_type == "RESET_USAGE":
                await session.reset_usage()
                continue

            try:
                if msg_type == "CHAT_SEND":
                    send = ChatSendPayload.model_validate(payload_obj)
                    if _turn_running():
                        await _send_error("busy", "A response is already being generated")
                        continue
                    _apply_selection(send.model, send.params)
                    files = [FileRef(name=f.name, format=f.format, bytes=f.bytes) for f in send.files]
                    turn_task = asyncio.create_task(
                        _run(session.send_message(send.text, files), "CHAT_SEND")
                    )
                    continue

                if msg_type == "REGENERATE":
                    regen = RegeneratePayload.model_validate(payload_obj)
                    if _turn_running():
                        await _send_error("busy", "A response is already being generated")
                        continue
                    _apply_selection(regen.model, regen.params)
                    turn_task = asyncio.create_task(
                        _run(session.regenerate(regen.index), "REGENERATE")
                    )
                    continue

                if msg_type == "LOAD":
                    load = LoadPayload.model_validate(payload_obj)
                    try:
                        await session.load_conversation(load.conversation_id)
                    except ConversationNotFoundError:
                        await _send_error("not_found", "Conversation not found")
                    continue
            except ValidationError as e:
                await _send_error("invalid_payload", f"{msg_type}: {e.error_count()} invalid field(s)")
                continue

            await websocket.close(code=1003)
            return

    except WebSocketDisconnect:
        return
    finally:
        if turn_task is not None and not turn_task.done():
            await session.stop_generation()
            _ = await asyncio.gather(turn_task, return_exceptions=True)
