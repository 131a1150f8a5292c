# pyright: reportMissingImports=false
# pyright: reportUnknownArgumentType=false
# pyright: reportUnknownVariableType=false
# pyright: reportCallInDefaultInitializer=false
from __future__ import annotations

from typing import Literal, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from chatstream.chat.errors import ConversationNotFoundError
from chatstream.chat.pricing import estimate_cost, is_anthropic_model
from chatstream.transcript.store import (
    ConversationRecord,
    ConversationStats,
    ConversationStatus,
    ConversationWithMessages,
    TranscriptStore,
)


router = APIRouter(prefix="/conversations", tags=["conversations"])

_store = TranscriptStore()


def get_store() -> TranscriptStore:
    return _store


class ConversationCreateRequest(BaseModel):
    title: str | None = Field(default=None, max_length=200)


class ConversationPatchRequest(BaseModel):
    title: str | None = Field(default=None, max_length=200)
    status: ConversationStatus | None = None


class CostEstimateResponse(BaseModel):
    input_cost: float
    output_cost: float
    total_cost: float


class ConversationDetailResponse(ConversationWithMessages):
    # Only set when every model in the conversation has a known price.
    estimated_cost: CostEstimateResponse | None = None


def _not_found() -> NoReturn:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")


def _estimate(data: ConversationWithMessages) -> CostEstimateResponse | None:
    total_in = 0.0
    total_out = 0.0
    priced = False
    for m in data.messages:
        if m.role != "assistant" or not m.usage:
            continue
        if not is_anthropic_model(m.model_id):
            return None
        inp = m.usage.get("input_tokens")
        outp = m.usage.get("output_tokens")
        est = estimate_cost(
            m.model_id,
            inp if isinstance(inp, int) else 0,
            outp if isinstance(outp, int) else 0,
        )
        if est is None:
            return None
        total_in += est.input_cost
        total_out += est.output_cost
        priced = True
    if not priced:
        return None
    return CostEstimateResponse(
        input_cost=total_in, output_cost=total_out, total_cost=total_in + total_out
    )


@router.get(
    "",
    response_model=list[ConversationRecord],
    operation_id="conversations_list",
)
def conversations_list(
    status_filter: Literal["active", "archived"] = Query(default="active", alias="status"),
    limit: int | None = Query(default=None, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    store: TranscriptStore = Depends(get_store),
) -> list[ConversationRecord]:
    return store.list_conversations(status=status_filter, limit=limit, offset=offset)


@router.get(
    "/stats",
    response_model=ConversationStats,
    operation_id="conversations_stats",
)
def conversations_stats(store: TranscriptStore = Depends(get_store)) -> ConversationStats:
    return store.get_stats()


@router.post(
    "",
    response_model=ConversationRecord,
    status_code=status.HTTP_201_CREATED,
    operation_id="conversations_create",
)
def conversations_create(
    payload: ConversationCreateRequest,
    store: TranscriptStore = Depends(get_store),
) -> ConversationRecord:
    return store.create_conversation(payload.title)


@router.get(
    "/{conversation_id}",
    response_model=ConversationDetailResponse,
    operation_id="conversations_get",
)
def conversations_get(
    conversation_id: str,
    store: TranscriptStore = Depends(get_store),
) -> ConversationDetailResponse:
    data = store.get_with_messages(conversation_id)
    if data is None:
        _not_found()
    return ConversationDetailResponse(
        conversation=data.conversation,
        messages=data.messages,
        estimated_cost=_estimate(data),
    )


@router.patch(
    "/{conversation_id}",
    response_model=ConversationRecord,
    operation_id="conversations_patch",
)
def conversations_patch(
    conversation_id: str,
    payload: ConversationPatchRequest,
    store: TranscriptStore = Depends(get_store),
) -> ConversationRecord:
    try:
        return store.update_conversation(
            conversation_id, title=payload.title, status=payload.status
        )
    except ConversationNotFoundError:
        _not_found()


@router.post(
    "/{conversation_id}/archive",
    response_model=ConversationRecord,
    operation_id="conversations_archive",
)
def conversations_archive(
    conversation_id: str,
    store: TranscriptStore = Depends(get_store),
) -> ConversationRecord:
    try:
        return store.archive(conversation_id)
    except ConversationNotFoundError:
        _not_found()


@router.delete(
    "/{conversation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    operation_id="conversations_delete",
)
def conversations_delete(
    conversation_id: str,
    store: TranscriptStore = Depends(get_store),
) -> Response:
    if not store.delete_conversation(conversation_id):
        _not_found()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "",
    status_code=status.HTTP_204_NO_CONTENT,
    operation_id="conversations_clear_all",
)
def conversations_clear_all(store: TranscriptStore = Depends(get_store)) -> Response:
    store.clear_all()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
