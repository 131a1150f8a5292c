# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false

from __future__ import annotations

from typing import cast

import pytest
from fastapi.testclient import TestClient

from chatstream.api.v1.conversations import get_store
from chatstream.main import app
from chatstream.transcript.store import MessageCreate


def _json_dict(resp: object) -> dict[str, object]:
    raw = cast(object, resp)
    assert isinstance(raw, dict)
    return cast(dict[str, object], raw)


def _add(conversation_id: str, role: str, content: str, *, model_id: str, usage: dict[str, int] | None = None) -> None:
    _ = get_store().add_message(
        MessageCreate.model_validate(
            {
                "conversation_id": conversation_id,
                "role": role,
                "content": content,
                "provider": "anthropic",
                "model_id": model_id,
                "model_name": model_id,
                "usage": usage,
            }
        )
    )


def test_create_list_get_patch_delete() -> None:
    client = TestClient(app)

    r = client.post("/api/v1/conversations", json={})
    assert r.status_code == 201, r.text
    created = _json_dict(r.json())
    cid = cast(str, created["id"])
    assert created["title"] == "New Conversation"
    assert created["message_count"] == 0

    r = client.post("/api/v1/conversations", json={"title": "Second"})
    assert r.status_code == 201, r.text

    r = client.get("/api/v1/conversations")
    assert r.status_code == 200
    listed = cast(list[dict[str, object]], r.json())
    assert {c["title"] for c in listed} == {"New Conversation", "Second"}

    r = client.patch(f"/api/v1/conversations/{cid}", json={"title": "Renamed"})
    assert r.status_code == 200, r.text
    assert _json_dict(r.json())["title"] == "Renamed"

    r = client.post(f"/api/v1/conversations/{cid}/archive")
    assert r.status_code == 200
    assert _json_dict(r.json())["status"] == "archived"

    r = client.get("/api/v1/conversations", params={"status": "archived"})
    assert [c["id"] for c in cast(list[dict[str, object]], r.json())] == [cid]

    r = client.delete(f"/api/v1/conversations/{cid}")
    assert r.status_code == 204
    r = client.get(f"/api/v1/conversations/{cid}")
    assert r.status_code == 404


@pytest.mark.parametrize(
    ("method", "path", "body"),
    [
        ("GET", "/api/v1/conversations/missing", None),
        ("PATCH", "/api/v1/conversations/missing", {"title": "x"}),
        ("POST", "/api/v1/conversations/missing/archive", None),
        ("DELETE", "/api/v1/conversations/missing", None),
    ],
)
def test_missing_conversation_is_404(method: str, path: str, body: dict[str, object] | None) -> None:
    client = TestClient(app)
    r = client.request(method, path, json=body)
    assert r.status_code == 404
    assert _json_dict(r.json())["detail"] == "Conversation not found"


def test_detail_includes_messages_and_cost_estimate() -> None:
    client = TestClient(app)
    cid = cast(str, _json_dict(client.post("/api/v1/conversations", json={}).json())["id"])
    _add(cid, "user", "hello there", model_id="claude-sonnet-4-5-20250929")
    _add(
        cid,
        "assistant",
        "<think>greeting</think>\nhi",
        model_id="claude-sonnet-4-5-20250929",
        usage={"input_tokens": 1_000_000, "output_tokens": 100_000},
    )

    r = client.get(f"/api/v1/conversations/{cid}")
    assert r.status_code == 200, r.text
    body = _json_dict(r.json())
    conv = _json_dict(body["conversation"])
    assert conv["title"] == "hello there"
    assert conv["message_count"] == 2
    assert conv["total_input_tokens"] == 1_000_000

    messages = cast(list[dict[str, object]], body["messages"])
    assert [m["sequence"] for m in messages] == [1, 2]
    assert messages[1]["content"] == "<think>greeting</think>\nhi"

    cost = _json_dict(body["estimated_cost"])
    assert cost["input_cost"] == pytest.approx(3.0)
    assert cost["output_cost"] == pytest.approx(1.5)
    assert cost["total_cost"] == pytest.approx(4.5)


def test_cost_estimate_omitted_for_unpriced_models() -> None:
    client = TestClient(app)
    cid = cast(str, _json_dict(client.post("/api/v1/conversations", json={}).json())["id"])
    _add(cid, "user", "hi", model_id="llama3")
    _add(cid, "assistant", "yo", model_id="llama3", usage={"input_tokens": 5, "output_tokens": 1})

    body = _json_dict(client.get(f"/api/v1/conversations/{cid}").json())
    assert body["estimated_cost"] is None


def test_stats_and_clear_all() -> None:
    client = TestClient(app)
    cid = cast(str, _json_dict(client.post("/api/v1/conversations", json={}).json())["id"])
    _ = client.post("/api/v1/conversations", json={"title": "empty"})
    _add(cid, "user", "q", model_id="claude-haiku-4-5")
    _add(cid, "assistant", "a", model_id="claude-haiku-4-5")

    stats = _json_dict(client.get("/api/v1/conversations/stats").json())
    assert stats["total_conversations"] == 2
    assert stats["active_conversations"] == 2
    assert stats["total_messages"] == 2
    assert stats["provider_breakdown"] == {"anthropic": 2}

    r = client.delete("/api/v1/conversations")
    assert r.status_code == 204
    stats = _json_dict(client.get("/api/v1/conversations/stats").json())
    assert stats["total_conversations"] == 0


def test_invalid_query_and_body_are_422() -> None:
    client = TestClient(app)
    assert client.get("/api/v1/conversations", params={"limit": 0}).status_code == 422
    assert client.get("/api/v1/conversations", params={"status": "deleted"}).status_code == 422
    r = client.post("/api/v1/conversations", json={"title": "x" * 201})
    assert r.status_code == 422
