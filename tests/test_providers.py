from __future__ import annotations

import pytest

from chatstream.chat.providers import (
    PROVIDERS,
    ChatRequest,
    ChatTurn,
    FileRef,
    GenerationParams,
    build_request_body,
    endpoint_url,
    get_provider,
)
from chatstream.core.config import Settings


def _req(provider: str, model: str = "m", **params: object) -> ChatRequest:
    return ChatRequest(
        provider=get_provider(provider),
        model=model,
        turns=(
            ChatTurn(role="user", content="first", files=(FileRef(name="a.txt", format="txt", bytes="eA=="),)),
            ChatTurn(role="assistant", content="  "),
            ChatTurn(role="user", content="second"),
        ),
        params=GenerationParams(**params),  # pyright: ignore[reportArgumentType]
    )


def test_every_provider_has_a_wire_shape_and_path() -> None:
    assert set(PROVIDERS) == {
        "lmstudio",
        "ollama",
        "bedrock",
        "bedrock-mantle",
        "anthropic",
        "groq",
        "cerebras",
        "openai",
    }
    for spec in PROVIDERS.values():
        assert spec.wire in ("proxy", "chat_completions", "responses")
        assert spec.path.startswith("/api/")


def test_get_provider_normalizes_and_rejects_unknown() -> None:
    assert get_provider(" Anthropic ").name == "anthropic"
    with pytest.raises(ValueError, match="unknown provider"):
        _ = get_provider("nope")


def test_endpoint_url_default_and_override() -> None:
    s = Settings(
        provider_base_url="https://proxy.example.com/",
        provider_endpoints={"ollama": "http://127.0.0.1:11434/api/chat"},
    )
    assert endpoint_url(get_provider("bedrock"), s) == "https://proxy.example.com/api/bedrock-aisdk/chat"
    assert endpoint_url(get_provider("ollama"), s) == "http://127.0.0.1:11434/api/chat"


def test_proxy_body_drops_empty_turns_and_forwards_files() -> None:
    body = build_request_body(_req("bedrock", max_tokens=100))
    assert body["model"] == "m"
    assert body["max_tokens"] == 100
    assert body["messages"] == [
        {"role": "user", "content": "first", "files": [{"name": "a.txt", "format": "txt", "bytes": "eA=="}]},
        {"role": "user", "content": "second", "files": []},
    ]
    assert body["temperature"] == 0.7
    assert body["top_p"] == 0.9
    assert "enableWebSearch" not in body


def test_anthropic_thinking_and_web_search_options() -> None:
    body = build_request_body(
        _req("anthropic", "claude-3-opus", enable_web_search=True, enable_thinking=True, thinking_budget=4096)
    )
    assert body["enableWebSearch"] is True
    assert body["enableThinking"] is True
    assert body["thinkingBudget"] == 4096

    body = build_request_body(_req("anthropic", "claude-3-opus"))
    assert body["enableWebSearch"] is False
    assert "enableThinking" not in body


@pytest.mark.parametrize(
    ("model", "sampling", "expected_keys"),
    [
        ("claude-sonnet-4-5-20250929", "temperature", {"temperature"}),
        ("us.anthropic.claude-haiku-4-5", "top_p", {"top_p"}),
        ("claude-opus-4-1", "top_p", {"temperature", "top_p"}),
    ],
)
def test_single_sampling_parameter_models(model: str, sampling: str, expected_keys: set[str]) -> None:
    body = build_request_body(_req("anthropic", model, sampling_parameter=sampling))
    assert {k for k in ("temperature", "top_p") if k in body} == expected_keys


def test_chat_completions_body() -> None:
    body = build_request_body(_req("groq", "llama"))
    assert body["messages"] == [
        {"role": "user", "content": "first"},
        {"role": "user", "content": "second"},
    ]
    assert body["stream"] is True
    assert body["stream_options"] == {"include_usage": True}
    assert body["max_tokens"] == 2048


def test_responses_body() -> None:
    body = build_request_body(_req("openai", "gpt-5", enable_web_search=True, max_tokens=50))
    assert body["input"] == [
        {"role": "user", "content": "first"},
        {"role": "user", "content": "second"},
    ]
    assert body["max_output_tokens"] == 50
    assert body["stream"] is True
    assert body["tools"] == [{"type": "web_search"}]

    assert "tools" not in build_request_body(_req("openai", "gpt-5"))
