"""Provider capabilities as data.

A provider is described by the wire shape its stream uses and by what it can
emit (structured reasoning, inline `<think>` markers, tool calls). Adding a
backend means adding one `ProviderSpec` entry; the normalizer dispatches on the
wire shape, never on the provider name.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from chatstream.core.config import Settings


WireShape = Literal["proxy", "chat_completions", "responses"]
Role = Literal["user", "assistant", "system"]
SamplingParameter = Literal["temperature", "top_p"]


@dataclass(frozen=True)
class ProviderSpec:
    name: str
    wire: WireShape
    path: str
    structured_reasoning: bool
    inline_markers: bool
    tool_calls: bool
    thinking_option: bool = False


PROVIDERS: dict[str, ProviderSpec] = {
    spec.name: spec
    for spec in (
        ProviderSpec(
            name="lmstudio",
            wire="chat_completions",
            path="/api/lmstudio/v1/chat/completions",
            structured_reasoning=True,
            inline_markers=True,
            tool_calls=False,
        ),
        ProviderSpec(
            name="ollama",
            wire="proxy",
            path="/api/ollama/chat",
            structured_reasoning=True,
            inline_markers=True,
            tool_calls=False,
        ),
        ProviderSpec(
            name="bedrock",
            wire="proxy",
            path="/api/bedrock-aisdk/chat",
            structured_reasoning=True,
            inline_markers=False,
            tool_calls=False,
        ),
        ProviderSpec(
            name="bedrock-mantle",
            wire="proxy",
            path="/api/mantle/chat",
            structured_reasoning=True,
            inline_markers=True,
            tool_calls=False,
        ),
        ProviderSpec(
            name="anthropic",
            wire="proxy",
            path="/api/anthropic-aisdk/chat",
            structured_reasoning=True,
            inline_markers=False,
            tool_calls=True,
            thinking_option=True,
        ),
        ProviderSpec(
            name="groq",
            wire="chat_completions",
            path="/api/groq/v1/chat/completions",
            structured_reasoning=True,
            inline_markers=True,
            tool_calls=False,
        ),
        ProviderSpec(
            name="cerebras",
            wire="chat_completions",
            path="/api/cerebras/v1/chat/completions",
            structured_reasoning=False,
            inline_markers=True,
            tool_calls=False,
        ),
        ProviderSpec(
            name="openai",
            wire="responses",
            path="/api/openai/v1/responses",
            structured_reasoning=True,
            inline_markers=False,
            tool_calls=True,
        ),
    )
}

# Models that accept only one of temperature / top_p per request.
_SINGLE_SAMPLING_MODELS = ("sonnet-4-5", "haiku-4-5", "opus-4-5")


def get_provider(name: str) -> ProviderSpec:
    spec = PROVIDERS.get(name.strip().lower())
    if spec is None:
        raise ValueError(f"unknown provider: {name!r}")
    return spec


def endpoint_url(spec: ProviderSpec, s: Settings) -> str:
    override = s.provider_endpoints.get(spec.name)
    if override:
        return override
    return s.provider_base_url.rstrip("/") + spec.path


@dataclass(frozen=True)
class FileRef:
    name: str
    format: str
    # base64 payload, forwarded as-is
    bytes: str = ""


@dataclass(frozen=True)
class ChatTurn:
    role: Role
    content: str
    files: tuple[FileRef, ...] = ()


@dataclass(frozen=True)
class GenerationParams:
    temperature: float = 0.7
    top_p: float = 0.9
    max_tokens: int = 2048
    sampling_parameter: SamplingParameter = "temperature"
    enable_web_search: bool = False
    enable_thinking: bool = False
    thinking_budget: int | None = None

    def as_persisted(self) -> dict[str, object]:
        return {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "max_tokens": self.max_tokens,
        }


@dataclass(frozen=True)
class ChatRequest:
    provider: ProviderSpec
    model: str
    turns: tuple[ChatTurn, ...]
    params: GenerationParams = field(default_factory=GenerationParams)


def _sampling_fields(model: str, params: GenerationParams) -> dict[str, object]:
    model_l = model.lower()
    if any(m in model_l for m in _SINGLE_SAMPLING_MODELS):
        if params.sampling_parameter == "temperature":
            return {"temperature": params.temperature}
        return {"top_p": params.top_p}
    return {"temperature": params.temperature, "top_p": params.top_p}


def build_request_body(req: ChatRequest) -> dict[str, object]:
    spec = req.provider
    turns = [t for t in req.turns if t.content.strip() != ""]

    if spec.wire == "proxy":
        body: dict[str, object] = {
            "model": req.model,
            "messages": [
                {
                    "role": t.role,
                    "content": t.content,
                    "files": [
                        {"name": f.name, "format": f.format, "bytes": f.bytes} for f in t.files
                    ],
                }
                for t in turns
            ],
            "max_tokens": req.params.max_tokens,
            **_sampling_fields(req.model, req.params),
        }
        if spec.tool_calls:
            body["enableWebSearch"] = req.params.enable_web_search
        if spec.thinking_option and req.params.enable_thinking:
            body["enableThinking"] = True
            if req.params.thinking_budget is not None:
                body["thinkingBudget"] = req.params.thinking_budget
        return body

    plain = [{"role": t.role, "content": t.content} for t in turns]

    if spec.wire == "chat_completions":
        return {
            "model": req.model,
            "messages": plain,
            "max_tokens": req.params.max_tokens,
            **_sampling_fields(req.model, req.params),
            "stream": True,
            "stream_options": {"include_usage": True},
        }

    body = {
        "model": req.model,
        "input": plain,
        "max_output_tokens": req.params.max_tokens,
        **_sampling_fields(req.model, req.params),
        "stream": True,
    }
    if spec.tool_calls and req.params.enable_web_search:
        body["tools"] = [{"type": "web_search"}]
    return body
