# pyright: reportMissingImports=false

from __future__ import annotations

from functools import lru_cache
import json
import math
from typing import ClassVar, cast
from urllib.parse import urlparse

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")


class Settings(BaseSettings):
    """Environment-driven settings with local dev defaults."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
        extra="ignore",
    )

    api_v1_prefix: str = "/api/v1"
    log_level: str = "INFO"

    env: str = "dev"

    cors_allowed_origins: list[str] = Field(default_factory=list)
    trusted_hosts: list[str] = Field(default_factory=list)

    # Prefer DATABASE_URL; the default is a local SQLite file next to the process.
    database_url: str = "sqlite:///./chatstream.db"

    # "http" talks to the provider proxies; "fake" echoes the prompt (dev/tests only).
    chat_transport: str = "http"

    # Provider proxies relay to vendor SDKs and re-emit `data: {...}` SSE lines.
    provider_base_url: str = "http://127.0.0.1:3001"
    provider_endpoints: dict[str, str] = Field(default_factory=dict)

    chat_timeout_seconds: float = 120.0
    chat_connect_timeout_seconds: float = 10.0

    think_start_marker: str = "<think>"
    think_end_marker: str = "</think>"

    conversation_title_max_length: int = 50
    conversation_list_default_limit: int = 50

    @field_validator("cors_allowed_origins", "trusted_hosts", mode="before")
    @classmethod
    def _parse_listish_env(cls, v: object) -> list[str]:
        if v is None:
            return []
        if isinstance(v, list):
            v_list = cast(list[object], v)
            return [str(x).strip() for x in v_list if str(x).strip()]
        if isinstance(v, str):
            raw = v.strip()
            if raw == "":
                return []
            if raw.lstrip().startswith("["):
                try:
                    parsed: object = cast(object, json.loads(raw))
                except Exception:
                    parsed = None
                if isinstance(parsed, list):
                    parsed_list = cast(list[object], parsed)
                    return [str(x).strip() for x in parsed_list if str(x).strip()]
            parts: list[str] = []
            for chunk in raw.replace("\n", ",").replace("\t", ",").split(","):
                s = chunk.strip()
                if s:
                    parts.append(s)
            return parts
        return [str(v).strip()] if str(v).strip() else []

    @field_validator("provider_endpoints", mode="before")
    @classmethod
    def _parse_provider_endpoints(cls, v: object) -> dict[str, str]:
        if v is None:
            return {}

        raw_map: dict[object, object]
        if isinstance(v, dict):
            raw_map = cast(dict[object, object], v)
        elif isinstance(v, str):
            raw = v.strip()
            if raw == "":
                return {}
            if raw.startswith("{"):
                try:
                    parsed = cast(object, json.loads(raw))
                except Exception as e:
                    raise ValueError("PROVIDER_ENDPOINTS contains invalid JSON") from e
                if not isinstance(parsed, dict):
                    raise ValueError("PROVIDER_ENDPOINTS must be a JSON object")
                raw_map = cast(dict[object, object], parsed)
            else:
                raw_map = {}
                for chunk in raw.replace("\n", ",").split(","):
                    item = chunk.strip()
                    if not item:
                        continue
                    if "=" not in item:
                        raise ValueError("PROVIDER_ENDPOINTS must be 'provider=url' pairs")
                    name, url = item.split("=", 1)
                    raw_map[name] = url
        else:
            return {}

        out: dict[str, str] = {}
        for k_obj, val_obj in raw_map.items():
            name = str(k_obj).strip().lower()
            url = str(val_obj).strip()
            if not name or not url:
                continue
            p = urlparse(url)
            if not p.scheme or not p.netloc:
                raise ValueError(f"PROVIDER_ENDPOINTS[{name}] must be a full URL")
            out[name] = url
        return out

    @field_validator("chat_timeout_seconds", "chat_connect_timeout_seconds", mode="after")
    @classmethod
    def _clamp_timeout_seconds(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            return 60.0
        return float(max(1.0, min(300.0, v)))

    @property
    def sqlalchemy_database_uri(self) -> str:
        return self.database_url

    def _is_prod_env(self) -> bool:
        return self.env.strip().lower() in ("prod", "production")

    @model_validator(mode="after")
    def _validate_markers(self) -> "Settings":
        if self.think_start_marker == "" or self.think_end_marker == "":
            raise ValueError("THINK_START_MARKER and THINK_END_MARKER must be non-empty")
        if self.think_start_marker == self.think_end_marker:
            raise ValueError("THINK_START_MARKER and THINK_END_MARKER must differ")
        if self.conversation_title_max_length < 4:
            raise ValueError("CONVERSATION_TITLE_MAX_LENGTH must be >= 4")
        return self

    @model_validator(mode="after")
    def _validate_prod_config(self) -> "Settings":
        if not self._is_prod_env():
            return self

        problems: list[str] = []

        if self.database_url.strip().lower().startswith("sqlite"):
            problems.append("DATABASE_URL must not use SQLite in production.")

        if self.chat_transport.strip().lower() == "fake":
            problems.append("CHAT_TRANSPORT=fake is forbidden in production. Set CHAT_TRANSPORT=http.")

        for name, url in [("PROVIDER_BASE_URL", self.provider_base_url)] + [
            (f"PROVIDER_ENDPOINTS[{k}]", v) for k, v in self.provider_endpoints.items()
        ]:
            p = urlparse(url)
            if p.scheme != "https" and (p.hostname or "") not in _LOOPBACK_HOSTS:
                problems.append(f"{name} must use https unless it points at a loopback proxy.")

        if problems:
            details = "\n".join(f"- {p}" for p in problems)
            raise ValueError(
                f"Production settings validation failed (ENV={self.env!r}). Fix the following before starting the server:\n"
                + details
            )

        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
