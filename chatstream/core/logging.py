from __future__ import annotations

import contextvars
import logging
import re
import sys
from collections.abc import Callable
from typing import override


request_id_ctx_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")
conversation_id_ctx_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "conversation_id", default="-"
)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [rid=%(request_id)s] [conv=%(conversation_id)s] %(message)s"

# httpx logs every provider request URL at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore")


class RequestIdFilter(logging.Filter):
    """Stamps the request and conversation ids of the current context onto each record."""

    @override
    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.request_id = request_id_ctx_var.get()
        record.conversation_id = conversation_id_ctx_var.get()
        return True


def _redact_value(raw: str) -> str:
    return f"[REDACTED len={len(raw)}]"


def _keep_prefix(m: re.Match[str]) -> str:
    return f"{m.group(1)}{_redact_value(m.group(2))}"


def _keep_quotes(m: re.Match[str]) -> str:
    return f"{m.group(1)}{_redact_value(m.group(2))}{m.group(3)}"


def _bearer(m: re.Match[str]) -> str:
    return f"{m.group(1)}{m.group(2)}[REDACTED]{m.group(4)}"


_Rule = tuple[re.Pattern[str], str | Callable[[re.Match[str]], str]]

# Applied in order; bearer headers first so their token never reaches the generic key rules.
_RULES: tuple[_Rule, ...] = (
    (re.compile(r"(?i)(authorization\s*[:=]\s*bearer\s+)([a-z0-9._~+/=-]+)"), r"\1[REDACTED]"),
    (re.compile(r'(?i)("authorization"\s*:\s*")\s*(bearer\s+)([^"]+)(")'), _bearer),
    (re.compile(r"(?i)('authorization'\s*:\s*')\s*(bearer\s+)([^']+)(')"), _bearer),
    # Proxy keys travel as X-Api-Key / X-Mantle-Api-Key headers.
    (re.compile(r"(?i)(x-(?:mantle-)?api-key['\"]?\s*[:=]\s*['\"]?)([^'\"\s,;}]+)"), _keep_prefix),
    # ...or inside request bodies.
    (re.compile(r'(?i)("(?:api_key|apiKey|tavilyApiKey)"\s*:\s*")([^"]+)(")'), _keep_quotes),
    (re.compile(r"(?i)('(?:api_key|apiKey|tavilyApiKey)'\s*:\s*')([^']+)(')"), _keep_quotes),
    (re.compile(r"(?i)\b(api_key\s*=\s*|apikey\s*=\s*)([^\s,;]+)"), _keep_prefix),
    # Attachment payloads are base64 under "bytes".
    (re.compile(r'(?i)("bytes"\s*:\s*")([^"]+)(")'), _keep_quotes),
    (re.compile(r"(?i)('bytes'\s*:\s*')([^']+)(')"), _keep_quotes),
    (re.compile(r"(?i)(data:[a-z0-9.+-]+\/[a-z0-9.+-]+;base64,)([a-z0-9+/=]+)"), _keep_prefix),
    (re.compile(r"(?<![a-f0-9])[A-Za-z0-9+/]{120,}={0,2}"), "[REDACTED_B64]"),
)


def redact(text: str) -> str:
    for pattern, repl in _RULES:
        text = pattern.sub(repl, text)
    return text


class RedactingFormatter(logging.Formatter):
    """Formatter that scrubs credentials and attachment bytes from the final line."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        return redact(super().format(record))


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(RedactingFormatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    # Replace rather than append so a dev reload does not double every line.
    root.handlers = [handler]

    if root.level <= logging.INFO:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
