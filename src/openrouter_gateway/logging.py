from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping, MutableMapping
from typing import Any, TypeAlias, cast

import structlog


_SENSITIVE_KEYS = {
    "authorization",
    "cookie",
    "x-api-key",
    "apikey",
    "api_key",
    "openrouter_api_key",
    "server_auth_token",
}

_SENSITIVE_FRAGMENTS = ("key", "token", "secret", "password")

_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9._-]{6,})")
_OPENROUTER_KEY_RE = re.compile(r"\bsk-or-[A-Za-z0-9_-]{8,}")
# Attachments arrive inline; a single image would otherwise flood the log line.
_DATA_URL_RE = re.compile(r"data:([\w.+/-]*);base64,([A-Za-z0-9+/=]{32,})")

ProcessorReturn: TypeAlias = Mapping[str, Any] | str | bytes | bytearray | tuple[Any, ...]
Processor: TypeAlias = Callable[[Any, str, MutableMapping[str, Any]], ProcessorReturn]


def _scrub_str(value: str, *, secrets: list[str]) -> str:
    out = value
    for secret in secrets:
        if secret in out:
            out = out.replace(secret, "[REDACTED]")
    out = _BEARER_RE.sub("Bearer [REDACTED]", out)
    out = _OPENROUTER_KEY_RE.sub("sk-or-[REDACTED]", out)
    return _DATA_URL_RE.sub(lambda m: f"data:{m.group(1)};base64,[{len(m.group(2))} chars]", out)


def _scrub(obj: Any, *, secrets: list[str]) -> Any:
    if isinstance(obj, str):
        return _scrub_str(obj, secrets=secrets)
    if isinstance(obj, (list, tuple)):
        return type(obj)(_scrub(v, secrets=secrets) for v in obj)
    if isinstance(obj, dict):
        out: dict[Any, Any] = {}
        for k, v in obj.items():
            key_str = str(k).lower()
            if key_str in _SENSITIVE_KEYS or any(s in key_str for s in _SENSITIVE_FRAGMENTS):
                out[k] = "[REDACTED]"
            else:
                out[k] = _scrub(v, secrets=secrets)
        return out
    return obj


def make_scrub_processor(*, secrets: list[str] | None = None) -> Processor:
    secrets_norm = [s for s in (secrets or []) if isinstance(s, str) and s]

    def _processor(_logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> ProcessorReturn:
        return cast(dict[str, Any], _scrub(event_dict, secrets=secrets_norm))

    return _processor


def configure_logging(level: str = "INFO", fmt: str = "json", *, secrets: list[str] | None = None) -> None:
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=log_level)

    processors: list[Processor] = [
        cast(Processor, structlog.contextvars.merge_contextvars),
        cast(Processor, structlog.processors.add_log_level),
        cast(Processor, structlog.processors.TimeStamper(fmt="iso")),
        # Always on: per-request caller keys never appear in config, only the patterns catch them.
        make_scrub_processor(secrets=secrets),
    ]

    if fmt == "json":
        processors.append(cast(Processor, structlog.processors.JSONRenderer()))
    else:
        processors.append(cast(Processor, structlog.dev.ConsoleRenderer()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )
