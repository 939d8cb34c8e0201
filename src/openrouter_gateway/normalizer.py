from __future__ import annotations

import json
from typing import Any
from urllib.parse import quote

from .attachments import merge_attachment, parse_data_url
from .config import GatewayConfig
from .contracts import ChatMessage, CompletionRequest, KeySource
from .errors import InvalidCredentialError, MissingCredentialError, MissingModelError
from .openai_compat import GatewayRequestBody

_ROLES = ("user", "assistant", "system")

# Printable ASCII kept as-is when a header value has to be percent-encoded.
_HEADER_SAFE = "".join(chr(c) for c in range(0x20, 0x7F) if chr(c) != "%")


def _stringify(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, (dict, list)):
        return json.dumps(content)
    return str(content)


def sanitize_messages(raw: Any) -> list[ChatMessage]:
    if not isinstance(raw, list):
        return []
    out: list[ChatMessage] = []
    for item in raw:
        role = item.get("role") if isinstance(item, dict) else None
        content = item.get("content") if isinstance(item, dict) else None
        out.append(ChatMessage(role=role if role in _ROLES else "user", content=_stringify(content)))
    return out


def _is_header_safe(value: str) -> bool:
    return value.isascii() and value.isprintable()


def header_value(value: str | None) -> str | None:
    """Percent-encode attribution values that cannot travel as an ASCII header."""
    if not value or _is_header_safe(value):
        return value or None
    return quote(value, safe=_HEADER_SAFE)


def trim_messages(messages: list[ChatMessage], limit: int) -> list[ChatMessage]:
    if limit > 0 and len(messages) > limit:
        return messages[-limit:]
    return messages


def resolve_credential(body: GatewayRequestBody, cfg: GatewayConfig) -> tuple[str | None, KeySource]:
    if body.api_key:
        return body.api_key, KeySource.USER
    if cfg.openrouter_api_key:
        return cfg.openrouter_api_key, KeySource.SHARED
    return None, KeySource.NONE


def normalize_request(body: GatewayRequestBody, cfg: GatewayConfig) -> CompletionRequest:
    api_key, key_source = resolve_credential(body, cfg)
    if not api_key:
        raise MissingCredentialError()
    if not _is_header_safe(api_key):
        raise InvalidCredentialError()
    if not body.model:
        raise MissingModelError()

    messages = trim_messages(sanitize_messages(body.messages), cfg.max_upstream_messages)
    if body.image_data_url and messages:
        messages = merge_attachment(
            messages,
            parse_data_url(body.image_data_url),
            max_text_chars=cfg.max_attached_text_chars,
        )

    return CompletionRequest(
        messages=messages,
        model=body.model,
        api_key=api_key,
        key_source=key_source,
        referer=header_value(body.referer),
        title=header_value(body.title),
        image_data_url=body.image_data_url,
    )
