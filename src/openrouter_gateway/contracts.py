from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

PROVIDER_NAME = "openrouter"

DONE_RECORD = b"data: [DONE]\n\n"


class KeySource(str, Enum):
    USER = "user"
    SHARED = "shared"
    NONE = "none"


Role = Literal["user", "assistant", "system"]


@dataclass
class ChatMessage:
    role: Role
    content: str | list[dict[str, Any]]

    def to_upstream(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class InlineAttachment:
    mime_type: str
    payload: str
    data_url: str

    @property
    def is_image(self) -> bool:
        return self.mime_type.lower().startswith("image/")

    @property
    def is_plain_text(self) -> bool:
        return self.mime_type.lower() == "text/plain"


@dataclass(frozen=True)
class CompletionRequest:
    messages: list[ChatMessage]
    model: str
    api_key: str
    key_source: KeySource
    referer: str | None = None
    title: str | None = None
    image_data_url: str | None = None

    def upstream_payload(self, *, stream: bool, model: str | None = None) -> dict[str, Any]:
        return {
            "model": model or self.model,
            "messages": [m.to_upstream() for m in self.messages],
            "stream": stream,
        }


@dataclass(frozen=True)
class UpstreamEvent:
    text: str = ""
    error: dict[str, Any] | None = None


@dataclass(frozen=True)
class CompletionResult:
    text: str
    model: str
    images: list[str] = field(default_factory=list)


EventKind = Literal["metadata", "delta", "token", "error", "done"]


def sse_encode(data: str) -> bytes:
    return f"data: {data}\n\n".encode("utf-8")


@dataclass(frozen=True)
class ClientEvent:
    kind: EventKind
    data: dict[str, Any] | None = None

    @classmethod
    def metadata(cls, key_source: KeySource, **extra: Any) -> "ClientEvent":
        return cls("metadata", {"provider": PROVIDER_NAME, "usedKeyType": key_source.value, **extra})

    @classmethod
    def delta(cls, text: str) -> "ClientEvent":
        return cls("delta", {"delta": text})

    @classmethod
    def token(cls, text: str) -> "ClientEvent":
        return cls("token", {"token": text})

    @classmethod
    def error(cls, message: str, code: Any, key_source: KeySource) -> "ClientEvent":
        return cls(
            "error",
            {"error": message, "code": code, "provider": PROVIDER_NAME, "usedKeyType": key_source.value},
        )

    @classmethod
    def done(cls) -> "ClientEvent":
        return cls("done")

    def encode(self) -> bytes:
        if self.kind == "done":
            return DONE_RECORD
        return sse_encode(json.dumps(self.data))
