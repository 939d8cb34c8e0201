from __future__ import annotations

import base64
import binascii
import re

from .contracts import ChatMessage, InlineAttachment

_MIME_RE = re.compile(r"data:(.*?);base64")

TEXT_BLOCK_HEADER = "[Attached text file contents:]"


def parse_data_url(data_url: str) -> InlineAttachment:
    """Split a ``data:<mime>;base64,<payload>`` string. Never raises; unknown shapes yield an empty mime."""
    meta, _, payload = data_url.partition(",")
    # Anything after a second comma is not part of the payload.
    payload = payload.split(",", 1)[0]
    m = _MIME_RE.search(meta)
    return InlineAttachment(mime_type=m.group(1) if m else "", payload=payload, data_url=data_url)


def decode_text_payload(payload: str) -> str:
    raw = base64.b64decode(payload, validate=True)
    return raw.decode("utf-8", errors="replace")


def _note_for(mime_type: str) -> str:
    return (
        f"[Attached file: {mime_type or 'unknown'} provided as Data URL. "
        "If your model supports reading this type via data URLs, use it.]"
    )


def _last_user_index(messages: list[ChatMessage]) -> int | None:
    for idx in range(len(messages) - 1, -1, -1):
        if messages[idx].role == "user":
            return idx
    return None


def merge_attachment(
    messages: list[ChatMessage],
    attachment: InlineAttachment,
    *,
    max_text_chars: int,
) -> list[ChatMessage]:
    idx = _last_user_index(messages)
    if idx is None:
        return messages

    target = messages[idx]
    text = target.content if isinstance(target.content, str) else ""

    if attachment.is_image:
        merged = ChatMessage(
            role=target.role,
            content=[
                {"type": "text", "text": text},
                {"type": "image_url", "image_url": {"url": attachment.data_url}},
            ],
        )
    else:
        merged = None
        if attachment.is_plain_text and attachment.payload:
            try:
                decoded = decode_text_payload(attachment.payload)
            except (binascii.Error, ValueError):
                decoded = None
            if decoded is not None:
                clipped = decoded[:max_text_chars]
                merged = ChatMessage(role=target.role, content=f"{text}\n\n{TEXT_BLOCK_HEADER}\n{clipped}")
        if merged is None:
            merged = ChatMessage(role=target.role, content=f"{text}\n\n{_note_for(attachment.mime_type)}")

    out = list(messages)
    out[idx] = merged
    return out
