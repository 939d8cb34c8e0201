from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GatewayRequestBody(BaseModel):
    """Inbound body shared by the streaming and non-streaming endpoints. Every field is untrusted."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    messages: Any = None
    model: str | None = None
    api_key: str | None = Field(default=None, alias="apiKey")
    referer: str | None = None
    title: str | None = None
    image_data_url: str | None = Field(default=None, alias="imageDataUrl")

    @field_validator("model", mode="before")
    @classmethod
    def _coerce_model(cls, v: Any) -> str | None:
        if v is None or v is False or v == "":
            return None
        return v if isinstance(v, str) else str(v)

    @field_validator("api_key", "referer", "title", "image_data_url", mode="before")
    @classmethod
    def _coerce_optional_str(cls, v: Any) -> str | None:
        if v is None or v == "":
            return None
        return v if isinstance(v, str) else str(v)


def _part_text(part: Any) -> str:
    if not part:
        return ""
    if isinstance(part, str):
        return part
    if isinstance(part, dict):
        for key in ("text", "content", "value"):
            value = part.get(key)
            if isinstance(value, str):
                return value
    return ""


def content_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(_part_text(p) for p in content)
    return ""


def _first_choice(chunk: Any) -> dict[str, Any] | None:
    if not isinstance(chunk, dict):
        return None
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    return choices[0]


def extract_delta_text(chunk: Any) -> str:
    choice = _first_choice(chunk)
    if choice is None:
        return ""
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        return ""
    return content_to_text(delta.get("content"))


def extract_inband_error(chunk: Any) -> dict[str, Any] | None:
    if not isinstance(chunk, dict):
        return None
    error = chunk.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        return error
    return {"message": str(error)}


def extract_completion_text(data: Any) -> tuple[str, list[str]]:
    """Return message text and any generated image URLs from a non-streaming completion."""
    choice = _first_choice(data)
    if choice is None:
        return "", []
    message = choice.get("message")
    if not isinstance(message, dict):
        return "", []
    text = content_to_text(message.get("content"))
    images: list[str] = []
    for img in message.get("images") or []:
        if not isinstance(img, dict):
            continue
        image_url = img.get("image_url")
        url = image_url.get("url") if isinstance(image_url, dict) else image_url
        if isinstance(url, str) and url:
            images.append(url)
    return text, images
