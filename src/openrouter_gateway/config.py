from __future__ import annotations

import json
import os

from pydantic import BaseModel, ConfigDict, Field

OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"

DEFAULT_MODEL_FALLBACKS = {
    "anthropic/claude-sonnet-4": "anthropic/claude-3.7-sonnet",
}

DEFAULT_DELTA_SANITIZERS = {
    r"tencent\s*/\s*hunyuan-a13b-instruct": "html_markup",
}

DEFAULT_PAID_MODEL_NOTICES = {
    r"z-ai\s*/\s*glm-4\.5-air(?!:free)": (
        "The model GLM 4.5 Air is a paid model on OpenRouter. Please add your own OpenRouter API key "
        'with credit, or select the FREE pool variant "GLM 4.5 Air (FREE)".'
    ),
}

DEFAULT_IMAGE_GENERATION_MODELS = [r"google/gemini-2\.5-flash-image-preview"]


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _parse_json_mapping(value: str | None, default: dict[str, str]) -> dict[str, str]:
    if not value:
        return dict(default)
    parsed = json.loads(value)
    if not isinstance(parsed, dict):
        raise ValueError("Expected a JSON object.")
    return {str(k): str(v) for k, v in parsed.items()}


class GatewayConfig(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    # Upstream
    openrouter_api_key: str | None = Field(default_factory=lambda: os.getenv("OPENROUTER_API_KEY") or None)
    openrouter_base_url: str = Field(default_factory=lambda: os.getenv("OPENROUTER_BASE_URL", OPENROUTER_API_BASE))
    upstream_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "60"))
    )
    default_referer: str = Field(default_factory=lambda: os.getenv("DEFAULT_REFERER", "http://localhost"))
    default_title: str = Field(default_factory=lambda: os.getenv("DEFAULT_TITLE", "Open Source Fiesta"))

    # Request shaping
    max_upstream_messages: int = Field(default_factory=lambda: int(os.getenv("MAX_UPSTREAM_MESSAGES", "8")))
    max_attached_text_chars: int = Field(
        default_factory=lambda: int(os.getenv("MAX_ATTACHED_TEXT_CHARS", "20000"))
    )

    # Model policy tables
    model_fallbacks: dict[str, str] = Field(
        default_factory=lambda: _parse_json_mapping(os.getenv("MODEL_FALLBACKS_JSON"), DEFAULT_MODEL_FALLBACKS)
    )
    delta_sanitizers: dict[str, str] = Field(
        default_factory=lambda: _parse_json_mapping(os.getenv("DELTA_SANITIZERS_JSON"), DEFAULT_DELTA_SANITIZERS)
    )
    paid_model_notices: dict[str, str] = Field(
        default_factory=lambda: _parse_json_mapping(
            os.getenv("PAID_MODEL_NOTICES_JSON"), DEFAULT_PAID_MODEL_NOTICES
        )
    )
    image_generation_models: list[str] = Field(
        default_factory=lambda: _parse_csv(os.getenv("IMAGE_GENERATION_MODELS"))
        or list(DEFAULT_IMAGE_GENERATION_MODELS)
    )

    # Observability
    enable_metrics: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_METRICS", "false").lower() == "true"
    )
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))

    # Server hardening
    server_auth_token: str | None = Field(default_factory=lambda: os.getenv("SERVER_AUTH_TOKEN"))
    enable_api_docs: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_API_DOCS", "false").lower() == "true"
    )
    allowed_hosts: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("ALLOWED_HOSTS")))
    cors_allow_origins: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("CORS_ALLOW_ORIGINS")))
    cors_allow_credentials: bool = Field(
        default_factory=lambda: os.getenv("CORS_ALLOW_CREDENTIALS", "false").lower() == "true"
    )
    # Inline attachments travel as data URLs, so the default leaves room for them.
    max_request_body_bytes: int = Field(
        default_factory=lambda: int(os.getenv("MAX_REQUEST_BODY_BYTES", str(12 * 1024 * 1024)))
    )
    max_inflight_requests: int = Field(default_factory=lambda: int(os.getenv("MAX_INFLIGHT_REQUESTS", "64")))
