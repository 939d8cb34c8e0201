from __future__ import annotations

import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from .config import GatewayConfig
from .errors import ConfigurationError

DeltaSanitizer = Callable[[str], str]

PAYMENT_REQUIRED_MESSAGE = (
    "Provider returned 402 (payment required / insufficient credit). Add your own OpenRouter API key "
    "with credit, or pick a free model variant if available."
)

_HTML_MARKUP_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"<answer[^>]*>", re.IGNORECASE), ""),
    (re.compile(r"</answer>", re.IGNORECASE), ""),
    (re.compile(r"<(?:b|strong)>", re.IGNORECASE), "**"),
    (re.compile(r"</(?:b|strong)>", re.IGNORECASE), "**"),
    (re.compile(r"<(?:i|em)>", re.IGNORECASE), "*"),
    (re.compile(r"</(?:i|em)>", re.IGNORECASE), "*"),
    (re.compile(r"<br\s*/?\s*>", re.IGNORECASE), "\n"),
    (re.compile(r"<p[^>]*>", re.IGNORECASE), ""),
    (re.compile(r"</p>", re.IGNORECASE), "\n\n"),
]


def html_markup_to_text(text: str) -> str:
    """Drop answer wrappers and turn a few inline HTML tags into markdown."""
    out = text
    for pattern, replacement in _HTML_MARKUP_RULES:
        out = pattern.sub(replacement, out)
    return out


SANITIZERS: dict[str, DeltaSanitizer] = {
    "html_markup": html_markup_to_text,
}


def register_sanitizer(name: str, fn: DeltaSanitizer) -> None:
    SANITIZERS[name] = fn


def _compile(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise ConfigurationError(f"Invalid model pattern {pattern!r}: {e}") from e


@dataclass(frozen=True)
class ModelPolicy:
    """
    Per-model policy tables.

    Patterns are matched with ``re.search`` (case-insensitive) against the
    requested model id; the first matching entry wins. Fallbacks are keyed by
    exact model id.
    """

    fallbacks: Mapping[str, str]
    sanitizers: Sequence[tuple[re.Pattern[str], DeltaSanitizer]]
    paid_model_notices: Sequence[tuple[re.Pattern[str], str]]
    image_generation_models: Sequence[re.Pattern[str]]

    @classmethod
    def from_config(cls, cfg: GatewayConfig) -> "ModelPolicy":
        sanitizers: list[tuple[re.Pattern[str], DeltaSanitizer]] = []
        for pattern, name in cfg.delta_sanitizers.items():
            fn = SANITIZERS.get(name)
            if fn is None:
                raise ConfigurationError(f"Unknown delta sanitizer {name!r} for pattern {pattern!r}.")
            sanitizers.append((_compile(pattern), fn))
        return cls(
            fallbacks=dict(cfg.model_fallbacks),
            sanitizers=sanitizers,
            paid_model_notices=[(_compile(p), msg) for p, msg in cfg.paid_model_notices.items()],
            image_generation_models=[_compile(p) for p in cfg.image_generation_models],
        )

    def fallback_for(self, model: str) -> str | None:
        return self.fallbacks.get(model)

    def is_image_generation(self, model: str) -> bool:
        return any(p.search(model) for p in self.image_generation_models)

    def sanitize_delta(self, model: str, text: str) -> str:
        for pattern, fn in self.sanitizers:
            if pattern.search(model):
                return fn(text)
        return text

    def payment_required_message(self, model: str) -> str:
        for pattern, message in self.paid_model_notices:
            if pattern.search(model):
                return message
        return PAYMENT_REQUIRED_MESSAGE
