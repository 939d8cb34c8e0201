from __future__ import annotations

from typing import Any

import httpx

from .contracts import ClientEvent, KeySource
from .errors import (
    FallbackFailedError,
    GatewayError,
    UpstreamHTTPError,
    UpstreamTimeoutError,
    UpstreamTransportError,
)
from .policy import ModelPolicy

FALLBACK_FAILED_STATUS_MESSAGE = (
    "This model is currently unavailable on OpenRouter (404 model not found). "
    "Tried fallback to {fallback} but it also failed."
)
FALLBACK_FAILED_EXCEPTION_MESSAGE = (
    "This model is currently unavailable on OpenRouter (404 model not found). "
    "A fallback attempt was unsuccessful."
)
STREAM_ERROR_MESSAGE = "Stream error"


def map_http_error(
    status: int,
    body: str,
    *,
    model: str,
    key_source: KeySource,
    policy: ModelPolicy,
) -> ClientEvent:
    code = status or 500
    if code == 402:
        detail = f" Details: {body}" if body else ""
        return ClientEvent.error(f"{policy.payment_required_message(model)}{detail}".strip(), code, key_source)
    return ClientEvent.error(body or "Upstream error", code, key_source)


def map_inband_error(
    error: dict[str, Any],
    *,
    model: str,
    key_source: KeySource,
    policy: ModelPolicy,
) -> ClientEvent:
    code = error.get("code")
    if code == 402:
        return ClientEvent.error(policy.payment_required_message(model), code, key_source)
    return ClientEvent.error(error.get("message") or "error", code, key_source)


def map_fallback_failure(exc: FallbackFailedError, *, key_source: KeySource) -> ClientEvent:
    if exc.exhausted_by_exception:
        return ClientEvent.error(FALLBACK_FAILED_EXCEPTION_MESSAGE, 404, key_source)
    return ClientEvent.error(
        FALLBACK_FAILED_STATUS_MESSAGE.format(fallback=exc.fallback_model), exc.status, key_source
    )


def map_stream_exception(exc: BaseException, *, key_source: KeySource, timeout_seconds: float) -> ClientEvent:
    """Translate a failure that interrupted reading the upstream body."""
    if isinstance(exc, UpstreamTimeoutError):
        return ClientEvent.error(str(exc), 408, key_source)
    if isinstance(exc, httpx.TimeoutException):
        return ClientEvent.error(str(UpstreamTimeoutError(timeout_seconds)), 408, key_source)
    return ClientEvent.error(STREAM_ERROR_MESSAGE, 500, key_source)


def map_gateway_error(
    exc: GatewayError,
    *,
    model: str,
    key_source: KeySource,
    policy: ModelPolicy,
) -> ClientEvent:
    """Map any failure raised before the upstream body was adopted."""
    if isinstance(exc, FallbackFailedError):
        return map_fallback_failure(exc, key_source=key_source)
    if isinstance(exc, UpstreamHTTPError):
        return map_http_error(exc.status, exc.body, model=model, key_source=key_source, policy=policy)
    if isinstance(exc, UpstreamTimeoutError):
        return ClientEvent.error(str(exc), 408, key_source)
    if isinstance(exc, UpstreamTransportError):
        return ClientEvent.error(str(exc), 502, key_source)
    return ClientEvent.error(str(exc) or "Upstream error", 500, key_source)
