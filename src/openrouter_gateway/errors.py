from __future__ import annotations


class GatewayError(Exception):
    """Base error for gateway failures."""


class ConfigurationError(GatewayError):
    pass


class MissingCredentialError(GatewayError):
    def __init__(self, message: str = "Missing OpenRouter API key"):
        super().__init__(message)


class InvalidCredentialError(GatewayError):
    def __init__(self, message: str = "Invalid OpenRouter API key"):
        super().__init__(message)


class MissingModelError(GatewayError):
    def __init__(self, message: str = "Missing model id"):
        super().__init__(message)


class MalformedRequestError(GatewayError):
    """Request body could not be decoded."""


class UpstreamHTTPError(GatewayError):
    def __init__(self, status: int, body: str = ""):
        super().__init__(f"Upstream error {status}.")
        self.status = status
        self.body = body


class UpstreamTimeoutError(GatewayError):
    def __init__(self, timeout_seconds: float, message: str | None = None):
        self.timeout_ms = int(round(timeout_seconds * 1000))
        super().__init__(message or f"Request timed out after {self.timeout_ms}ms")


class UpstreamTransportError(GatewayError):
    """Network failure before an upstream response was available."""


class FallbackFailedError(GatewayError):
    def __init__(self, fallback_model: str, status: int | None = None):
        self.fallback_model = fallback_model
        self.status = status
        super().__init__(f"Fallback to {fallback_model} failed.")

    @property
    def exhausted_by_exception(self) -> bool:
        return self.status is None
