from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager

import structlog
from pydantic import ValidationError

try:
    from fastapi import FastAPI, Request
    from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
except ImportError as e:  # pragma: no cover
    raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

from .config import GatewayConfig
from .error_mapping import map_gateway_error
from .errors import (
    GatewayError,
    InvalidCredentialError,
    MalformedRequestError,
    MissingCredentialError,
    MissingModelError,
)
from .gateway import StreamingGateway
from .http_security import install_middlewares
from .logging import configure_logging
from .metrics import maybe_start_metrics, server_errors_total, server_requests_total
from .openai_compat import GatewayRequestBody

log = structlog.get_logger()

STREAM_PATH = "/api/openrouter/stream"
COMPLETION_PATH = "/api/openrouter"

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def _read_body(request: Request) -> GatewayRequestBody:
    raw = await request.body()
    if not raw.strip():
        raise MalformedRequestError("Invalid JSON body: request body is empty")
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise MalformedRequestError(f"Invalid JSON body: {e}") from e
    if not isinstance(data, dict):
        data = {}
    try:
        return GatewayRequestBody.model_validate(data)
    except ValidationError as e:
        raise MalformedRequestError(str(e)) from e


def create_app(cfg: GatewayConfig | None = None, gateway: StreamingGateway | None = None) -> FastAPI:
    cfg = cfg or GatewayConfig()
    configure_logging(
        level=cfg.log_level,
        fmt=cfg.log_format,
        secrets=[s for s in (cfg.openrouter_api_key, cfg.server_auth_token) if s],
    )
    gateway = gateway or StreamingGateway(cfg)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)
        try:
            yield
        finally:
            await gateway.session.close()

    app = FastAPI(
        title="openrouter-stream-gateway",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if cfg.enable_api_docs else None,
        redoc_url="/redoc" if cfg.enable_api_docs else None,
        openapi_url="/openapi.json" if cfg.enable_api_docs else None,
    )
    install_middlewares(app, cfg=cfg)

    def _plain_error(request: Request, exc: Exception, status_code: int, error_type: str):
        server_errors_total.labels(type=error_type).inc()
        server_requests_total.labels(path=request.url.path, status=str(status_code)).inc()
        return PlainTextResponse(str(exc) or "Unknown error", status_code=status_code)

    @app.exception_handler(MissingCredentialError)
    async def _missing_credential_handler(request: Request, exc: MissingCredentialError):
        return _plain_error(request, exc, 400, "missing_credential")

    @app.exception_handler(InvalidCredentialError)
    async def _invalid_credential_handler(request: Request, exc: InvalidCredentialError):
        return _plain_error(request, exc, 400, "invalid_credential")

    @app.exception_handler(MissingModelError)
    async def _missing_model_handler(request: Request, exc: MissingModelError):
        return _plain_error(request, exc, 400, "missing_model")

    @app.exception_handler(MalformedRequestError)
    async def _malformed_request_handler(request: Request, exc: MalformedRequestError):
        return _plain_error(request, exc, 500, "malformed_request")

    @app.exception_handler(GatewayError)
    async def _gateway_error_handler(request: Request, exc: GatewayError):
        log.warning("gateway_error", error=str(exc))
        return _plain_error(request, exc, 500, "gateway_error")

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post(STREAM_PATH)
    async def stream_completion(request: Request):
        req = gateway.normalize(await _read_body(request))
        server_requests_total.labels(path=STREAM_PATH, status="200").inc()
        return StreamingResponse(
            gateway.stream_bytes(req),
            status_code=200,
            media_type="text/event-stream; charset=utf-8",
            headers=SSE_HEADERS,
        )

    @app.post(COMPLETION_PATH)
    async def completion(request: Request):
        req = gateway.normalize(await _read_body(request))
        is_image = gateway.policy.is_image_generation(req.model)
        try:
            result = await gateway.complete(req)
        except GatewayError as e:
            event = map_gateway_error(e, model=req.model, key_source=req.key_source, policy=gateway.policy)
            body = event.data or {}
            code = body.get("code")
            status_code = code if isinstance(code, int) and 400 <= code <= 599 else 502
            server_requests_total.labels(path=COMPLETION_PATH, status=str(status_code)).inc()
            return JSONResponse(status_code=status_code, content=body)

        server_requests_total.labels(path=COMPLETION_PATH, status="200").inc()
        return {
            "text": result.text,
            "provider": gateway.name,
            "usedKeyType": req.key_source.value,
            "isImageGeneration": is_image,
        }

    return app


app = create_app()


def main() -> None:  # pragma: no cover
    try:
        import uvicorn
    except ImportError as e:
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("openrouter_gateway.server:app", host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    main()
