from __future__ import annotations

import re
from collections.abc import AsyncIterator
from contextlib import aclosing

import structlog

from .config import GatewayConfig
from .contracts import ClientEvent, CompletionRequest, CompletionResult
from .error_mapping import STREAM_ERROR_MESSAGE, map_gateway_error
from .errors import FallbackFailedError, GatewayError, UpstreamHTTPError, UpstreamTimeoutError, UpstreamTransportError
from .metrics import fallbacks_total, stream_events_total
from .normalizer import normalize_request
from .openai_compat import GatewayRequestBody, extract_completion_text, extract_inband_error
from .openrouter_session import OpenRouterSession, UpstreamAttempt
from .policy import ModelPolicy
from .streaming import translate_upstream_stream

log = structlog.get_logger()

MODEL_NOT_FOUND_RE = re.compile(r"model not found", re.IGNORECASE)


class StreamingGateway:
    name = "openrouter"

    def __init__(
        self,
        cfg: GatewayConfig,
        *,
        session: OpenRouterSession | None = None,
        policy: ModelPolicy | None = None,
    ):
        self.cfg = cfg
        self.policy = policy or ModelPolicy.from_config(cfg)
        self.session = session or OpenRouterSession(
            base_url=cfg.openrouter_base_url,
            timeout_seconds=cfg.upstream_timeout_seconds,
            default_referer=cfg.default_referer,
            default_title=cfg.default_title,
        )

    def normalize(self, body: GatewayRequestBody) -> CompletionRequest:
        return normalize_request(body, self.cfg)

    async def dispatch(self, req: CompletionRequest) -> UpstreamAttempt:
        """
        Open the upstream stream, retrying once on a model-not-found 404 with a known alias.

        Returns an OK attempt whose body is unread, or raises a GatewayError.
        Every attempt that is not returned has been closed.
        """
        payload = req.upstream_payload(stream=True)
        attempt = await self.session.open_stream(payload, api_key=req.api_key, referer=req.referer, title=req.title)
        if attempt.ok:
            return attempt

        body = await attempt.read_text()
        fallback = self.policy.fallback_for(req.model)
        if attempt.status == 404 and fallback and MODEL_NOT_FOUND_RE.search(body):
            log.info("upstream_fallback", model=req.model, fallback_model=fallback)
            try:
                retry = await self.session.open_stream(
                    req.upstream_payload(stream=True, model=fallback),
                    api_key=req.api_key,
                    referer=req.referer,
                    title=req.title,
                )
            except (UpstreamTimeoutError, UpstreamTransportError) as e:
                fallbacks_total.labels(outcome="exception").inc()
                log.warning("upstream_fallback_failed", model=req.model, fallback_model=fallback, error=str(e))
                raise FallbackFailedError(fallback) from e
            if retry.ok:
                fallbacks_total.labels(outcome="success").inc()
                return retry
            await retry.aclose()
            fallbacks_total.labels(outcome="failed").inc()
            log.warning("upstream_fallback_failed", model=req.model, fallback_model=fallback, status_code=retry.status)
            raise FallbackFailedError(fallback, status=retry.status)

        log.warning("upstream_http_error", model=req.model, status_code=attempt.status, body=body[:500])
        raise UpstreamHTTPError(attempt.status, body)

    async def complete(self, req: CompletionRequest) -> CompletionResult:
        data = await self.session.complete(
            req.upstream_payload(stream=False),
            api_key=req.api_key,
            referer=req.referer,
            title=req.title,
        )
        error = extract_inband_error(data)
        if error is not None:
            code = error.get("code")
            raise UpstreamHTTPError(code if isinstance(code, int) else 502, str(error.get("message") or "error"))

        text, images = extract_completion_text(data)
        if images:
            links = "\n\n".join(f"![Generated image]({url})" for url in images)
            text = f"{text}\n\n{links}" if text else links
        return CompletionResult(text=text, model=req.model, images=images)

    async def _image_generation_events(self, req: CompletionRequest) -> AsyncIterator[ClientEvent]:
        log.info("image_generation_request", model=req.model)
        try:
            result = await self.complete(req)
        except GatewayError as e:
            yield map_gateway_error(e, model=req.model, key_source=req.key_source, policy=self.policy)
            yield ClientEvent.done()
            return
        except Exception:
            log.exception("image_generation_failed", model=req.model)
            yield ClientEvent.error(STREAM_ERROR_MESSAGE, 500, req.key_source)
            yield ClientEvent.done()
            return
        yield ClientEvent(
            "metadata",
            {"meta": {"provider": self.name, "usedKeyType": req.key_source.value, "isImageGeneration": True}},
        )
        if result.text:
            yield ClientEvent.token(result.text)
        yield ClientEvent.done()

    async def _events(self, req: CompletionRequest) -> AsyncIterator[ClientEvent]:
        if self.policy.is_image_generation(req.model):
            async with aclosing(self._image_generation_events(req)) as image_events:
                async for event in image_events:
                    yield event
            return

        try:
            attempt = await self.dispatch(req)
        except GatewayError as e:
            yield map_gateway_error(e, model=req.model, key_source=req.key_source, policy=self.policy)
            yield ClientEvent.done()
            return
        except Exception:
            log.exception("upstream_dispatch_failed", model=req.model)
            yield ClientEvent.error(STREAM_ERROR_MESSAGE, 500, req.key_source)
            yield ClientEvent.done()
            return

        try:
            yield ClientEvent.metadata(req.key_source)
            translated = translate_upstream_stream(
                attempt, model=req.model, key_source=req.key_source, policy=self.policy
            )
            async with aclosing(translated) as events:
                async for event in events:
                    yield event
        except Exception:
            log.exception("stream_failed", model=req.model)
            yield ClientEvent.error(STREAM_ERROR_MESSAGE, 500, req.key_source)
            yield ClientEvent.done()
        finally:
            await attempt.aclose()

    async def stream_events(self, req: CompletionRequest) -> AsyncIterator[ClientEvent]:
        """
        Yield the normalized client events for one request, ending with ``done``.

        Closing this generator (client disconnect) closes the upstream response.
        """
        async with aclosing(self._events(req)) as events:
            async for event in events:
                stream_events_total.labels(type=event.kind).inc()
                yield event

    async def stream_bytes(self, req: CompletionRequest) -> AsyncIterator[bytes]:
        async with aclosing(self.stream_events(req)) as events:
            async for event in events:
                yield event.encode()
