from __future__ import annotations

import asyncio
import codecs
import json
from collections.abc import AsyncIterator
from contextlib import aclosing

import httpx
import structlog

from .contracts import ClientEvent, KeySource, UpstreamEvent
from .error_mapping import map_inband_error, map_stream_exception
from .errors import UpstreamTimeoutError
from .metrics import malformed_frames_total, stream_events_total
from .openai_compat import extract_delta_text, extract_inband_error
from .openrouter_session import UpstreamAttempt
from .policy import ModelPolicy

log = structlog.get_logger()

DONE_PAYLOAD = "[DONE]"


def _frame_payload(raw_line: str) -> str | None:
    line = raw_line.strip()
    if not line or not line.startswith("data:"):
        return None
    return line[len("data:") :].strip() or None


class SSEFrameDecoder:
    """
    Incremental ``data:`` line splitter.

    Network reads may end mid-line or mid-codepoint; the incomplete tail is
    kept until the next ``feed``.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return [p for p in (_frame_payload(line) for line in lines) if p is not None]

    def flush(self) -> list[str]:
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        payload = _frame_payload(rest)
        return [payload] if payload is not None else []


def parse_frame(payload: str) -> UpstreamEvent | None:
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return UpstreamEvent(text=extract_delta_text(chunk), error=extract_inband_error(chunk))


async def translate_upstream_stream(
    attempt: UpstreamAttempt,
    *,
    model: str,
    key_source: KeySource,
    policy: ModelPolicy,
) -> AsyncIterator[ClientEvent]:
    """
    Pump the adopted upstream body into client events until a terminal condition.

    Ends with exactly one ``done`` event unless the consumer goes away first, in
    which case the upstream response is released without emitting anything.
    """
    decoder = SSEFrameDecoder()
    finished = False
    try:
        async with aclosing(attempt.response.aiter_bytes()) as reader:
            while True:
                remaining = attempt.remaining()
                if remaining <= 0:
                    raise UpstreamTimeoutError(attempt.timeout_seconds)
                eof = False
                try:
                    chunk = await asyncio.wait_for(anext(reader), timeout=remaining)
                except StopAsyncIteration:
                    eof = True
                    payloads = decoder.flush()
                except asyncio.TimeoutError as e:
                    raise UpstreamTimeoutError(attempt.timeout_seconds) from e
                else:
                    payloads = decoder.feed(chunk)

                for payload in payloads:
                    if payload == DONE_PAYLOAD:
                        finished = True
                        yield ClientEvent.done()
                        return
                    event = parse_frame(payload)
                    if event is None:
                        malformed_frames_total.inc()
                        log.debug("stream_frame_malformed", model=model, payload=payload[:200])
                        continue
                    if event.text:
                        yield ClientEvent.delta(policy.sanitize_delta(model, event.text))
                    if event.error is not None:
                        log.info("stream_inband_error", model=model, code=event.error.get("code"))
                        yield map_inband_error(event.error, model=model, key_source=key_source, policy=policy)

                if eof:
                    break

        finished = True
        yield ClientEvent.done()
    except (UpstreamTimeoutError, httpx.HTTPError) as e:
        finished = True
        if isinstance(e, (UpstreamTimeoutError, httpx.TimeoutException)):
            log.warning("stream_timeout", model=model, timeout_seconds=attempt.timeout_seconds)
        else:
            log.warning("stream_read_error", model=model, error=str(e))
        yield map_stream_exception(e, key_source=key_source, timeout_seconds=attempt.timeout_seconds)
        yield ClientEvent.done()
    finally:
        if not finished:
            stream_events_total.labels(type="cancelled").inc()
            log.info("stream_cancelled", model=model)
        await attempt.aclose()
