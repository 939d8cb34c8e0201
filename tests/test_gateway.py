import asyncio
import dataclasses
import json

import httpx
import pytest

from openrouter_gateway import GatewayConfig, StreamingGateway
from openrouter_gateway.openai_compat import GatewayRequestBody
from openrouter_gateway.openrouter_session import OpenRouterSession

FALLBACK = "anthropic/claude-3.7-sonnet"


class ChunkedStream(httpx.AsyncByteStream):
    """Upstream body that yields fixed chunks and optionally never ends."""

    def __init__(self, chunks: list[bytes], *, hang: bool = False):
        self.chunks = chunks
        self.hang = hang
        self.reads = 0
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            self.reads += 1
            yield chunk
        if self.hang:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


def _frame(content) -> bytes:
    return f"data: {json.dumps({'choices': [{'index': 0, 'delta': {'content': content}}]})}\n\n".encode("utf-8")


def _gateway(handler, **overrides) -> StreamingGateway:
    overrides.setdefault("openrouter_api_key", None)
    cfg = GatewayConfig(enable_metrics=False, **overrides)
    session = OpenRouterSession(
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        base_url="https://upstream.test/api/v1",
        timeout_seconds=cfg.upstream_timeout_seconds,
    )
    return StreamingGateway(cfg, session=session)


def _request(gw: StreamingGateway, model: str = "openai/gpt-4o", **fields):
    fields.setdefault("messages", [{"role": "user", "content": "hi"}])
    fields.setdefault("apiKey", "sk-user")
    return gw.normalize(GatewayRequestBody.model_validate({"model": model, **fields}))


async def _collect(gw: StreamingGateway, req) -> list[dict | None]:
    return [e.data async for e in gw.stream_events(req)]


@pytest.mark.asyncio
async def test_stream_emits_metadata_deltas_then_done():
    stream = ChunkedStream([_frame("Hel"), _frame("lo"), b"data: [DONE]\n\n"])

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    gw = _gateway(handler)
    events = await _collect(gw, _request(gw))

    assert events == [
        {"provider": "openrouter", "usedKeyType": "user"},
        {"delta": "Hel"},
        {"delta": "lo"},
        None,
    ]
    assert stream.closed


@pytest.mark.asyncio
async def test_forwarded_payload_is_trimmed_to_last_eight():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=b"data: [DONE]\n\n")

    gw = _gateway(handler)
    messages = [{"role": "user" if i % 2 == 0 else "assistant", "content": f"m{i}"} for i in range(12)]
    await _collect(gw, _request(gw, messages=messages))

    assert seen["body"]["stream"] is True
    assert [m["content"] for m in seen["body"]["messages"]] == [f"m{i}" for i in range(4, 12)]


@pytest.mark.asyncio
async def test_done_mid_stream_stops_processing():
    stream = ChunkedStream([_frame("a") + b"data: [DONE]\n\n" + _frame("ignored"), _frame("never read")])

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    gw = _gateway(handler)
    events = await _collect(gw, _request(gw))

    assert events[1:] == [{"delta": "a"}, None]
    assert stream.reads == 1
    assert stream.closed


@pytest.mark.asyncio
async def test_malformed_frame_is_skipped():
    body = _frame("one") + b'data: {"choices": [{"delta": \n\n' + _frame("two") + b"data: [DONE]\n\n"

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body)

    gw = _gateway(handler)
    events = await _collect(gw, _request(gw))

    assert events[1:] == [{"delta": "one"}, {"delta": "two"}, None]


@pytest.mark.asyncio
async def test_end_of_stream_without_done_still_terminates():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_frame("tail").rstrip(b"\n"))

    gw = _gateway(handler)
    events = await _collect(gw, _request(gw))
    assert events[1:] == [{"delta": "tail"}, None]


@pytest.mark.asyncio
async def test_model_specific_sanitizer_rewrites_deltas():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_frame("<answer><b>Hi</b><br>there</answer>") + b"data: [DONE]\n\n")

    gw = _gateway(handler)
    events = await _collect(gw, _request(gw, model="tencent/hunyuan-a13b-instruct"))
    assert events[1] == {"delta": "**Hi**\nthere"}


@pytest.mark.asyncio
async def test_inband_error_is_reported_and_stream_continues():
    body = (
        _frame("a")
        + b'data: {"error": {"code": 402, "message": "Insufficient credits"}}\n\n'
        + b'data: {"error": {"code": 429, "message": "Rate limited"}}\n\n'
        + _frame("b")
        + b"data: [DONE]\n\n"
    )

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body)

    gw = _gateway(handler)
    events = await _collect(gw, _request(gw, model="z-ai/glm-4.5-air"))

    assert events[1] == {"delta": "a"}
    assert events[2]["code"] == 402
    assert "GLM 4.5 Air is a paid model" in events[2]["error"]
    assert events[3] == {"error": "Rate limited", "code": 429, "provider": "openrouter", "usedKeyType": "user"}
    assert events[4:] == [{"delta": "b"}, None]


@pytest.mark.asyncio
async def test_http_402_maps_to_friendly_message_with_details():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(402, text="insufficient credit")

    gw = _gateway(handler)
    events = await _collect(gw, _request(gw, model="z-ai/glm-4.5-air:free"))

    assert len(events) == 2
    assert events[0]["code"] == 402
    assert events[0]["error"].startswith("Provider returned 402")
    assert events[0]["error"].endswith(" Details: insufficient credit")
    assert events[1] is None


@pytest.mark.asyncio
async def test_non_404_error_is_not_retried():
    calls = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(500, text="")

    gw = _gateway(handler)
    events = await _collect(gw, _request(gw, model="anthropic/claude-sonnet-4"))

    assert calls["n"] == 1
    assert events == [{"error": "Upstream error", "code": 500, "provider": "openrouter", "usedKeyType": "user"}, None]


def _fallback_handler(second):
    models: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        models.append(json.loads(request.content)["model"])
        if len(models) == 1:
            return httpx.Response(404, json={"error": {"message": "Model not found", "code": 404}})
        return second(request)

    return handler, models


@pytest.mark.asyncio
async def test_fallback_retry_success_has_no_error():
    handler, models = _fallback_handler(
        lambda _: httpx.Response(200, content=_frame("from fallback") + b"data: [DONE]\n\n")
    )
    gw = _gateway(handler)
    events = await _collect(gw, _request(gw, model="anthropic/claude-sonnet-4"))

    assert models == ["anthropic/claude-sonnet-4", FALLBACK]
    assert not any(e and "error" in e for e in events)
    assert events[1:] == [{"delta": "from fallback"}, None]


@pytest.mark.asyncio
async def test_fallback_retry_failure_emits_one_error():
    handler, models = _fallback_handler(lambda _: httpx.Response(503, text="down"))
    gw = _gateway(handler)
    events = await _collect(gw, _request(gw, model="anthropic/claude-sonnet-4"))

    assert models == ["anthropic/claude-sonnet-4", FALLBACK]
    assert len(events) == 2
    assert events[0]["code"] == 503
    assert "404 model not found" in events[0]["error"]
    assert f"Tried fallback to {FALLBACK} but it also failed." in events[0]["error"]
    assert events[1] is None


@pytest.mark.asyncio
async def test_fallback_retry_exception_emits_one_error():
    def second(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    handler, models = _fallback_handler(second)
    gw = _gateway(handler)
    events = await _collect(gw, _request(gw, model="anthropic/claude-sonnet-4"))

    assert len(models) == 2
    assert events[0]["code"] == 404
    assert events[0]["error"].endswith("A fallback attempt was unsuccessful.")
    assert events[1] is None


@pytest.mark.asyncio
async def test_404_without_alias_is_not_retried():
    calls = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(404, text="model not found")

    gw = _gateway(handler)
    events = await _collect(gw, _request(gw, model="some/unknown-model"))

    assert calls["n"] == 1
    assert events[0]["code"] == 404
    assert events[0]["error"] == "model not found"


@pytest.mark.asyncio
async def test_read_timeout_emits_408_and_releases_upstream():
    stream = ChunkedStream([_frame("partial")], hang=True)

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    gw = _gateway(handler, upstream_timeout_seconds=0.05)
    events = await _collect(gw, _request(gw))

    assert events[1] == {"delta": "partial"}
    assert events[2] == {
        "error": "Request timed out after 50ms",
        "code": 408,
        "provider": "openrouter",
        "usedKeyType": "user",
    }
    assert events[3] is None
    assert stream.closed


@pytest.mark.asyncio
async def test_connect_timeout_is_reported_in_band():
    async def handler(_: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200)

    gw = _gateway(handler, upstream_timeout_seconds=0.05)
    events = await _collect(gw, _request(gw))
    assert events[0]["code"] == 408
    assert events[1] is None


@pytest.mark.asyncio
async def test_closing_the_client_stream_cancels_upstream():
    stream = ChunkedStream([_frame("hi")], hang=True)

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    gw = _gateway(handler)
    events = gw.stream_events(_request(gw))
    assert (await anext(events)).kind == "metadata"
    assert (await anext(events)).data == {"delta": "hi"}
    await events.aclose()

    assert stream.closed


@pytest.mark.asyncio
async def test_cancelling_mid_read_releases_upstream_and_leaves_no_tasks():
    stream = ChunkedStream([_frame("hi")], hang=True)

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    gw = _gateway(handler, upstream_timeout_seconds=30)
    seen = []

    async def consume():
        async for event in gw.stream_bytes(_request(gw)):
            seen.append(event)

    task = asyncio.create_task(consume())
    for _ in range(50):
        if len(seen) >= 2:
            break
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert stream.closed
    assert seen[-1] != b"data: [DONE]\n\n"
    pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task() and not t.done()]
    assert pending == []


@pytest.mark.asyncio
async def test_image_generation_model_uses_single_completion():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "choices": [
                    {
                        "message": {
                            "content": "Here",
                            "images": [{"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}}],
                        }
                    }
                ]
            },
        )

    gw = _gateway(handler, openrouter_api_key="sk-shared")
    events = await _collect(gw, _request(gw, model="google/gemini-2.5-flash-image-preview", apiKey=None))

    assert seen["body"]["stream"] is False
    assert events == [
        {"meta": {"provider": "openrouter", "usedKeyType": "shared", "isImageGeneration": True}},
        {"token": "Here\n\n![Generated image](data:image/png;base64,AAAA)"},
        None,
    ]


@pytest.mark.asyncio
async def test_image_generation_failure_is_an_error_event():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(402, text="")

    gw = _gateway(handler)
    events = await _collect(gw, _request(gw, model="google/gemini-2.5-flash-image-preview"))
    assert events[0]["code"] == 402
    assert events[1] is None


@pytest.mark.asyncio
async def test_non_ascii_title_is_encoded_and_stream_completes():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["title"] = request.headers["x-title"]
        return httpx.Response(200, content=_frame("ok") + b"data: [DONE]\n\n")

    gw = _gateway(handler)
    chunks = [c async for c in gw.stream_bytes(_request(gw, title="Café Chat"))]

    assert seen["title"] == "Caf%C3%A9 Chat"
    assert chunks[-1] == b"data: [DONE]\n\n"


@pytest.mark.asyncio
async def test_unbuildable_upstream_request_is_an_error_event():
    def handler(_: httpx.Request) -> httpx.Response:
        raise AssertionError("request must not be sent")

    gw = _gateway(handler)
    req = dataclasses.replace(_request(gw), title="Café Chat")
    events = await _collect(gw, req)

    assert events == [
        {"error": "Upstream request could not be built.", "code": 502, "provider": "openrouter", "usedKeyType": "user"},
        None,
    ]


@pytest.mark.asyncio
async def test_unexpected_dispatch_failure_still_ends_with_done():
    def handler(_: httpx.Request) -> httpx.Response:
        raise RuntimeError("boom")

    gw = _gateway(handler)
    chunks = [c async for c in gw.stream_bytes(_request(gw))]

    assert json.loads(chunks[0][len(b"data: ") :]) == {
        "error": "Stream error",
        "code": 500,
        "provider": "openrouter",
        "usedKeyType": "user",
    }
    assert chunks[1:] == [b"data: [DONE]\n\n"]


@pytest.mark.asyncio
async def test_unexpected_image_generation_failure_still_ends_with_done():
    def handler(_: httpx.Request) -> httpx.Response:
        raise RuntimeError("boom")

    gw = _gateway(handler)
    events = await _collect(gw, _request(gw, model="google/gemini-2.5-flash-image-preview"))

    assert events[0]["code"] == 500
    assert events[1:] == [None]


class TrackedResponse(httpx.Response):
    """Response whose byte iterator records when it has been closed."""

    reader_closed = False

    async def aiter_bytes(self, chunk_size=None):
        try:
            yield _frame("a") + b"data: [DONE]\n\n"
            yield _frame("never read")
        finally:
            self.reader_closed = True


@pytest.mark.asyncio
async def test_upstream_byte_reader_is_closed_when_stream_ends_early():
    responses = []

    def handler(_: httpx.Request) -> httpx.Response:
        resp = TrackedResponse(200, content=b"")
        responses.append(resp)
        return resp

    gw = _gateway(handler)
    events = await _collect(gw, _request(gw))

    assert events[1:] == [{"delta": "a"}, None]
    assert responses[0].reader_closed
