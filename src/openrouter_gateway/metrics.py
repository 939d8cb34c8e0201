from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

server_requests_total = Counter(
    "server_requests_total",
    "Total HTTP requests handled by server",
    labelnames=["path", "status"],
)

server_errors_total = Counter(
    "server_errors_total",
    "Total pre-stream errors returned by server",
    labelnames=["type"],
)

upstream_requests_total = Counter(
    "gateway_upstream_requests_total",
    "Upstream chat-completion calls by response status",
    labelnames=["status"],
)

upstream_latency_seconds = Histogram(
    "gateway_upstream_latency_seconds",
    "Time until upstream response headers arrive",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60],
)

fallbacks_total = Counter(
    "gateway_fallbacks_total",
    "Model-not-found fallback retries",
    labelnames=["outcome"],
)

stream_events_total = Counter(
    "gateway_stream_events_total",
    "Client events emitted on the normalized stream",
    labelnames=["type"],
)

malformed_frames_total = Counter(
    "gateway_malformed_frames_total",
    "Upstream SSE frames skipped because their JSON did not parse",
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
