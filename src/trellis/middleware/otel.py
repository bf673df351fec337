"""OpenTelemetry tracing and metrics middleware.

Creates HTTP server spans and metrics with semantic conventions for each request.

Install with: uv add "trellis-http[otel]"
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from trellis.compose import MiddlewareFn, Next
    from trellis.http import Request, Response

try:
    from opentelemetry import metrics, trace
    from opentelemetry.propagate import extract
    from opentelemetry.trace import (
        SpanKind,
        StatusCode,
        TracerProvider,
    )
except ImportError as e:
    msg = (
        "OpenTelemetry middleware requires the 'otel' extra. "
        "Install with: uv add 'trellis-http[otel]'"
    )
    raise ImportError(msg) from e

from trellis.server import http_route

_DURATION_BUCKETS = (
    0.001,
    0.005,
    0.01,
    0.025,
    0.05,
    0.075,
    0.1,
    0.25,
    0.5,
    0.75,
    1.0,
    2.5,
    5.0,
    7.5,
    10.0,
)


def otel(
    *,
    tracer_provider: TracerProvider | None = None,
    meter_provider: metrics.MeterProvider | None = None,
) -> MiddlewareFn[Request, Response]:
    """Create OpenTelemetry tracing and metrics middleware.

    Creates a server span with HTTP semantic conventions around the rest of
    the chain. Declare it in the outermost middleware scope so the span
    covers every other middleware.

    Extracts trace context from incoming request headers (e.g. ``traceparent``)
    for distributed tracing. Only depends on ``opentelemetry-api``; users bring
    their own SDK and exporters.

    Metrics emitted:
        - ``http.server.request.duration`` (histogram, seconds)
        - ``http.server.active_requests`` (up-down counter)

    Args:
        tracer_provider: Optional TracerProvider. If None, uses the global provider.
        meter_provider: Optional MeterProvider. If None, uses the global provider.

    Example:
        server(use(otel(), route("/", get(home))))
    """
    tracer = trace.get_tracer(
        "trellis",
        tracer_provider=tracer_provider,
    )
    meter = metrics.get_meter(
        "trellis",
        meter_provider=meter_provider,
    )
    duration_histogram = meter.create_histogram(
        "http.server.request.duration",
        unit="s",
        description="Duration of HTTP server requests.",
        explicit_bucket_boundaries_advisory=_DURATION_BUCKETS,
    )
    active_requests_counter = meter.create_up_down_counter(
        "http.server.active_requests",
        unit="{request}",
        description="Number of active HTTP server requests.",
    )

    async def middleware(request: Request, next: Next[Response]) -> Response:
        # Extract propagated context from request headers
        ctx = extract(request.headers)

        # Routes are literal paths, so a matched route is the path itself
        route = http_route.get("")
        method = request.method
        span_name = f"{method} {route}" if route else method

        attributes: dict[str, str | int] = {
            "http.request.method": method,
            "url.path": request.path,
            "url.scheme": request.scheme,
            "client.address": request.client,
        }
        if route:
            attributes["http.route"] = route
        if request.query_string:
            attributes["url.query"] = request.query_string
        user_agent = request.headers.get("user-agent")
        if user_agent is not None:
            attributes["user_agent.original"] = user_agent

        active_attrs: dict[str, str | int] = {
            "http.request.method": method,
            "url.scheme": request.scheme,
        }
        if route:
            active_attrs["http.route"] = route

        active_requests_counter.add(1, active_attrs)
        start = time.perf_counter()
        status: int | None = None

        with tracer.start_as_current_span(
            span_name,
            context=ctx,
            kind=SpanKind.SERVER,
            attributes=attributes,
            record_exception=True,
            set_status_on_exception=True,
        ) as span:
            try:
                response = await next()
                status = response.status
                return response
            finally:
                duration = time.perf_counter() - start
                active_requests_counter.add(-1, active_attrs)
                duration_attrs = dict(active_attrs)
                if status is not None:
                    span.set_attribute("http.response.status_code", status)
                    duration_attrs["http.response.status_code"] = status
                    if not route:
                        span.update_name(f"{method} {status}")
                    if status >= 500:
                        span.set_status(StatusCode.ERROR)
                duration_histogram.record(duration, duration_attrs)

    return middleware
