from typing import Any

import pytest
from conftest import mock_request
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind, StatusCode

from trellis.compose import wrap
from trellis.http import Request, Response
from trellis.middleware.otel import otel
from trellis.nodes import get, post, route, server, use
from trellis.server import App


@pytest.fixture
def exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def provider(exporter: InMemorySpanExporter) -> TracerProvider:
    tp = TracerProvider()
    tp.add_span_processor(SimpleSpanProcessor(exporter))
    return tp


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    return InMemoryMetricReader()


@pytest.fixture
def meter_provider(metric_reader: InMemoryMetricReader) -> MeterProvider:
    return MeterProvider(metric_readers=[metric_reader])


def status(code: int, body: str = "ok"):
    async def handler(request: Request) -> Response:
        return Response.text(body, status=code)

    return handler


def traced_app(mw, path: str, handler, *, method: str = "GET") -> App:
    leaf = get(handler) if method == "GET" else post(handler)
    return App.from_tree(server(use(mw, route(path, leaf))))


# --- Basic span creation ---


@pytest.mark.asyncio
async def test_basic_span(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    app = traced_app(otel(tracer_provider=provider), "/hello", status(200))

    await app.handle(mock_request("/hello"))

    spans = exporter.get_finished_spans()
    assert len(spans) == 1
    span = spans[0]
    assert span.name == "GET /hello"
    assert span.kind == SpanKind.SERVER
    assert span.attributes is not None
    assert span.attributes["http.request.method"] == "GET"
    assert span.attributes["url.path"] == "/hello"
    assert span.attributes["http.response.status_code"] == 200
    assert span.attributes["http.route"] == "/hello"


@pytest.mark.asyncio
async def test_span_name_without_route(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    # called outside App, so no matched route is known
    wrapped = wrap(status(404, "missing"), [otel(tracer_provider=provider)])

    await wrapped(mock_request("/nope"))

    spans = exporter.get_finished_spans()
    assert spans[0].name == "GET 404"
    assert spans[0].attributes is not None
    assert "http.route" not in spans[0].attributes


@pytest.mark.asyncio
async def test_5xx_sets_error_status(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    app = traced_app(otel(tracer_provider=provider), "/", status(503))

    await app.handle(mock_request("/"))

    spans = exporter.get_finished_spans()
    assert spans[0].status.status_code == StatusCode.ERROR


@pytest.mark.asyncio
async def test_4xx_does_not_set_error(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    app = traced_app(otel(tracer_provider=provider), "/", status(400))

    await app.handle(mock_request("/"))

    spans = exporter.get_finished_spans()
    assert spans[0].status.status_code == StatusCode.UNSET


@pytest.mark.asyncio
async def test_exception_records_and_raises(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    async def handler(request: Request) -> Response:
        msg = "boom"
        raise RuntimeError(msg)

    app = traced_app(otel(tracer_provider=provider), "/", handler)

    with pytest.raises(RuntimeError, match="boom"):
        await app.handle(mock_request("/"))

    spans = exporter.get_finished_spans()
    assert spans[0].status.status_code == StatusCode.ERROR
    exception_event = next(e for e in spans[0].events if e.name == "exception")
    assert exception_event.attributes is not None
    assert exception_event.attributes["exception.type"] == "RuntimeError"


@pytest.mark.asyncio
async def test_short_circuit_inside_span(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    async def deny(request: Request, next) -> Response:
        return Response.text("Unauthorized", status=401)

    app = App.from_tree(
        server(use([otel(tracer_provider=provider), deny], route("/", get(status(200)))))
    )

    response = await app.handle(mock_request("/"))

    assert response.status == 401
    spans = exporter.get_finished_spans()
    assert spans[0].attributes is not None
    assert spans[0].attributes["http.response.status_code"] == 401


# --- Attributes ---


@pytest.mark.asyncio
async def test_attributes_populated(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    app = traced_app(
        otel(tracer_provider=provider), "/search", status(204), method="POST"
    )
    request = Request(
        "POST",
        "/search",
        query_string="q=hello",
        headers={"User-Agent": "test-agent/1.0"},
        client="127.0.0.1",
    )

    await app.handle(request)

    attrs = exporter.get_finished_spans()[0].attributes
    assert attrs is not None
    assert attrs["http.request.method"] == "POST"
    assert attrs["url.path"] == "/search"
    assert attrs["url.scheme"] == "http"
    assert attrs["url.query"] == "q=hello"
    assert attrs["client.address"] == "127.0.0.1"
    assert attrs["user_agent.original"] == "test-agent/1.0"
    assert attrs["http.response.status_code"] == 204


@pytest.mark.asyncio
async def test_distributed_tracing_propagation(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    app = traced_app(otel(tracer_provider=provider), "/", status(200))

    trace_id = "0af7651916cd43dd8448eb211c80319c"
    parent_span_id = "b7ad6b7169203331"
    request = mock_request(
        "/", headers={"traceparent": f"00-{trace_id}-{parent_span_id}-01"}
    )

    await app.handle(request)

    spans = exporter.get_finished_spans()
    assert len(spans) == 1
    span = spans[0]
    assert span.context is not None
    assert f"{span.context.trace_id:032x}" == trace_id
    assert span.parent is not None
    assert f"{span.parent.span_id:016x}" == parent_span_id


# --- Metrics ---


def _get_metric(metric_reader: InMemoryMetricReader, name: str) -> Any:
    """Extract a metric by name from the reader."""
    data = metric_reader.get_metrics_data()
    assert data is not None
    for resource_metric in data.resource_metrics:
        for scope_metric in resource_metric.scope_metrics:
            for metric in scope_metric.metrics:
                if metric.name == name:
                    return metric
    msg = f"Metric {name!r} not found"
    raise AssertionError(msg)


@pytest.mark.asyncio
async def test_request_duration_recorded(
    provider: TracerProvider,
    meter_provider: MeterProvider,
    metric_reader: InMemoryMetricReader,
) -> None:
    mw = otel(tracer_provider=provider, meter_provider=meter_provider)
    app = traced_app(mw, "/hello", status(200))

    await app.handle(mock_request("/hello"))

    metric = _get_metric(metric_reader, "http.server.request.duration")
    assert metric.unit == "s"
    data_points = list(metric.data.data_points)
    assert len(data_points) == 1
    dp = data_points[0]
    assert dp.count == 1
    assert dp.attributes["http.request.method"] == "GET"
    assert dp.attributes["url.scheme"] == "http"
    assert dp.attributes["http.response.status_code"] == 200
    assert dp.attributes["http.route"] == "/hello"


@pytest.mark.asyncio
async def test_active_requests_incremented_and_decremented(
    provider: TracerProvider,
    meter_provider: MeterProvider,
    metric_reader: InMemoryMetricReader,
) -> None:
    mw = otel(tracer_provider=provider, meter_provider=meter_provider)
    app = traced_app(mw, "/", status(200))

    await app.handle(mock_request("/"))

    metric = _get_metric(metric_reader, "http.server.active_requests")
    assert metric.unit == "{request}"
    data_points = list(metric.data.data_points)
    assert len(data_points) == 1
    assert data_points[0].value == 0
