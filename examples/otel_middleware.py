# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "trellis-http[server,otel]",
#     "httpx>=0.28.1,<0.29.0",
#     "opentelemetry-sdk>=1.39.1,<2.0.0",
#     "uvloop>=0.21.0",
# ]
#
# [tool.uv.sources]
# trellis-http = { path = "../", editable = true }
# ///
"""RSGI OpenTelemetry tracing middleware demo.

Shows usage of otel middleware with an in-memory exporter so traces can be
printed to the console without needing an external collector.
"""

import asyncio
import logging
import sys

import httpx
import uvloop
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from trellis import Request, Response, get, listen, post, route, server, use
from trellis.middleware.otel import otel

ADDRESS = "127.0.0.1"
PORT = 8000


# --- handlers ---
async def hello(_request: Request) -> Response:
    return Response.text("hello world")


async def greet(request: Request) -> Response:
    name = (await request.body()).decode() or "world"
    return Response.text(f"hello {name}")


# --- app setup ---
exporter = InMemorySpanExporter()
provider = TracerProvider()
provider.add_span_processor(SimpleSpanProcessor(exporter))

# NOTE: 404/405 responses come from the app, outside any route's middleware,
# so they are not traced.
app = server(
    use(
        otel(tracer_provider=provider),
        route("/", get(hello)),
        route("/greet", post(greet)),
    ),
    port=PORT,
)


# --- run ---
async def main() -> None:
    logging.basicConfig(level=logging.INFO)
    task = asyncio.create_task(listen(app, address=ADDRESS))
    await asyncio.sleep(0.1)
    await requests()
    provider.shutdown()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def requests() -> None:
    base_url = f"http://{ADDRESS}:{PORT}"

    async with httpx.AsyncClient(base_url=base_url) as client:
        print("--- GET / ---", file=sys.stderr)
        await client.get("/")

        print("--- POST /greet ---", file=sys.stderr)
        await client.post("/greet", content=b"trellis")

        print("--- GET /nonexistent (not traced) ---", file=sys.stderr)
        await client.get("/nonexistent")

        print("--- DELETE / (method not allowed, not traced) ---", file=sys.stderr)
        await client.delete("/")

    print("--- Collected spans ---", file=sys.stderr)
    for span in exporter.get_finished_spans():
        attrs = span.attributes or {}
        print(
            f"  {span.name:<30} "
            f"status={attrs['http.response.status_code']:<4} "
            f"route={attrs.get('http.route', ''):<20} "
            f"path={attrs['url.path']}",
            file=sys.stderr,
        )


if __name__ == "__main__":
    uvloop.run(main())
