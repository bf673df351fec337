"""RSGI application and listener over a compiled routing table.

    app = server(route("/", get(home)), port=8000)
    asyncio.run(listen(app))

or, with an external granian process:

    granian --interface rsgi myapp:app   # where app = App.from_tree(tree)
"""

from __future__ import annotations

import asyncio
import logging
from contextvars import ContextVar
from typing import TYPE_CHECKING

from .compiler import PrefixPolicy, RoutingTable, compile, format_routes
from .http import Request, Response

if TYPE_CHECKING:
    from .compose import Handler
    from .nodes import Node
    from .rsgi import HTTPProtocol, HTTPScope

logger = logging.getLogger(__name__)

http_route: ContextVar[str] = ContextVar("http_route")

DEFAULT_ADDRESS = "127.0.0.1"
DEFAULT_PORT = 3000


async def not_found(_request: Request) -> Response:
    return Response.text("Not Found", status=404)


async def method_not_allowed(_request: Request) -> Response:
    return Response.text("Method Not Allowed", status=405)


class App:
    """Dispatches each request to the handler stored for its path and method.

    Unknown paths go to `not_found`. Known paths without a handler for the
    request method go to `method_not_allowed`, and the response gets an
    `allow` header listing the path's methods unless it already has one.
    Errors raised by handlers propagate to the server.
    """

    __slots__ = ("_method_not_allowed", "_not_found", "routes")

    def __init__(
        self,
        routes: RoutingTable,
        *,
        not_found: Handler[Request, Response] = not_found,
        method_not_allowed: Handler[Request, Response] = method_not_allowed,
    ) -> None:
        self.routes = routes
        self._not_found = not_found
        self._method_not_allowed = method_not_allowed

    @classmethod
    def from_tree(
        cls,
        root: Node,
        *,
        prefix: PrefixPolicy = PrefixPolicy.DROP,
        not_found: Handler[Request, Response] = not_found,
        method_not_allowed: Handler[Request, Response] = method_not_allowed,
    ) -> App:
        return cls(
            compile(root, prefix=prefix),
            not_found=not_found,
            method_not_allowed=method_not_allowed,
        )

    async def __rsgi__(self, scope: HTTPScope, proto: HTTPProtocol) -> None:
        if scope.proto != "http":
            logger.warning("ignoring %s connection to %s", scope.proto, scope.path)
            return
        response = await self.handle(Request.from_rsgi(scope, proto))
        proto.response_bytes(response.status, list(response.headers), response.body)

    async def handle(self, request: Request) -> Response:
        methods = self.routes.get(request.path)
        if methods is None:
            logger.debug("no route for %s %s", request.method, request.path)
            return await self._not_found(request)

        handler = methods.get(request.method)
        if handler is None:
            logger.debug("%s not allowed on %s", request.method, request.path)
            response = await self._method_not_allowed(request)
            if response.header("allow") is None:
                response = response.with_header("allow", ", ".join(sorted(methods)))
            return response

        token = http_route.set(request.path)
        try:
            return await handler(request)
        finally:
            http_route.reset(token)


def resolve_port(root: Node, port: int | None = None) -> int:
    """Explicit port, else the root node's `port` attribute, else 3000."""
    if port is not None:
        return port
    declared = root.attributes.get("port")
    if isinstance(declared, int):
        return declared
    return DEFAULT_PORT


async def listen(
    root: Node,
    *,
    port: int | None = None,
    address: str = DEFAULT_ADDRESS,
    prefix: PrefixPolicy = PrefixPolicy.DROP,
) -> None:
    """Compile root and serve it with granian until cancelled."""
    try:
        from granian.server.embed import Server
    except ImportError as e:
        msg = (
            "listen() requires the 'server' extra. "
            "Install with: uv add 'trellis-http[server]'"
        )
        raise ImportError(msg) from e

    app = App.from_tree(root, prefix=prefix)
    port = resolve_port(root, port)
    logger.info("trellis server starting on http://%s:%d", address, port)
    logger.info("routes:\n%s", format_routes(app.routes) or "(none)")

    server = Server(app, address=address, port=port)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await server.shutdown()
        raise
