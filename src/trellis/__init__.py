from importlib.metadata import version

from .compiler import PrefixPolicy, RoutingTable, compile, format_routes
from .compose import Chain, Handler, MiddlewareFn, Next, wrap
from .http import Request, Response
from .nodes import (
    Method,
    Node,
    fragment,
    get,
    h,
    method,
    post,
    prefix,
    route,
    server,
    use,
)
from .server import App, http_route, listen

__all__ = [
    "App",
    "Chain",
    "Handler",
    "Method",
    "MiddlewareFn",
    "Next",
    "Node",
    "PrefixPolicy",
    "Request",
    "Response",
    "RoutingTable",
    "__version__",
    "compile",
    "format_routes",
    "fragment",
    "get",
    "h",
    "http_route",
    "listen",
    "method",
    "post",
    "prefix",
    "route",
    "server",
    "use",
    "wrap",
]

__version__ = version("trellis-http")
