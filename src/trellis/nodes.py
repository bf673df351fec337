"""Declarative node tree.

Trees are built from tag + attributes + children, and every node is
classified once, at build time, into one of a closed set of variants:

    AggregatorNode   Server, Fragment
    RouteNode        Route
    PrefixNode       Prefix
    MiddlewareNode   Middleware
    MethodNode       recognized HTTP verbs (GET and POST by default)
    UnknownNode      everything else, including malformed recognized tags

    app = server(
        use(logger,
            route("/", get(home)),
            route("/api",
                use(auth,
                    route("/users", get(list_users), post(create_user)),
                ),
            ),
        ),
        port=3000,
    )
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Never

from .compose import Handler, MiddlewareFn


class Method(StrEnum):
    """HTTP methods a method leaf can be declared for.

    Methods from the following RFCs are all observed:

        * RFC 9110: HTTP Semantics, obsoletes 7231, which obsoleted 2616
        * RFC 5789: PATCH Method for HTTP

    Only the verbs in `DEFAULT_METHODS` are recognized unless the builder is
    told otherwise.
    """

    CONNECT = "CONNECT"  # Establish a connection to the server.
    DELETE = "DELETE"  # Remove the target.
    GET = "GET"  # Retrieve the target.
    HEAD = "HEAD"  # Same as GET, but only retrieve status line and header section.
    OPTIONS = "OPTIONS"  # Describe the communication options for the target.
    PATCH = "PATCH"  # Apply partial modifications to a target.
    POST = "POST"  # Perform target-specific processing with the request payload.
    PUT = "PUT"  # Replace the target with the request payload.
    TRACE = "TRACE"  # Perform a message loop-back test along the path to the target.

    def __repr__(self) -> str:
        return str(self.value)


DEFAULT_METHODS: frozenset[Method] = frozenset({Method.GET, Method.POST})


class FrozenDict[K, V](dict[K, V]):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._hash: int | None = None

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self.items()))
        return self._hash

    def _immutable(self, *args, **kwargs) -> Never:
        msg = "FrozenDict is immutable"
        raise TypeError(msg)

    __setitem__ = __delitem__ = clear = pop = popitem = setdefault = update = _immutable
    __ior__ = _immutable


@dataclass(slots=True, frozen=True)
class AggregatorNode:
    """Transparent node, children inherit its context unchanged."""

    tag: str
    attributes: FrozenDict[str, Any] = field(default_factory=FrozenDict)
    children: tuple[Node, ...] = ()


@dataclass(slots=True, frozen=True)
class RouteNode:
    path: str
    children: tuple[Node, ...] = ()
    attributes: FrozenDict[str, Any] = field(default_factory=FrozenDict)

    @property
    def tag(self) -> str:
        return "Route"


@dataclass(slots=True, frozen=True)
class PrefixNode:
    """Groups routes under a path segment without an entry of its own."""

    path: str
    children: tuple[Node, ...] = ()
    attributes: FrozenDict[str, Any] = field(default_factory=FrozenDict)

    @property
    def tag(self) -> str:
        return "Prefix"


@dataclass(slots=True, frozen=True)
class MiddlewareNode:
    middleware: tuple[MiddlewareFn[Any, Any], ...]
    children: tuple[Node, ...] = ()
    attributes: FrozenDict[str, Any] = field(default_factory=FrozenDict)

    @property
    def tag(self) -> str:
        return "Middleware"


@dataclass(slots=True, frozen=True)
class MethodNode:
    method: Method
    handler: Handler[Any, Any]
    children: tuple[Node, ...] = ()
    attributes: FrozenDict[str, Any] = field(default_factory=FrozenDict)

    @property
    def tag(self) -> str:
        return self.method.value


@dataclass(slots=True, frozen=True)
class UnknownNode:
    tag: str
    attributes: FrozenDict[str, Any] = field(default_factory=FrozenDict)
    children: tuple[Node, ...] = ()


type Node = (
    AggregatorNode | RouteNode | PrefixNode | MiddlewareNode | MethodNode | UnknownNode
)
type Child = Node | Iterable[Child] | None


def h(
    tag: str | Callable[..., Any],
    attributes: Mapping[str, Any] | None = None,
    *children: Child,
    methods: Iterable[Method | str] = DEFAULT_METHODS,
) -> Node:
    """Build a node from tag, attributes and children.

    Nested lists/tuples of children are flattened and None children dropped.
    A "children" attribute is placed ahead of the positional children.
    A component function may be passed as tag, its `__name__` is used.
    `methods` lists the verbs recognized as method leaves; unknown verbs
    raise ValueError.
    """
    if callable(tag):
        tag = tag.__name__
    attrs = dict(attributes) if attributes is not None else {}
    declared = attrs.pop("children", None)
    flat = tuple(_flatten((declared, children)))
    recognized = frozenset(Method(m) for m in methods)
    return _classify(tag, FrozenDict(attrs), flat, recognized)


def _flatten(children: Iterable[Child]) -> Iterator[Node]:
    for child in children:
        if child is None:
            continue
        if isinstance(child, (list, tuple)):
            yield from _flatten(child)
        else:
            yield child


def _classify(
    tag: str,
    attributes: FrozenDict[str, Any],
    children: tuple[Node, ...],
    methods: frozenset[Method],
) -> Node:
    match tag:
        case "Server" | "Fragment":
            return AggregatorNode(tag, attributes, children)
        case "Route" | "Prefix":
            path = attributes.get("path")
            if isinstance(path, str):
                cls = RouteNode if tag == "Route" else PrefixNode
                return cls(path=path, children=children, attributes=attributes)
        case "Middleware":
            chain = _middleware_tuple(attributes.get("use"))
            if chain is not None:
                return MiddlewareNode(
                    middleware=chain, children=children, attributes=attributes
                )
        case _ if tag in methods:
            handler = attributes.get("handler")
            if callable(handler):
                return MethodNode(
                    method=Method(tag),
                    handler=handler,
                    children=children,
                    attributes=attributes,
                )
    # unrecognized or malformed, skipped by the compiler
    return UnknownNode(tag, attributes, children)


def _middleware_tuple(use: object) -> tuple[MiddlewareFn[Any, Any], ...] | None:
    if callable(use):
        return (use,)
    if isinstance(use, (list, tuple)) and all(callable(m) for m in use):
        return tuple(use)
    return None


# --- components ---------------------------------------------------------------
def server(*children: Child, port: int | None = None) -> Node:
    return h("Server", {"port": port} if port is not None else None, *children)


def fragment(*children: Child) -> Node:
    return h("Fragment", None, *children)


def route(path: str, *children: Child) -> Node:
    return h("Route", {"path": path}, *children)


def prefix(path: str, *children: Child) -> Node:
    return h("Prefix", {"path": path}, *children)


def use(
    middleware: MiddlewareFn[Any, Any] | Iterable[MiddlewareFn[Any, Any]],
    *children: Child,
) -> Node:
    """Scope middleware over children, a single function or an ordered list."""
    if not callable(middleware):
        middleware = tuple(middleware)
    return h("Middleware", {"use": middleware}, *children)


def get(handler: Handler[Any, Any]) -> Node:
    return h("GET", {"handler": handler})


def post(handler: Handler[Any, Any]) -> Node:
    return h("POST", {"handler": handler})


def method(verb: Method | str, handler: Handler[Any, Any]) -> Node:
    """Method leaf for any verb in `Method`, beyond the GET/POST defaults."""
    verb = Method(verb.upper())
    return h(verb.value, {"handler": handler}, methods={verb})
