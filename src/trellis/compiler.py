"""Compiles a declarative node tree into a flat routing table.

Runs once, before any request is served. Paths are concatenated literally
(no separator insertion, normalization or deduplication) and middleware
accumulates down the tree, so every handler in the table is already wrapped
with the full chain of its enclosing middleware scopes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .compose import Chain, Handler, MiddlewareFn, wrap
from .nodes import (
    AggregatorNode,
    FrozenDict,
    Method,
    MethodNode,
    MiddlewareNode,
    Node,
    PrefixNode,
    RouteNode,
)

type RoutingTable = FrozenDict[str, FrozenDict[Method, Handler[Any, Any]]]


class PrefixPolicy(Enum):
    """What the compiler does with `Prefix` nodes.

    DROP skips the node and its whole subtree. APPLY extends the path prefix
    with the node's path and compiles its children, without an entry for the
    prefix itself.
    """

    DROP = "drop"
    APPLY = "apply"


@dataclass(slots=True, frozen=True)
class CompileContext:
    path_prefix: str = ""
    middleware: tuple[MiddlewareFn[Any, Any], ...] = ()

    def nest(self, path: str) -> CompileContext:
        return CompileContext(self.path_prefix + path, self.middleware)

    def extend(self, middleware: tuple[MiddlewareFn[Any, Any], ...]) -> CompileContext:
        return CompileContext(self.path_prefix, self.middleware + middleware)


def compile(root: Node, *, prefix: PrefixPolicy = PrefixPolicy.DROP) -> RoutingTable:
    """Compile root into a routing table of path -> method -> handler.

    Unrecognized or malformed nodes are skipped along with their subtree, so
    this never raises for an acyclic tree. If two routes compile to the same
    path, the one compiled last replaces the other.
    """
    routes: dict[str, FrozenDict[Method, Handler[Any, Any]]] = {}
    _compile_node(root, CompileContext(), routes, prefix)
    return FrozenDict(routes)


def _compile_node(
    node: Node,
    context: CompileContext,
    routes: dict[str, FrozenDict[Method, Handler[Any, Any]]],
    policy: PrefixPolicy,
) -> None:
    match node:
        case AggregatorNode(children=children):
            for child in children:
                _compile_node(child, context, routes, policy)
        case RouteNode():
            _compile_route(node, context, routes, policy)
        case MiddlewareNode(middleware=middleware, children=children):
            scoped = context.extend(middleware)
            for child in children:
                _compile_node(child, scoped, routes, policy)
        case PrefixNode(path=path, children=children) if policy is PrefixPolicy.APPLY:
            nested = context.nest(path)
            for child in children:
                _compile_node(child, nested, routes, policy)
        case _:
            pass  # method leaves outside a route, dropped prefixes, unknown tags


def _compile_route(
    node: RouteNode,
    context: CompileContext,
    routes: dict[str, FrozenDict[Method, Handler[Any, Any]]],
    policy: PrefixPolicy,
) -> None:
    full_path = context.path_prefix + node.path
    nested = context.nest(node.path)
    methods: dict[Method, Handler[Any, Any]] = {}

    for child in node.children:
        match child:
            case MethodNode(method=method, handler=handler):
                # leaves take the route's own chain, not the nested one
                methods[method] = wrap(handler, context.middleware)
            case RouteNode() | MiddlewareNode():
                _compile_node(child, nested, routes, policy)
            case PrefixNode() if policy is PrefixPolicy.APPLY:
                _compile_node(child, nested, routes, policy)

    # written after nested routes so a nested route compiling to the same
    # path is replaced by this one
    if methods:
        routes[full_path] = FrozenDict(methods)


def format_routes(table: RoutingTable) -> str:
    """Format a routing table as a column-aligned route list.

        GET    /            home
        GET    /api/users   list_users    [logger > auth]
        POST   /api/users   create_user   [logger > auth]
        GET    /health      health        [logger]

    Sorted by path, then method. Returns "" for an empty table.
    """
    rows: list[tuple[str, str, str, list[str]]] = []
    for path, methods in table.items():
        for method, handler in methods.items():
            if isinstance(handler, Chain):
                mw = [_qualname(m) for m in handler.middleware]
                rows.append((method.value, path, _qualname(handler.handler), mw))
            else:
                rows.append((method.value, path, _qualname(handler), []))
    rows.sort(key=lambda r: (r[1], r[0]))
    if not rows:
        return ""

    method_w = max(len(r[0]) for r in rows)
    path_w = max(len(r[1]) for r in rows)
    handler_w = max(len(r[2]) for r in rows)

    lines: list[str] = []
    for method, path, handler, mw in rows:
        if mw:
            lines.append(
                f"{method:<{method_w}}   {path:<{path_w}}   "
                f"{handler:<{handler_w}}   [{' > '.join(mw)}]"
            )
        else:
            lines.append(f"{method:<{method_w}}   {path:<{path_w}}   {handler}")
    return "\n".join(lines)


def _qualname(obj: object) -> str:
    """Extract __qualname__ from a callable, falling back to repr."""
    return str(obj.__qualname__) if hasattr(obj, "__qualname__") else repr(obj)
