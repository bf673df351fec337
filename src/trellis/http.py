"""Request and response values passed through handlers and middleware."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from .nodes import FrozenDict

if TYPE_CHECKING:
    from .rsgi import HTTPProtocol, HTTPScope


class Request:
    """Inbound HTTP request.

    Header names are lowercased. The body is read from the protocol on first
    access and cached. `client` and `scheme` may be rewritten by middleware
    (see `trellis.middleware.proxy_headers`) before later middleware and the
    handler see them.
    """

    __slots__ = (
        "_body",
        "_proto",
        "client",
        "headers",
        "method",
        "path",
        "query_string",
        "scheme",
    )

    def __init__(
        self,
        method: str,
        path: str,
        *,
        query_string: str = "",
        headers: Mapping[str, str] | None = None,
        client: str = "",
        scheme: str = "http",
        body: bytes | None = None,
        proto: HTTPProtocol | None = None,
    ) -> None:
        self.method = method.upper()
        self.path = path
        self.query_string = query_string
        self.headers: FrozenDict[str, str] = FrozenDict(
            (k.lower(), v) for k, v in (headers or {}).items()
        )
        self.client = client
        self.scheme = scheme
        self._body = body
        self._proto = proto

    @classmethod
    def from_rsgi(cls, scope: HTTPScope, proto: HTTPProtocol) -> Request:
        return cls(
            scope.method,
            scope.path,
            query_string=scope.query_string,
            headers=scope.headers,
            client=scope.client,
            scheme=scope.scheme,
            proto=proto,
        )

    async def body(self) -> bytes:
        if self._body is None:
            self._body = await self._proto() if self._proto is not None else b""
        return self._body

    async def json(self) -> Any:
        return json.loads(await self.body())

    def __repr__(self) -> str:
        return f"Request({self.method} {self.path})"


@dataclass(slots=True, frozen=True)
class Response:
    body: bytes = b""
    status: int = 200
    headers: tuple[tuple[str, str], ...] = ()

    @classmethod
    def text(
        cls,
        body: str,
        status: int = 200,
        headers: Iterable[tuple[str, str]] = (),
    ) -> Response:
        return cls(
            body.encode("utf-8"),
            status,
            (("content-type", "text/plain; charset=utf-8"), *headers),
        )

    @classmethod
    def json(
        cls,
        data: Any,
        status: int = 200,
        headers: Iterable[tuple[str, str]] = (),
    ) -> Response:
        return cls(
            json.dumps(data).encode("utf-8"),
            status,
            (("content-type", "application/json"), *headers),
        )

    def header(self, name: str) -> str | None:
        """First value of header name (case-insensitive), or None."""
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return None

    def with_header(self, name: str, value: str) -> Response:
        return replace(self, headers=(*self.headers, (name, value)))

    def with_status(self, status: int) -> Response:
        return replace(self, status=status)
