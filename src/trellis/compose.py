"""Onion-style middleware composition.

A middleware receives the request and a zero argument continuation. Awaiting
the continuation runs the rest of the chain (later middleware, then the
terminal handler); returning without awaiting it short-circuits the chain.

    async def timing(request, next):
        start = time.perf_counter()
        response = await next()
        return response.with_header("x-time", f"{time.perf_counter() - start:.3f}")
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence

type Handler[Req, Res] = Callable[[Req], Awaitable[Res]]
type Next[Res] = Callable[[], Awaitable[Res]]
type MiddlewareFn[Req, Res] = Callable[[Req, Next[Res]], Awaitable[Res]]


class Chain[Req, Res]:
    """Terminal handler wrapped in an ordered middleware chain.

    Every call builds its own cursor, so concurrent requests never share
    composition state. Calling `next()` more than once from the same
    middleware is not guarded against.
    """

    __slots__ = ("handler", "middleware")

    def __init__(
        self,
        handler: Handler[Req, Res],
        middleware: tuple[MiddlewareFn[Req, Res], ...],
    ) -> None:
        self.handler = handler
        self.middleware = middleware

    def __call__(self, request: Req) -> Awaitable[Res]:
        handler = self.handler
        middleware = self.middleware
        cursor = 0

        def next_() -> Awaitable[Res]:
            nonlocal cursor
            if cursor < len(middleware):
                mw = middleware[cursor]
                cursor += 1
                return mw(request, next_)
            return handler(request)

        return next_()

    def __repr__(self) -> str:
        return f"Chain(handler={self.handler!r}, middleware={self.middleware!r})"


def wrap[Req, Res](
    handler: Handler[Req, Res],
    chain: Sequence[MiddlewareFn[Req, Res]],
) -> Handler[Req, Res]:
    """Wrap handler with chain, earliest middleware outermost.

    An empty chain returns handler itself.
    """
    if not chain:
        return handler
    return Chain(handler, tuple(chain))
