"""Proxy headers middleware for applications behind reverse proxies (e.g. AWS ALB).

Parses X-Forwarded-For and X-Forwarded-Proto headers from trusted proxies and
overrides request.client and request.scheme so later middleware and the
handler see the real client information.

Headers left in request.headers for direct access:
    - x-forwarded-port
    - x-amzn-trace-id
    - x-amzn-tls-version
    - x-amzn-tls-cipher-suite
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from trellis.compose import MiddlewareFn, Next
    from trellis.http import Request, Response


def proxy_headers(
    *,
    trusted_proxies: frozenset[str],
    num_proxies: int = 1,
) -> MiddlewareFn[Request, Response]:
    """Create proxy headers middleware.

    Args:
        trusted_proxies: Set of proxy IP addresses to trust. Use
            `frozenset({"*"})` to trust all connecting clients.
        num_proxies: Number of proxy hops. The real client IP is taken from
            X-Forwarded-For at position `-(num_proxies)` from the right.
            Default `1` is correct for a single proxy (e.g. ALB only).
            Use `2` for two proxy layers (e.g. CloudFront + ALB).

    Example:
        server(
            use(proxy_headers(trusted_proxies=frozenset({"10.0.0.1"})),
                route("/", get(home)),
            ),
        )
    """
    if num_proxies < 1:
        msg = f"num_proxies must be >= 1, got {num_proxies}"
        raise ValueError(msg)
    if not trusted_proxies:
        msg = "trusted_proxies must not be empty"
        raise ValueError(msg)

    trust_all = "*" in trusted_proxies

    async def middleware(request: Request, next: Next[Response]) -> Response:
        if not (trust_all or _host(request.client) in trusted_proxies):
            return await next()

        xff = request.headers.get("x-forwarded-for")
        if xff is not None:
            client = _pick(xff, num_proxies)
            if client:
                request.client = client

        xfp = request.headers.get("x-forwarded-proto")
        if xfp is not None:
            scheme = _pick(xfp, num_proxies)
            if scheme:
                request.scheme = scheme

        return await next()

    return middleware


def _pick(header: str, num_proxies: int) -> str:
    """Entry num_proxies from the right of a comma separated header."""
    # rsplit with maxsplit avoids splitting the full string
    parts = header.rsplit(",", maxsplit=num_proxies)
    idx = -num_proxies if len(parts) >= num_proxies else 0
    return parts[idx].strip()


def _host(client: str) -> str:
    """Strip the port from an RSGI client address."""
    if client.startswith("["):  # [::1]:8080
        return client[1 : client.find("]")]
    if client.count(":") == 1:
        return client.split(":", 1)[0]
    return client
