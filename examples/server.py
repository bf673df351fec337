# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "trellis-http[server] @ file:///${PROJECT_ROOT}/..",
# ]
# ///
"""RSGI server demo.

Fully functional web server using Granian + a trellis route tree.
"""

import asyncio
import logging
import time
from json.decoder import JSONDecodeError

from trellis import (
    Next,
    PrefixPolicy,
    Request,
    Response,
    get,
    listen,
    post,
    prefix,
    route,
    server,
    use,
)

logger = logging.getLogger("example")

# in-memory "database"
_users = [
    {"id": 1, "name": "Alice"},
    {"id": 2, "name": "Bob"},
]


async def log_requests(request: Request, next: Next[Response]) -> Response:
    start = time.perf_counter()
    response = await next()
    elapsed = (time.perf_counter() - start) * 1000
    logger.info("%s %s - %.1fms", request.method, request.path, elapsed)
    return response


async def auth(request: Request, next: Next[Response]) -> Response:
    if request.headers.get("authorization") is None:
        return Response.json({"error": "Unauthorized"}, status=401)
    return await next()


async def home(_request: Request) -> Response:
    return Response.json({"message": "Welcome to trellis!"})


async def health(_request: Request) -> Response:
    return Response.json({"status": "ok"})


async def list_users(_request: Request) -> Response:
    return Response.json({"users": _users})


async def create_user(request: Request) -> Response:
    try:
        payload = await request.json()
    except JSONDecodeError:
        return Response.text("Invalid json", status=422)
    if not isinstance(payload, dict) or not isinstance(payload.get("name"), str):
        return Response.text("Invalid user", status=422)
    user = {"id": len(_users) + 1, "name": payload["name"]}
    _users.append(user)
    return Response.json(user, status=201)


app = server(
    use(
        log_requests,
        # public routes
        route("/", get(home)),
        route("/health", get(health)),
        # api routes with auth
        prefix(
            "/api",
            use(
                auth,
                route("/users", get(list_users), post(create_user)),
            ),
        ),
    ),
    port=3000,
)


async def main() -> None:
    logging.basicConfig(level=logging.INFO)
    try:
        await listen(app, prefix=PrefixPolicy.APPLY)
    except asyncio.CancelledError:
        pass


if __name__ == "__main__":
    asyncio.run(main())
