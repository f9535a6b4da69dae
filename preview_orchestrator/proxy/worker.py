"""Reverse proxy worker process.

Run as a separate OS process by :class:`~preview_orchestrator.proxy.ProxyManager`::

    python -m preview_orchestrator.proxy.worker --target http://localhost:41234 --port 5501

Forwards every request to one fixed upstream origin.  Communicates with the
manager through JSON lines on stdout:

    {"type": "started", "url": "http://localhost:5501"}
    {"type": "log", "message": "..."}
    {"type": "unhandled_error", "message": "..."}

``started`` is printed once the listening socket is bound, before any request
is served.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import socket
import sys
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import urlsplit

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from .injection import DEBUG_SCRIPT, inject_html, needs_injection

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

# Headers that describe one hop of the connection, never forwarded.
HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)


def emit(message_type: str, **fields: Any) -> None:
    """Write one JSON message line for the manager."""
    sys.stdout.write(json.dumps({"type": message_type, **fields}) + "\n")
    sys.stdout.flush()


def cors_headers(allowed_origin: str) -> dict[str, str]:
    return {
        "access-control-allow-origin": allowed_origin,
        "access-control-allow-credentials": "true",
        "access-control-allow-methods": "GET, POST, PUT, DELETE, OPTIONS",
        "access-control-allow-headers": "Content-Type, Authorization, X-Requested-With",
    }


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError(f"Invalid target origin {url!r}. Must be absolute http/https URL.")
    return f"{parts.scheme}://{parts.netloc}"


def upstream_headers(request: Request, target_origin: str, inject: bool) -> dict[str, str]:
    """Copy request headers, rewriting ``Host``, ``Origin`` and ``Referer``."""
    target = urlsplit(target_origin)
    headers = {
        key: value
        for key, value in request.headers.items()
        if key not in HOP_BY_HOP and key not in ("host", "content-length")
    }
    headers["host"] = target.netloc
    if "origin" in headers:
        headers["origin"] = target_origin
    if "referer" in headers:
        ref = urlsplit(headers["referer"])
        if ref.scheme and ref.netloc:
            headers["referer"] = target_origin + ref.path + (f"?{ref.query}" if ref.query else "")
        else:
            del headers["referer"]
    if inject:
        # The body is rewritten, so ask for it uncompressed and uncached.
        headers["accept-encoding"] = "identity"
        headers.pop("if-none-match", None)
    return headers


def create_app(
    target_origin: str,
    allowed_origin: str = "http://localhost:3000",
    inject_debug_script: bool = True,
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the forwarding ASGI app for one fixed upstream.

    *transport* replaces the network transport of the upstream client.
    """
    target = origin_of(target_origin)
    cors = cors_headers(allowed_origin)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with httpx.AsyncClient(
            timeout=timeout, follow_redirects=False, transport=transport
        ) as client:
            app.state.client = client
            yield

    app = FastAPI(
        title="Preview Proxy",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def forward(request: Request, path: str) -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=cors)

        inject = inject_debug_script and needs_injection(request.url.path)
        url = target + request.url.path
        if request.url.query:
            url += f"?{request.url.query}"

        client: httpx.AsyncClient = request.app.state.client
        upstream_request = client.build_request(
            request.method,
            url,
            headers=upstream_headers(request, target, inject),
            content=await request.body(),
        )
        try:
            upstream = await client.send(upstream_request, stream=True)
        except httpx.HTTPError as exc:
            return PlainTextResponse(f"Upstream error: {exc}", status_code=502)

        content_type = upstream.headers.get("content-type", "")
        if inject and ("html" in content_type or not content_type):
            try:
                body = await upstream.aread()
            except httpx.HTTPError as exc:
                return PlainTextResponse(f"Upstream error: {exc}", status_code=502)
            finally:
                await upstream.aclose()
            response: Response = Response(
                content=inject_html(body, DEBUG_SCRIPT), status_code=upstream.status_code
            )
            skip = HOP_BY_HOP | {"content-encoding", "etag", "content-length"}
        else:
            response = StreamingResponse(
                upstream.aiter_raw(),
                status_code=upstream.status_code,
                background=BackgroundTask(upstream.aclose),
            )
            skip = HOP_BY_HOP

        for key, value in upstream.headers.multi_items():
            if key.lower() not in skip and key.lower() not in cors:
                response.headers.append(key, value)
        for key, value in cors.items():
            response.headers[key] = value
        return response

    return app


def _report_loop_errors(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    exc = context.get("exception")
    emit(
        "unhandled_error",
        message=context.get("message", "Unhandled exception in event loop"),
        detail=repr(exc) if exc is not None else None,
    )


async def serve(
    target_origin: str,
    port: int,
    host: str = "localhost",
    allowed_origin: str = "http://localhost:3000",
    inject_debug_script: bool = True,
) -> None:
    """Bind, announce ``started``, then serve until SIGTERM/SIGINT."""
    asyncio.get_running_loop().set_exception_handler(_report_loop_errors)

    app = create_app(target_origin, allowed_origin, inject_debug_script)
    config = uvicorn.Config(app, log_level="warning", access_log=False, lifespan="on")
    server = uvicorn.Server(config)

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind((host, port))
    sock.listen(128)
    sock.set_inheritable(True)

    url = f"http://{host}:{port}"
    emit("started", url=url)
    emit("log", message=f"listening on {url} -> {origin_of(target_origin)}")
    try:
        await server.serve(sockets=[sock])
    finally:
        sock.close()
        emit("log", message="server closed")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Preview reverse proxy worker")
    parser.add_argument("--target", required=True, help="Upstream origin, e.g. http://localhost:41234")
    parser.add_argument("--port", type=int, required=True)
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--allowed-origin", default="http://localhost:3000")
    parser.add_argument("--no-inject", action="store_true", help="Do not inject the debug script")
    args = parser.parse_args(argv)

    try:
        origin_of(args.target)
    except ValueError as exc:
        emit("log", message=str(exc))
        return 2

    try:
        asyncio.run(
            serve(
                args.target,
                args.port,
                host=args.host,
                allowed_origin=args.allowed_origin,
                inject_debug_script=not args.no_inject,
            )
        )
    except OSError as exc:
        emit("log", message=f"server error: {exc}")
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
