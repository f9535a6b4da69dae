"""Unit tests for the proxy worker app (preview_orchestrator.proxy.worker).

The upstream is an ``httpx.MockTransport``; requests go through FastAPI's
``TestClient`` so the lifespan-managed upstream client is exercised.
"""

from __future__ import annotations

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from preview_orchestrator.proxy import worker
from preview_orchestrator.proxy.worker import (
    cors_headers,
    create_app,
    origin_of,
)

TARGET = "http://localhost:41234"
ALLOWED = "http://localhost:3000"

PAGE = b"<html><body><h1>Preview</h1></body></html>"


def make_client(handler, **kwargs) -> TestClient:
    app = create_app(TARGET, ALLOWED, transport=httpx.MockTransport(handler), **kwargs)
    return TestClient(app)


class TestOriginOf:
    @pytest.mark.unit
    def test_strips_path(self):
        assert origin_of("http://localhost:41234/some/path?q=1") == TARGET

    @pytest.mark.unit
    @pytest.mark.parametrize("url", ["localhost:41234", "ftp://host", "http://"])
    def test_invalid(self, url: str):
        with pytest.raises(ValueError):
            origin_of(url)

    @pytest.mark.unit
    def test_cors_headers(self):
        headers = cors_headers(ALLOWED)
        assert headers["access-control-allow-origin"] == ALLOWED
        assert headers["access-control-allow-credentials"] == "true"


class TestForwarding:
    @pytest.mark.unit
    def test_html_gets_debug_script(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                content=PAGE,
                headers={"content-type": "text/html; charset=utf-8", "etag": '"abc"'},
            )

        with make_client(handler) as client:
            response = client.get("/", headers={"if-none-match": '"abc"'})

        assert response.status_code == 200
        assert b"postMessage" in response.content
        assert response.content.index(b"postMessage") < response.content.index(b"</body>")
        assert "etag" not in response.headers
        assert int(response.headers["content-length"]) == len(response.content)

        upstream = seen[0]
        assert str(upstream.url) == f"{TARGET}/"
        assert upstream.headers["accept-encoding"] == "identity"
        assert "if-none-match" not in upstream.headers

    @pytest.mark.unit
    def test_non_html_passes_through(self):
        body = b"console.log('x')"

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                content=body,
                headers={"content-type": "application/javascript", "x-custom": "1"},
            )

        with make_client(handler) as client:
            response = client.get("/assets/app.js")

        assert response.content == body
        assert response.headers["x-custom"] == "1"

    @pytest.mark.unit
    def test_html_content_type_on_asset_path_not_injected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=PAGE, headers={"content-type": "text/html"})

        with make_client(handler) as client:
            response = client.get("/fragment.txt")

        assert response.content == PAGE

    @pytest.mark.unit
    def test_injection_disabled(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=PAGE, headers={"content-type": "text/html"})

        with make_client(handler, inject_debug_script=False) as client:
            response = client.get("/index.html")

        assert response.content == PAGE

    @pytest.mark.unit
    def test_headers_rewritten(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        with make_client(handler) as client:
            client.get(
                "/api/items?limit=5",
                headers={
                    "origin": ALLOWED,
                    "referer": "http://testserver/page?tab=2",
                    "x-trace": "t1",
                },
            )

        upstream = seen[0]
        assert str(upstream.url) == f"{TARGET}/api/items?limit=5"
        assert upstream.headers["host"] == "localhost:41234"
        assert upstream.headers["origin"] == TARGET
        assert upstream.headers["referer"] == f"{TARGET}/page?tab=2"
        assert upstream.headers["x-trace"] == "t1"

    @pytest.mark.unit
    def test_relative_referer_dropped(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        with make_client(handler) as client:
            client.get("/api/x", headers={"referer": "/relative"})

        assert "referer" not in seen[0].headers

    @pytest.mark.unit
    def test_post_body_forwarded(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json=json.loads(request.content))

        with make_client(handler) as client:
            response = client.post("/api/items", json={"name": "widget"})

        assert response.status_code == 201
        assert response.json() == {"name": "widget"}
        assert seen[0].method == "POST"

    @pytest.mark.unit
    def test_redirects_not_followed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(302, headers={"location": "/login"})

        with make_client(handler) as client:
            response = client.get("/api/secure", follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "/login"


class TestCorsAndErrors:
    @pytest.mark.unit
    def test_cors_added_and_overrides_upstream(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={}, headers={"access-control-allow-origin": "*"}
            )

        with make_client(handler) as client:
            response = client.get("/api/data")

        assert response.headers["access-control-allow-origin"] == ALLOWED
        assert response.headers["access-control-allow-credentials"] == "true"

    @pytest.mark.unit
    def test_options_answered_locally(self):
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        with make_client(handler) as client:
            response = client.options("/api/data")

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == ALLOWED
        assert "OPTIONS" in response.headers["access-control-allow-methods"]
        assert calls == []

    @pytest.mark.unit
    def test_upstream_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with make_client(handler) as client:
            response = client.get("/")

        assert response.status_code == 502
        assert response.text.startswith("Upstream error:")


class TestWorkerMain:
    @pytest.mark.unit
    def test_invalid_target_exits_2(self, capsys):
        assert worker.main(["--target", "not-a-url", "--port", "5501"]) == 2
        message = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert message["type"] == "log"
        assert "Invalid target origin" in message["message"]

    @pytest.mark.unit
    def test_emit_writes_json_line(self, capsys):
        worker.emit("started", url="http://localhost:5501")
        assert json.loads(capsys.readouterr().out) == {
            "type": "started",
            "url": "http://localhost:5501",
        }
