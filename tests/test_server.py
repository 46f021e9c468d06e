from __future__ import annotations

import asyncio
import os

import httpx
import pytest
from fastapi.testclient import TestClient
from structlog.testing import capture_logs

from conftest import HTML, Upstream, page, redirect

import canonicalurl.config
from canonicalurl.config import Settings
from canonicalurl.domains import DomainPolicy
from canonicalurl.server import create_app, wants_fetch

ARTICLE = '<html><head><link rel="canonical" href="https://example.com/article-canonical"></head></html>'


def shortened_article() -> Upstream:
    return Upstream(
        {
            ("HEAD", "http://bit.ly/xyz"): redirect("https://example.com/article"),
            ("HEAD", "https://example.com/article"): httpx.Response(200, headers=HTML),
            ("GET", "https://example.com/article"): page(ARTICLE),
        }
    )


def client_for(settings: Settings, upstream: Upstream, policy: DomainPolicy | None = None) -> TestClient:
    return TestClient(create_app(settings, policy=policy or DomainPolicy(), transport=upstream.transport))


def test_resolves_url_from_query(settings: Settings) -> None:
    upstream = shortened_article()

    with client_for(settings, upstream) as client:
        response = client.get("/", params={"url": "http://bit.ly/xyz"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/json")
    body = response.json()
    assert body["url"] == "http://bit.ly/xyz"
    assert body["url_retrieved"] == "https://example.com/article-canonical"
    assert body["method"] == "canonical"
    assert body["canonical"] is True
    assert body["error"] is False
    assert body["get_attempt"] is True
    assert body["tld"] == "bit.ly"
    assert body["tld_retrieved"] == "example.com"


def test_failures_are_still_http_200(settings: Settings) -> None:
    upstream = Upstream({("HEAD", "https://example.com/gone"): httpx.Response(404, headers=HTML)})

    with client_for(settings, upstream) as client:
        response = client.get("/", params={"url": "https://example.com/gone"})

    assert response.status_code == 200
    assert response.json()["reason"] == "HTTP error: 404"
    assert response.json()["error"] is True


def test_missing_url_parameter_is_an_invalid_url(settings: Settings) -> None:
    with client_for(settings, Upstream({})) as client:
        response = client.get("/")

    assert response.status_code == 200
    body = response.json()
    assert body["url"] is None
    assert body["reason"] == "invalid url"
    assert body["method"] == "url validation"
    assert body["url_retrieved"] is None
    assert body["error"] is True


def test_url_encoded_target_is_decoded(settings: Settings) -> None:
    upstream = Upstream({("HEAD", "https://example.com/a?b=1&c=2"): httpx.Response(200, headers={"content-type": "image/png"})})

    with client_for(settings, upstream) as client:
        response = client.get("/?url=https%3A%2F%2Fexample.com%2Fa%3Fb%3D1%26c%3D2")

    assert response.json()["url"] == "https://example.com/a?b=1&c=2"
    assert response.json()["reason"] == "bad content type: image/png"


def test_caller_can_skip_content_fetching(settings: Settings) -> None:
    upstream = shortened_article()

    with client_for(settings, upstream) as client:
        response = client.get("/", params={"url": "http://bit.ly/xyz", "get": "false"})

    body = response.json()
    assert body["reason"] == "content fetching disabled"
    assert body["method"] == "redirect"
    assert body["url_retrieved"] == "https://example.com/article"
    assert "GET" not in upstream.methods()


@pytest.mark.parametrize("value", ["maybe", "2", "", "yes", "TRUE"])
def test_unrecognized_get_values_still_fetch(settings: Settings, value: str) -> None:
    upstream = shortened_article()

    with client_for(settings, upstream) as client:
        response = client.get("/", params={"url": "http://bit.ly/xyz", "get": value})

    assert response.status_code == 200
    assert response.json()["method"] == "canonical"
    assert "GET" in upstream.methods()


@pytest.mark.parametrize(("value", "expected"), [(None, True), ("0", False), ("false", False), ("No", False), (" FALSE ", False), ("1", True), ("maybe", True)])
def test_fetch_opt_out_values(value, expected: bool) -> None:
    assert wants_fetch(value) is expected


def test_domain_lists_apply(settings: Settings) -> None:
    policy = DomainPolicy(whitelist=["example.com"], shortlist=["bit.ly"])

    with client_for(settings, Upstream({}), policy) as client:
        response = client.get("/", params={"url": "https://unlisted.org/page"})

    assert response.json()["reason"] == "domain not in lists"


def test_domain_lists_are_loaded_from_settings(tmp_path) -> None:
    whitelist = tmp_path / "whitelist.txt"
    whitelist.write_text("example.com\n", encoding="utf-8")
    settings = Settings(workers=1, whitelist=str(whitelist), shortlist=str(tmp_path / "missing.txt"), log=None)

    with TestClient(create_app(settings, transport=Upstream({}).transport)) as client:
        response = client.get("/", params={"url": "http://bit.ly/xyz"})

    assert response.json()["reason"] == "domain not in lists"


def test_slow_resolution_gets_a_timeout_reply(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(canonicalurl.config, "SERVER_TIMEOUT_TOLERANCE_MS", 0)
    settings = Settings(workers=1, whitelist=None, shortlist=None, log=None, timeout=50, maxredirects=1, noget=True)

    async def stall(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.5)
        return httpx.Response(200, headers=HTML)

    upstream = Upstream({("HEAD", "https://example.com/slow"): stall})

    with client_for(settings, upstream) as client:
        response = client.get("/", params={"url": "https://example.com/slow"})

    assert response.status_code == 200
    body = response.json()
    assert body["reason"] == "request timeout"
    assert body["error"] is True
    assert body["elapsed"] >= 40


def test_healthz(settings: Settings) -> None:
    with client_for(settings, Upstream({})) as client:
        response = client.get("/healthz")

    assert response.json() == {"ok": True, "pid": os.getpid()}


async def call_app(app, query: bytes, disconnect_after_body: bool = False) -> list[dict]:
    """Run one GET / through the ASGI interface and return what the app sent."""
    messages = [{"type": "http.request", "body": b"", "more_body": False}]
    sent: list[dict] = []

    async def receive() -> dict:
        if messages:
            return messages.pop(0)
        if disconnect_after_body:
            return {"type": "http.disconnect"}
        await asyncio.sleep(3600)

    async def send(message: dict) -> None:
        sent.append(message)

    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/",
        "raw_path": b"/",
        "root_path": "",
        "query_string": query,
        "headers": [(b"host", b"testserver")],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }
    await app(scope, receive, send)
    return sent


@pytest.mark.asyncio
async def test_client_gone_before_reply_is_logged(settings: Settings) -> None:
    app = create_app(settings, policy=DomainPolicy(), transport=shortened_article().transport)

    with capture_logs() as logs:
        sent = await call_app(app, b"url=http%3A%2F%2Fbit.ly%2Fxyz", disconnect_after_body=True)

    assert sent[0]["status"] == 200
    closed = [e for e in logs if e["event"] == "connection_closed_unexpectedly"]
    assert len(closed) == 1
    assert closed[0]["url"] == "http://bit.ly/xyz"
    assert closed[0]["elapsed"] >= 0
    assert any(e["event"] == "response" and e["method"] == "canonical" for e in logs)


@pytest.mark.asyncio
async def test_timed_out_resolution_runs_to_completion(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(canonicalurl.config, "SERVER_TIMEOUT_TOLERANCE_MS", 0)
    settings = Settings(workers=1, whitelist=None, shortlist=None, log=None, timeout=50, maxredirects=1, noget=True)

    async def stall(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.3)
        return httpx.Response(200, headers=HTML)

    upstream = Upstream({("HEAD", "https://example.com/slow"): stall})
    app = create_app(settings, policy=DomainPolicy(), transport=upstream.transport)

    with capture_logs() as logs:
        sent = await call_app(app, b"url=https%3A%2F%2Fexample.com%2Fslow")
        assert not any(e["event"] == "undeliverable_response" for e in logs)

        for _ in range(100):
            if any(e["event"] == "undeliverable_response" for e in logs):
                break
            await asyncio.sleep(0.05)

    assert sent[0]["status"] == 200
    assert any(e["event"] == "request_timeout" for e in logs)
    late = [e for e in logs if e["event"] == "undeliverable_response"]
    assert len(late) == 1
    assert late[0]["reason"] == "content fetching disabled"
    assert late[0]["url"] == "https://example.com/slow"
