from __future__ import annotations

import dataclasses
from typing import Callable, Dict, Tuple

import httpx
import pytest

from canonicalurl.config import Settings
from canonicalurl.domains import DomainPolicy
from canonicalurl.fetcher import ContentFetcher, RedirectProbe
from canonicalurl.pipeline import ResolutionPipeline

HTML = {"content-type": "text/html; charset=utf-8"}


def page(body: str, **headers: str) -> httpx.Response:
    return httpx.Response(200, headers={**HTML, **headers}, content=body.encode("utf-8"))


def redirect(location: str, status_code: int = 301) -> httpx.Response:
    return httpx.Response(status_code, headers={"location": location})


class Upstream:
    """Routes (method, url) to canned responses and records every request."""

    def __init__(self, routes: Dict[Tuple[str, str], httpx.Response | Callable]):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, str(request.url))
        if key not in self.routes:
            return httpx.Response(404)
        response = self.routes[key]
        if callable(response):
            return response(request)
        # a fresh response per request, the client mutates the ones it receives
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)

    def methods(self) -> list[str]:
        return [r.method for r in self.requests]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def settings() -> Settings:
    return Settings(workers=1, whitelist=None, shortlist=None, log=None)


@pytest.fixture
def make_pipeline(settings: Settings):
    def _make(upstream: Upstream, policy: DomainPolicy | None = None, **overrides) -> ResolutionPipeline:
        conf = dataclasses.replace(settings, **overrides)
        return ResolutionPipeline(
            conf,
            policy or DomainPolicy(),
            probe=RedirectProbe.from_settings(conf, transport=upstream.transport),
            fetcher=ContentFetcher.from_settings(conf, transport=upstream.transport),
        )

    return _make
