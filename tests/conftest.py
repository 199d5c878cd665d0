"""Pytest configuration and fixtures shared across all test modules.

Environment variables are set before any settings object is built so the
required credential is always present and no .env file is picked up.
"""

import os

os.environ["APP_ENV"] = "testing"
os.environ.setdefault("CF_API_KEY", "test-secret-key-123")

from typing import Callable

import httpx
import pytest

from cfproxy.core.config import LogSettings, ProxySettings, Settings

TEST_API_KEY = "test-secret-key-123"


@pytest.fixture
def api_key() -> str:
    return TEST_API_KEY


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Build isolated settings; keyword overrides apply to ProxySettings."""

    def _make(**overrides) -> Settings:
        values = {"cf_api_key": TEST_API_KEY, "upstream_url": "https://api.curseforge.com"}
        values.update(overrides)
        return Settings(proxy=ProxySettings(**values), log=LogSettings())

    return _make


class RecordingUpstream:
    """MockTransport handler that records requests and answers each one.

    ``respond`` builds a fresh response per request; ``error`` is raised
    instead when set.
    """

    def __init__(
        self,
        respond: Callable[[httpx.Request], httpx.Response] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.requests: list[httpx.Request] = []
        self.respond = respond or (lambda request: httpx.Response(200, json={"data": []}))
        self.error = error

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.respond(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def upstream() -> RecordingUpstream:
    return RecordingUpstream()


@pytest.fixture
def make_upstream() -> Callable[..., RecordingUpstream]:
    return RecordingUpstream
