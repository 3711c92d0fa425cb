"""Shared fixtures: settings without real credentials and a scripted fake upstream."""
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
from fastapi.testclient import TestClient

from vidproxy.app import app
from vidproxy.config import Settings
from vidproxy.services.job_store import InMemoryJobStore
from vidproxy.services.moderation import ModerationGate
from vidproxy.services.profiles import ProfileRegistry
from vidproxy.services.upstream_client import UpstreamClient
from vidproxy.services.video_service import VideoService, get_video_service


class FakeUpstream:
    """Answers requests from a per-(method, url) script. The last scripted answer repeats."""

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Callable[[httpx.Request], httpx.Response]]] = {}
        self.calls: List[httpx.Request] = []

    def add(self, method: str, url: str, status: int = 200, json: Any = None, text: Optional[str] = None):
        def respond(request: httpx.Request) -> httpx.Response:
            if text is not None:
                return httpx.Response(status, text=text)
            return httpx.Response(status, json=json if json is not None else {})

        self.routes.setdefault((method, url), []).append(respond)

    def add_error(self, method: str, url: str, exc_type=httpx.ConnectError):
        def fail(request: httpx.Request) -> httpx.Response:
            raise exc_type("connection refused", request=request)

        self.routes.setdefault((method, url), []).append(fail)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        script = self.routes.get((request.method, str(request.url)))
        if not script:
            return httpx.Response(404, json={"detail": f"no route for {request.method} {request.url}"})
        responder = script.pop(0) if len(script) > 1 else script[0]
        return responder(request)

    def calls_to(self, url: str) -> List[httpx.Request]:
        return [call for call in self.calls if str(call.url) == url]

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def make_settings(**overrides) -> Settings:
    values = dict(
        fal_api_key="fal-test-key",
        replicate_api_token="r8-test-token",
        retry_backoff_seconds=0,
        upstream_max_attempts=3,
        moderation_mode="off",
        blob_store_bucket=None,
        webhook_url="",
        public_base_url="",
        fal_use_queue=True,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def upstream_client(settings, fake_upstream) -> UpstreamClient:
    return UpstreamClient(settings, http_client=fake_upstream.http_client())


@pytest.fixture
def service(settings, upstream_client) -> VideoService:
    return VideoService(
        settings=settings,
        registry=ProfileRegistry.from_settings(settings),
        client=upstream_client,
        store=InMemoryJobStore(),
        moderation=ModerationGate(settings),
    )


@pytest.fixture
def api(service):
    app.dependency_overrides[get_video_service] = lambda: service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def settings_factory():
    return make_settings
