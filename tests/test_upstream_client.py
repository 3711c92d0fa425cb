import json

import httpx
import pytest

from vidproxy.errors import ConfigurationError, UpstreamHttpError
from vidproxy.services.profiles import ModelProfile, ProfileRegistry, Provider
from vidproxy.services.request_shaper import ShapedPayload
from vidproxy.services.upstream_client import UpstreamClient, base_model_id

FAL_SUBMIT = "https://queue.fal.run/fal-ai/wan/v2.2-a14b/text-to-video"
REPLICATE_PREDICTIONS = "https://api.replicate.com/v1/predictions"


@pytest.fixture
def registry(settings):
    return ProfileRegistry.from_settings(settings)


def payload(**body):
    return ShapedPayload(json_body={"input": {"prompt": "a fox", **body}})


def test_base_model_id():
    assert base_model_id("fal-ai/veo2/image-to-video") == "fal-ai/veo2"
    assert base_model_id("single") == "single"


@pytest.mark.asyncio
async def test_fal_queue_submission(upstream_client, fake_upstream, registry):
    fake_upstream.add(
        "POST",
        FAL_SUBMIT,
        json={
            "request_id": "req-1",
            "status_url": "https://queue.fal.run/fal-ai/wan/requests/req-1/status",
            "response_url": "https://queue.fal.run/fal-ai/wan/requests/req-1",
        },
    )
    descriptor = await upstream_client.submit(registry.get("fal-text"), payload())

    assert descriptor.job_id == "req-1"
    assert descriptor.status_url == "https://queue.fal.run/fal-ai/wan/requests/req-1/status"
    assert descriptor.response_url == "https://queue.fal.run/fal-ai/wan/requests/req-1"
    sent = fake_upstream.calls[0]
    assert sent.headers["Authorization"] == "Key fal-test-key"
    assert json.loads(sent.content) == {"input": {"prompt": "a fox"}}


@pytest.mark.asyncio
async def test_fal_status_url_is_reconstructed(upstream_client, fake_upstream, registry):
    fake_upstream.add("POST", FAL_SUBMIT, json={"request_id": "req-2"})
    descriptor = await upstream_client.submit(registry.get("fal-text"), payload())
    assert descriptor.status_url == "https://queue.fal.run/fal-ai/wan/requests/req-2/status"


@pytest.mark.asyncio
async def test_fal_webhook_and_sync_urls(settings_factory):
    queued = UpstreamClient(settings_factory(webhook_url="https://proxy.example/"))
    assert queued.fal_submission_url("fal-ai/x") == (
        "https://queue.fal.run/fal-ai/x?fal_webhook=https%3A%2F%2Fproxy.example%2Ffal%2Fwebhook"
    )
    sync = UpstreamClient(settings_factory(fal_use_queue=False, webhook_url="https://proxy.example"))
    assert sync.fal_submission_url("fal-ai/x") == "https://fal.run/fal-ai/x"
    await queued.aclose()
    await sync.aclose()


@pytest.mark.asyncio
async def test_non_json_body_is_wrapped(upstream_client, fake_upstream):
    url = "https://queue.fal.run/fal-ai/wan/requests/req-1/status"
    fake_upstream.add("GET", url, text="<html>ok</html>")
    assert await upstream_client.get_json(url) == {"rawText": "<html>ok</html>"}


@pytest.mark.asyncio
async def test_non_2xx_keeps_upstream_body(upstream_client, fake_upstream, registry):
    fake_upstream.add("POST", FAL_SUBMIT, status=422, json={"detail": [{"loc": ["body", "prompt"]}]})
    with pytest.raises(UpstreamHttpError) as excinfo:
        await upstream_client.submit(registry.get("fal-text"), payload())
    assert excinfo.value.upstream_status == 422
    assert excinfo.value.status_code == 422
    assert '"loc"' in excinfo.value.body
    assert len(fake_upstream.calls) == 1


@pytest.mark.asyncio
async def test_get_retries_server_errors(upstream_client, fake_upstream):
    url = "https://queue.fal.run/fal-ai/wan/requests/req-1/status"
    fake_upstream.add("GET", url, status=503, text="busy")
    fake_upstream.add("GET", url, status=429, text="slow down")
    fake_upstream.add("GET", url, json={"status": "IN_PROGRESS"})
    assert await upstream_client.get_json(url) == {"status": "IN_PROGRESS"}
    assert len(fake_upstream.calls_to(url)) == 3


@pytest.mark.asyncio
async def test_get_gives_up_after_max_attempts(upstream_client, fake_upstream):
    url = "https://queue.fal.run/fal-ai/wan/requests/req-1/status"
    fake_upstream.add("GET", url, status=500, text="down")
    with pytest.raises(UpstreamHttpError) as excinfo:
        await upstream_client.get_json(url)
    assert excinfo.value.status_code == 502
    assert len(fake_upstream.calls_to(url)) == 3


@pytest.mark.asyncio
async def test_unauthorized_fails_fast(upstream_client, fake_upstream):
    url = "https://queue.fal.run/fal-ai/wan/requests/req-1/status"
    fake_upstream.add("GET", url, status=401, text="invalid key")
    with pytest.raises(UpstreamHttpError) as excinfo:
        await upstream_client.get_json(url)
    assert excinfo.value.upstream_status == 401
    assert excinfo.value.status_code == 502
    assert len(fake_upstream.calls_to(url)) == 1


@pytest.mark.asyncio
async def test_submission_is_not_retried_on_500(upstream_client, fake_upstream, registry):
    fake_upstream.add("POST", FAL_SUBMIT, status=500, text="oops")
    with pytest.raises(UpstreamHttpError):
        await upstream_client.submit(registry.get("fal-text"), payload())
    assert len(fake_upstream.calls_to(FAL_SUBMIT)) == 1


@pytest.mark.asyncio
async def test_connection_errors_become_upstream_errors(upstream_client, fake_upstream):
    url = "https://queue.fal.run/fal-ai/wan/requests/req-1/status"
    fake_upstream.add_error("GET", url)
    with pytest.raises(UpstreamHttpError) as excinfo:
        await upstream_client.get_json(url)
    assert excinfo.value.status_code == 502
    assert "ConnectError" in excinfo.value.body
    assert len(fake_upstream.calls_to(url)) == 3


@pytest.mark.asyncio
async def test_missing_credentials(settings_factory, fake_upstream, registry):
    client = UpstreamClient(settings_factory(replicate_api_token=None), http_client=fake_upstream.http_client())
    with pytest.raises(ConfigurationError, match="REPLICATE_API_TOKEN"):
        await client.submit(registry.get("replicate-text"), payload())
    assert fake_upstream.calls == []


@pytest.mark.asyncio
async def test_replicate_version_falls_back_and_is_cached(upstream_client, fake_upstream, registry):
    fake_upstream.add("GET", "https://api.replicate.com/v1/models/google/veo-3/versions", status=404, text="not found")
    fake_upstream.add(
        "GET", "https://api.replicate.com/v1/models/google/veo-3-fast/versions", json={"results": [{"id": "v-fast"}]}
    )
    fake_upstream.add(
        "POST",
        REPLICATE_PREDICTIONS,
        json={"id": "pred-1", "status": "starting", "urls": {"get": "https://api.replicate.com/v1/predictions/pred-1"}},
    )
    profile = registry.get("replicate-text")

    first = await upstream_client.submit(profile, payload())
    await upstream_client.submit(profile, payload())

    assert first.job_id == "pred-1"
    assert first.status_url == "https://api.replicate.com/v1/predictions/pred-1"
    posted = [call for call in fake_upstream.calls if call.method == "POST"]
    assert json.loads(posted[0].content) == {"version": "v-fast", "input": {"prompt": "a fox"}}
    assert posted[0].headers["Authorization"] == "Token r8-test-token"
    assert len(fake_upstream.calls_to("https://api.replicate.com/v1/models/google/veo-3-fast/versions")) == 1


@pytest.mark.asyncio
async def test_replicate_without_fallback_uses_model_endpoint(upstream_client, fake_upstream):
    profile = ModelProfile(key="r", provider=Provider.REPLICATE, model_id="acme/video")
    fake_upstream.add("POST", "https://api.replicate.com/v1/models/acme/video/predictions", json={"id": "p-9"})
    descriptor = await upstream_client.submit(profile, payload())
    assert descriptor.status_url == "https://api.replicate.com/v1/predictions/p-9"


@pytest.mark.asyncio
async def test_multipart_submission(upstream_client, fake_upstream):
    profile = ModelProfile(key="m", provider=Provider.FAL, model_id="acme/animate", supports_image=True)
    fake_upstream.add("POST", "https://queue.fal.run/acme/animate", json={"request_id": "m-1"})
    shaped = ShapedPayload(form_fields={"prompt": "go"}, files={"image": ("a.png", b"png-bytes", "image/png")})
    await upstream_client.submit(profile, shaped)
    sent = fake_upstream.calls[0]
    assert sent.headers["Content-Type"].startswith("multipart/form-data")
    assert b"png-bytes" in sent.content


def test_upstream_url_guard(upstream_client):
    assert upstream_client.is_upstream_url("https://queue.fal.run/a/b/requests/1/status")
    assert upstream_client.is_upstream_url("https://api.replicate.com/v1/predictions/1")
    assert not upstream_client.is_upstream_url("https://evil.example/fal.run")
    assert not upstream_client.is_upstream_url("http://queue.fal.run/a")
    assert upstream_client.provider_for_url("https://v3.fal.media/files/x.mp4") is Provider.FAL
