import asyncio

import pytest

from vidproxy.models.domain import Job
from vidproxy.services.job_store import InMemoryJobStore


def make_job(job_id="req-1"):
    return Job(job_id=job_id, model_key="fal-text", poll_url=f"https://queue.fal.run/x/y/requests/{job_id}/status")


@pytest.mark.asyncio
async def test_put_if_absent_keeps_first_job():
    store = InMemoryJobStore()
    first = await store.put_if_absent(make_job())
    second = await store.put_if_absent(Job(job_id="req-1", model_key="other", poll_url="https://elsewhere"))
    assert second is first
    assert (await store.get("req-1")).model_key == "fal-text"
    assert await store.get("missing") is None


@pytest.mark.asyncio
async def test_url_is_frozen_after_first_set():
    store = InMemoryJobStore()
    await store.put_if_absent(make_job())
    assert await store.compare_and_set_url("req-1", "https://x/first.mp4") == "https://x/first.mp4"
    assert await store.compare_and_set_url("req-1", "https://x/second.mp4") == "https://x/first.mp4"
    assert (await store.get("req-1")).cached_url == "https://x/first.mp4"


@pytest.mark.asyncio
async def test_compare_and_set_on_unknown_job():
    store = InMemoryJobStore()
    assert await store.compare_and_set_url("ghost", "https://x/a.mp4") is None


@pytest.mark.asyncio
async def test_concurrent_freezes_agree():
    store = InMemoryJobStore()
    await store.put_if_absent(make_job())
    urls = [f"https://x/{n}.mp4" for n in range(20)]
    results = await asyncio.gather(*(store.compare_and_set_url("req-1", url) for url in urls))
    assert len(set(results)) == 1
    assert results[0] == (await store.get("req-1")).cached_url
