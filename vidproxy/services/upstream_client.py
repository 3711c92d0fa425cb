import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode, urlsplit

import httpx
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from vidproxy.config import Settings
from vidproxy.errors import ConfigurationError, UpstreamHttpError
from vidproxy.services.profiles import ModelProfile, Provider
from vidproxy.services.request_shaper import ShapedPayload

logger = logging.getLogger(__name__)

FAL_QUEUE_BASE = "https://queue.fal.run"
FAL_SYNC_BASE = "https://fal.run"
REPLICATE_API_BASE = "https://api.replicate.com/v1"

PROVIDER_HOSTS: Dict[Provider, Tuple[str, ...]] = {
    Provider.FAL: ("fal.run", "fal.ai", "fal.media"),
    Provider.REPLICATE: ("replicate.com", "replicate.delivery"),
}


@dataclass(frozen=True)
class JobDescriptor:
    job_id: Optional[str]
    status_url: Optional[str]
    response_url: Optional[str]
    raw: Any


def base_model_id(model_id: str) -> str:
    """``fal-ai/veo2/image-to-video`` -> ``fal-ai/veo2``; Fal queue status lives under the app id."""
    parts = (model_id or "").split("/")
    return "/".join(parts[:2]) if len(parts) >= 2 else model_id


def _is_retryable(exc: BaseException, idempotent: bool) -> bool:
    if isinstance(exc, UpstreamHttpError):
        if idempotent:
            return exc.upstream_status == 429 or exc.upstream_status >= 500
        return exc.upstream_status in (429, 503)
    if isinstance(exc, httpx.TransportError):
        # a POST that reached the provider may already have created a job
        return idempotent or isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout))
    return False


class UpstreamClient:
    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(settings.upstream_timeout_seconds))
        self._versions: Dict[str, str] = {}
        self._version_lock = asyncio.Lock()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _auth_headers(self, provider: Provider) -> Dict[str, str]:
        if provider is Provider.FAL:
            if not self.settings.fal_api_key:
                raise ConfigurationError("FAL_API_KEY is not configured")
            return {"Authorization": f"Key {self.settings.fal_api_key}"}
        if not self.settings.replicate_api_token:
            raise ConfigurationError("REPLICATE_API_TOKEN is not configured")
        return {"Authorization": f"Token {self.settings.replicate_api_token}"}

    def provider_for_url(self, url: str) -> Optional[Provider]:
        host = (urlsplit(url).hostname or "").lower()
        for provider, suffixes in PROVIDER_HOSTS.items():
            if any(host == suffix or host.endswith("." + suffix) for suffix in suffixes):
                return provider
        return None

    def is_upstream_url(self, url: str) -> bool:
        parts = urlsplit(url)
        return parts.scheme == "https" and self.provider_for_url(url) is not None

    def fal_submission_url(self, model_id: str) -> str:
        if not self.settings.fal_use_queue:
            return f"{FAL_SYNC_BASE}/{model_id}"
        url = f"{FAL_QUEUE_BASE}/{model_id}"
        if self.settings.webhook_url:
            url += "?" + urlencode({"fal_webhook": f"{self.settings.webhook_url}/fal/webhook"})
        return url

    def poll_url(self, profile: ModelProfile, job_id: str) -> str:
        if profile.provider is Provider.FAL:
            return f"{FAL_QUEUE_BASE}/{base_model_id(profile.model_id)}/requests/{job_id}/status"
        return f"{REPLICATE_API_BASE}/predictions/{job_id}"

    async def submit(self, profile: ModelProfile, shaped: ShapedPayload) -> JobDescriptor:
        headers = self._auth_headers(profile.provider)
        body = shaped.json_body
        if profile.provider is Provider.FAL:
            url = self.fal_submission_url(profile.model_id)
        else:
            version = await self.resolve_version(profile)
            if version:
                url = f"{REPLICATE_API_BASE}/predictions"
                body = {"version": version, **(body or {})}
            else:
                url = f"{REPLICATE_API_BASE}/models/{profile.model_id}/predictions"

        if shaped.is_multipart:
            raw = await self._request(
                "POST", url, headers=headers, data=shaped.form_fields, files=shaped.files, idempotent=False
            )
        else:
            raw = await self._request("POST", url, headers=headers, json=body, idempotent=False)
        return self._describe(profile, raw)

    def _describe(self, profile: ModelProfile, raw: Any) -> JobDescriptor:
        if not isinstance(raw, dict):
            return JobDescriptor(None, None, None, raw)
        job_id = raw.get("request_id") or raw.get("id") or raw.get("job_id")
        job_id = str(job_id) if job_id else None
        urls = raw.get("urls") if isinstance(raw.get("urls"), dict) else {}
        status_url = raw.get("status_url") or urls.get("get")
        if job_id and not status_url:
            status_url = self.poll_url(profile, job_id)
        return JobDescriptor(job_id, status_url, raw.get("response_url"), raw)

    async def resolve_version(self, profile: ModelProfile) -> Optional[str]:
        """Replicate version id for ``profile``, trying the fallback slug once. Cached per profile."""
        if profile.version_id:
            return profile.version_id
        if not profile.fallback_model_id:
            return None
        async with self._version_lock:
            cached = self._versions.get(profile.key)
            if cached:
                return cached
            headers = self._auth_headers(profile.provider)
            last_error: Optional[UpstreamHttpError] = None
            for slug in (profile.model_id, profile.fallback_model_id):
                try:
                    listing = await self._request("GET", f"{REPLICATE_API_BASE}/models/{slug}/versions", headers=headers)
                except UpstreamHttpError as exc:
                    logger.warning("Listing versions for %s failed: %s", slug, exc)
                    last_error = exc
                    continue
                results = listing.get("results") if isinstance(listing, dict) else None
                if results and isinstance(results[0], dict) and results[0].get("id"):
                    version = str(results[0]["id"])
                    logger.info("Model %s uses %s -> %s", profile.key, slug, version)
                    self._versions[profile.key] = version
                    return version
                logger.warning("No versions listed for %s", slug)
            detail = last_error.body if last_error else "no versions listed"
            raise UpstreamHttpError(
                last_error.upstream_status if last_error else 502,
                f"both {profile.model_id} and {profile.fallback_model_id} are unavailable: {detail}",
            )

    async def get_json(self, url: str) -> Any:
        provider = self.provider_for_url(url)
        headers = self._auth_headers(provider) if provider else {}
        return await self._request("GET", url, headers=headers)

    async def _request(self, method: str, url: str, *, idempotent: bool = True, **kwargs) -> Any:
        backoff = self.settings.retry_backoff_seconds
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.upstream_max_attempts),
            wait=wait_exponential(multiplier=backoff, max=backoff * 8),
            retry=retry_if_exception(lambda exc: _is_retryable(exc, idempotent)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._send(method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.error("Upstream %s %s unreachable: %s", method, url, exc)
            raise UpstreamHttpError(502, f"{type(exc).__name__}: {exc}", url) from exc

    async def _send(self, method: str, url: str, **kwargs) -> Any:
        response = await self._client.request(method, url, **kwargs)
        text = response.text
        if not response.is_success:
            logger.error("[UPSTREAM %s] %s %s :: %s", response.status_code, method, url, text[:400])
            raise UpstreamHttpError(response.status_code, text, url)
        try:
            return response.json()
        except ValueError:
            logger.warning("Upstream %s %s returned a non-JSON body", method, url)
            return {"rawText": text}
