import logging
import re
import uuid
from functools import lru_cache
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from vidproxy.config import Settings, get_settings
from vidproxy.errors import InvalidArgumentError, JobNotFoundError, UpstreamHttpError
from vidproxy.models.domain import GenerationKind, GenerationRequest, Job, NormalizedStatus
from vidproxy.services.blob_store import S3BlobStore
from vidproxy.services.job_store import InMemoryJobStore, JobStore
from vidproxy.services.moderation import ModerationGate
from vidproxy.services.normalizer import ResultNormalizer
from vidproxy.services.profiles import ModelProfile, Provider, ProfileRegistry
from vidproxy.services.request_shaper import ShapedPayload, shape_request
from vidproxy.services.upstream_client import JobDescriptor, UpstreamClient

logger = logging.getLogger(__name__)

_RESULT_PATH = re.compile(r"/video/result/([^/?#]+)$")
_UPSTREAM_ID = re.compile(r"/(?:requests|predictions)/([^/?#]+)")


class VideoService:
    def __init__(
        self,
        settings: Settings,
        registry: ProfileRegistry,
        client: UpstreamClient,
        store: JobStore,
        moderation: ModerationGate,
        normalizer: Optional[ResultNormalizer] = None,
        blob_store: Optional[S3BlobStore] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.client = client
        self.store = store
        self.moderation = moderation
        self.normalizer = normalizer or ResultNormalizer(max_follow_up_links=settings.max_follow_up_links)
        self.blob_store = blob_store

    @classmethod
    def from_settings(cls, settings: Settings) -> "VideoService":
        return cls(
            settings=settings,
            registry=ProfileRegistry.from_settings(settings),
            client=UpstreamClient(settings),
            store=InMemoryJobStore(),
            moderation=ModerationGate(settings),
            blob_store=S3BlobStore(settings) if settings.blob_store_enabled else None,
        )

    async def aclose(self) -> None:
        await self.client.aclose()
        await self.moderation.aclose()
        if self.blob_store is not None:
            await self.blob_store.aclose()

    def default_model_key(self, kind: GenerationKind) -> str:
        if kind is GenerationKind.IMAGE_TO_VIDEO:
            return self.settings.image_model_key
        return self.settings.text_model_key

    def result_path(self, job_id: str) -> str:
        return f"{self.settings.public_base_url}/video/result/{job_id}"

    def _is_synchronous(self, profile: ModelProfile) -> bool:
        return profile.provider is Provider.FAL and not self.settings.fal_use_queue

    async def submit(self, request: GenerationRequest) -> Dict[str, Any]:
        profile = self.registry.get(request.model_key)
        prompt = (request.prompt or "").strip()
        if len(prompt) > self.settings.prompt_char_limit:
            raise InvalidArgumentError(f"Prompt too long. Maximum {self.settings.prompt_char_limit} characters.")

        shaped = shape_request(request, profile)
        if prompt:
            await self.moderation.check(prompt)

        logger.info(
            "Submitting %s job to %s (use_queue=%s, prompt_len=%d)",
            request.kind.value, profile.key, self.settings.fal_use_queue, len(prompt),
        )
        descriptor = await self._submit_with_image_fallback(request, profile, shaped)

        if self._is_synchronous(profile):
            response = await self._finish_synchronous(profile, descriptor)
            return self._with_overrides(response, shaped)

        if not descriptor.job_id or not descriptor.status_url:
            raise UpstreamHttpError(502, f"upstream returned no job id: {descriptor.raw}")

        job = Job(
            job_id=descriptor.job_id,
            model_key=profile.key,
            poll_url=descriptor.status_url,
            response_url=descriptor.response_url,
        )
        await self.store.put_if_absent(job)
        logger.info("Started %s job %s", profile.key, job.job_id)
        return self._with_overrides(self._serialize_submission(job.job_id, NormalizedStatus.IN_QUEUE), shaped)

    async def _submit_with_image_fallback(
        self, request: GenerationRequest, profile: ModelProfile, shaped: ShapedPayload
    ) -> JobDescriptor:
        if request.image is None or not profile.alternate_image_fields:
            return await self.client.submit(profile, shaped)

        fields = (profile.image_field, *profile.alternate_image_fields)
        for position, image_field in enumerate(fields):
            if position:
                shaped = shape_request(request, profile, image_field=image_field)
            try:
                return await self.client.submit(profile, shaped)
            except UpstreamHttpError as exc:
                if position == len(fields) - 1 or exc.upstream_status not in (400, 422):
                    raise
                logger.warning(
                    "%s rejected image field %s (%s); retrying with %s",
                    profile.key, image_field, exc.upstream_status, fields[position + 1],
                )

    async def _finish_synchronous(self, profile: ModelProfile, descriptor: JobDescriptor) -> Dict[str, Any]:
        job_id = descriptor.job_id or uuid.uuid4().hex
        result = await self.normalizer.resolve(
            descriptor.raw, self._fetch_follow_up, default_status=NormalizedStatus.COMPLETED
        )
        job = await self.store.put_if_absent(Job(job_id=job_id, model_key=profile.key, poll_url=""))
        video_url = await self._freeze(job, result.video_url) if result.video_url else None
        response = self._serialize_submission(job_id, result.status)
        response.update(video_url=video_url, raw=result.raw)
        return response

    @staticmethod
    def _with_overrides(response: Dict[str, Any], shaped: ShapedPayload) -> Dict[str, Any]:
        if shaped.overridden:
            response["overridden"] = dict(shaped.overridden)
        return response

    def _serialize_submission(self, job_id: str, status: NormalizedStatus) -> Dict[str, Any]:
        path = self.result_path(job_id)
        return {
            "status": status.value,
            "request_id": job_id,
            "job_id": job_id,
            "status_url": path,
            "response_url": path,
        }

    async def _fetch_follow_up(self, url: str) -> Any:
        if not self.client.is_upstream_url(url):
            raise InvalidArgumentError(f"refusing to follow link outside known providers: {url}")
        return await self.client.get_json(url)

    async def _freeze(self, job: Job, video_url: str) -> str:
        if self.blob_store is not None:
            video_url = await self.blob_store.persist(job.job_id, video_url)
        frozen = await self.store.compare_and_set_url(job.job_id, video_url)
        return frozen or video_url

    async def find_job(self, job_id: str, model_key: Optional[str] = None) -> Job:
        job = await self.store.get(job_id)
        if job is not None:
            return job
        if not model_key:
            raise JobNotFoundError("Unknown request id")
        profile = self.registry.get(model_key)
        job = Job(job_id=job_id, model_key=profile.key, poll_url=self.client.poll_url(profile, job_id))
        return await self.store.put_if_absent(job)

    async def find_job_by_status_url(self, status_url: str) -> Job:
        local = _RESULT_PATH.search(urlsplit(status_url).path)
        if local and (status_url.startswith("/") or not self.client.is_upstream_url(status_url)):
            return await self.find_job(local.group(1))
        if not self.client.is_upstream_url(status_url):
            raise InvalidArgumentError("status_url must be a result URL issued by this service or a provider")
        match = _UPSTREAM_ID.search(urlsplit(status_url).path)
        job_id = match.group(1) if match else status_url
        job = await self.store.get(job_id)
        if job is not None:
            return job
        return await self.store.put_if_absent(Job(job_id=job_id, model_key="", poll_url=status_url))

    async def get_result(
        self, job_id: Optional[str] = None, status_url: Optional[str] = None, model_key: Optional[str] = None
    ) -> Dict[str, Any]:
        if status_url:
            job = await self.find_job_by_status_url(status_url)
        elif job_id:
            job = await self.find_job(job_id, model_key)
        else:
            raise InvalidArgumentError("status_url required")

        if job.cached_url:
            return self._serialize_result(job, NormalizedStatus.COMPLETED, job.cached_url)
        if not job.poll_url:
            return self._serialize_result(job, NormalizedStatus.COMPLETED, None)

        raw = await self.client.get_json(job.poll_url)
        hints = (job.response_url,) if job.response_url else ()
        result = await self.normalizer.resolve(raw, self._fetch_follow_up, visited=(job.poll_url,), hints=hints)

        video_url = None
        if result.status is NormalizedStatus.COMPLETED and result.video_url:
            video_url = await self._freeze(job, result.video_url)
        elif result.status is NormalizedStatus.FAILED:
            logger.error("Job %s failed upstream", job.job_id)
        return self._serialize_result(job, result.status, video_url, result.raw)

    @staticmethod
    def _serialize_result(
        job: Job, status: NormalizedStatus, video_url: Optional[str], raw: Any = None
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": status.value, "request_id": job.job_id}
        if video_url:
            body["video_url"] = video_url
        if raw is not None:
            body["raw"] = raw
        return body

    async def handle_webhook(self, body: Any) -> Dict[str, Any]:
        if not isinstance(body, dict):
            logger.warning("Ignoring webhook with unexpected body: %r", body)
            return {"ok": True}
        job_id = body.get("request_id")
        job = await self.store.get(str(job_id)) if job_id else None
        if job is None:
            logger.info("Webhook for unknown request %s", job_id)
            return {"ok": True}
        if str(body.get("status", "")).upper() == "ERROR":
            logger.error("Webhook reports job %s failed: %s", job.job_id, body.get("error"))
            return {"ok": True}

        result = self.normalizer.normalize(body.get("payload"), default_status=NormalizedStatus.COMPLETED)
        if result.status is NormalizedStatus.COMPLETED and result.video_url:
            await self._freeze(job, result.video_url)
        return {"ok": True}

    def health(self) -> Dict[str, Any]:
        text_profile = self.registry.get(self.settings.text_model_key)
        image_profile = self.registry.get(self.settings.image_model_key)
        return {
            "ok": True,
            "use_queue": self.settings.fal_use_queue,
            "t2v": text_profile.model_id,
            "i2v": image_profile.model_id,
            "text_model": text_profile.key,
            "image_model": image_profile.key,
            "models": {profile.key: profile.describe() for profile in self.registry},
            "moderation": self.moderation.mode,
            "blob_store": self.blob_store is not None,
        }


@lru_cache()
def get_video_service() -> VideoService:
    return VideoService.from_settings(get_settings())
