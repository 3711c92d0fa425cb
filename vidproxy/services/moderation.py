import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import httpx
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from vidproxy.config import Settings
from vidproxy.errors import ConfigurationError, ContentRejectedError, ModerationUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModerationResult:
    flagged: bool
    category_scores: Dict[str, float] = field(default_factory=dict)


class _ModerationHttpError(Exception):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"moderation {status_code}: {body[:200]}")
        self.status_code = status_code


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, _ModerationHttpError):
        return exc.status_code == 429 or exc.status_code >= 500
    return isinstance(exc, httpx.TransportError)


class ModerationGate:
    """Screens prompts before anything is sent upstream.

    ``fail_open`` lets prompts through when the moderation service is down,
    ``fail_closed`` turns that outage into a retryable 503.
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.mode = settings.moderation_mode
        self.settings = settings
        if self.mode != "off" and not settings.openai_api_key:
            if self.mode == "fail_closed":
                raise ConfigurationError("MODERATION_MODE=fail_closed requires OPENAI_API_KEY")
            logger.warning("OPENAI_API_KEY missing; moderation disabled (fail_open)")
            self.mode = "off"
        self._client = http_client
        if self.mode != "off" and self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(settings.moderation_timeout_seconds))

    @property
    def enabled(self) -> bool:
        return self.mode != "off"

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def classify(self, text: str) -> ModerationResult:
        backoff = self.settings.retry_backoff_seconds
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.upstream_max_attempts),
            wait=wait_exponential(multiplier=backoff, max=backoff * 8),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._call(text)

    async def _call(self, text: str) -> ModerationResult:
        response = await self._client.post(
            self.settings.moderation_url,
            headers={"Authorization": f"Bearer {self.settings.openai_api_key}"},
            json={"input": text},
            timeout=self.settings.moderation_timeout_seconds,
        )
        if not response.is_success:
            raise _ModerationHttpError(response.status_code, response.text)
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError(f"unexpected moderation response: {response.text[:200]}")
        results = body.get("results") or [{}]
        first = results[0] if isinstance(results, list) else None
        if not isinstance(first, dict):
            raise ValueError(f"unexpected moderation response: {response.text[:200]}")
        scores = {name: float(score) for name, score in (first.get("category_scores") or {}).items()}
        return ModerationResult(flagged=bool(first.get("flagged")), category_scores=scores)

    async def check(self, text: str) -> None:
        if not self.enabled:
            return
        try:
            result = await self.classify(text)
        except (_ModerationHttpError, httpx.HTTPError, ValueError) as exc:
            if isinstance(exc, _ModerationHttpError) and exc.status_code == 401:
                logger.error("Moderation service rejected OPENAI_API_KEY")
            if self.mode == "fail_open":
                logger.warning("Moderation unavailable, allowing prompt: %s", exc)
                return
            raise ModerationUnavailableError("moderation service unavailable, please retry") from exc

        if result.flagged:
            flagged = sorted(name for name, score in result.category_scores.items() if score >= 0.5)
            logger.info("Prompt rejected by moderation: %s", ", ".join(flagged) or "flagged")
            raise ContentRejectedError("prompt rejected by content moderation", result.category_scores)
