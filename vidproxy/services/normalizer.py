"""Map heterogeneous provider job payloads onto ``(NormalizedStatus, video_url)``.

Providers disagree on where a finished video lives: ``video.url`` for Fal,
``output`` for Replicate, ``videos[0].url`` or ``response.media[0].url`` for
others. Extraction runs as an ordered list of strategies:

1. a structured scan over a fixed priority list of field paths, tried at the
   payload root and inside the usual wrapper objects;
2. follow-up links (``response_url`` and friends) fetched once each, with the
   structured scan applied to every fetched body;
3. a regular expression over the serialized payloads for anything that looks
   like a video file URL.

A URL is only reported once the status is COMPLETED. A completed job with no
discoverable URL is returned as ``(COMPLETED, None)``.
"""
import json
import logging
import re
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Awaitable, Callable, Iterable, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from vidproxy.errors import ProxyError
from vidproxy.models.domain import NormalizedResult, NormalizedStatus

logger = logging.getLogger(__name__)

FetchJson = Callable[[str], Awaitable[Any]]

STATUS_TABLE = {
    "succeeded": NormalizedStatus.COMPLETED,
    "success": NormalizedStatus.COMPLETED,
    "completed": NormalizedStatus.COMPLETED,
    "complete": NormalizedStatus.COMPLETED,
    "done": NormalizedStatus.COMPLETED,
    "ok": NormalizedStatus.COMPLETED,
    "failed": NormalizedStatus.FAILED,
    "failure": NormalizedStatus.FAILED,
    "error": NormalizedStatus.FAILED,
    "errored": NormalizedStatus.FAILED,
    "canceled": NormalizedStatus.FAILED,
    "cancelled": NormalizedStatus.FAILED,
    "starting": NormalizedStatus.IN_PROGRESS,
    "processing": NormalizedStatus.IN_PROGRESS,
    "queued": NormalizedStatus.IN_PROGRESS,
    "in_progress": NormalizedStatus.IN_PROGRESS,
    "running": NormalizedStatus.IN_PROGRESS,
    "in_queue": NormalizedStatus.IN_QUEUE,
    "pending": NormalizedStatus.IN_QUEUE,
}

# Field paths in priority order. A path segment that lands on a list fans out
# over every element.
CANDIDATE_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("video_url",),
    ("video", "url"),
    ("video",),
    ("videos", "url"),
    ("videos",),
    ("output", "url"),
    ("output", "video_url"),
    ("output",),
    ("outputs", "url"),
    ("media", "url"),
    ("url",),
    ("result", "url"),
    ("result", "video_url"),
    ("result",),
    ("mp4",),
)

# Lists under these paths are scanned last element first; Replicate puts the
# final video after any previews.
LAST_WINS_PATHS: Tuple[Tuple[str, ...], ...] = (("output",),)

WRAPPER_KEYS: Tuple[str, ...] = ("response", "result", "data", "output", "outputs", "media", "videos")

FOLLOW_UP_KEYS: Tuple[str, ...] = ("response_url", "result_url", "output_url")

VIDEO_EXTENSIONS: Tuple[str, ...] = ("mp4", "webm", "mov", "m4v")

_URL_CHAR = r"[^\s\"'<>\\]"
_URL_END = r"(?=[^\w/\-.]|\.(?!\w)|$)"
_TRAILING_PUNCTUATION = ".,;:!?)]}"
VIDEO_URL_PATTERN = re.compile(
    r"https?://" + _URL_CHAR + r"+?\.(?:" + "|".join(VIDEO_EXTENSIONS) + r")"
    r"(?:\?" + _URL_CHAR + r"*)?(?:#" + _URL_CHAR + r"*)?" + _URL_END,
    re.IGNORECASE,
)


def is_http_url(value: Any) -> bool:
    if not isinstance(value, str) or not value or any(ch.isspace() for ch in value):
        return False
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def coerce_blob(blob: Any) -> Any:
    """Decode JSON text; text that is not JSON is wrapped as ``{"rawText": ...}``."""
    if isinstance(blob, bytes):
        blob = blob.decode("utf-8", errors="replace")
    if isinstance(blob, str):
        try:
            return json.loads(blob)
        except ValueError:
            return {"rawText": blob}
    return blob


def map_status(value: Any) -> NormalizedStatus:
    if not isinstance(value, str):
        return NormalizedStatus.IN_QUEUE
    return STATUS_TABLE.get(value.strip().lower(), NormalizedStatus.IN_QUEUE)


def find_status(blob: Any) -> Optional[str]:
    if not isinstance(blob, dict):
        return None
    status = blob.get("status")
    if isinstance(status, str):
        return status
    response = blob.get("response")
    if isinstance(response, dict) and isinstance(response.get("status"), str):
        return response["status"]
    return None


def _walk(node: Any, path: Sequence[str], reverse: bool = False) -> Iterator[Any]:
    if isinstance(node, list):
        for item in (reversed(node) if reverse else node):
            yield from _walk(item, path, reverse)
        return
    if not path:
        yield node
        return
    if isinstance(node, dict) and path[0] in node:
        yield from _walk(node[path[0]], path[1:], reverse)


def _scopes(blob: Any) -> List[Any]:
    scopes = [blob]
    if isinstance(blob, dict):
        for key in WRAPPER_KEYS:
            wrapped = blob.get(key)
            if isinstance(wrapped, dict):
                scopes.append(wrapped)
            elif isinstance(wrapped, list):
                scopes.extend(item for item in wrapped if isinstance(item, dict))
    return scopes


class UrlExtractor(ABC):
    name = "extractor"

    @abstractmethod
    def extract(self, blob: Any) -> Optional[str]:
        """Return the best video URL in ``blob`` or None."""


class StructuredFieldExtractor(UrlExtractor):
    """Field priority outranks nesting: ``response.video_url`` beats a root ``url``."""

    name = "structured"

    def __init__(
        self,
        paths: Sequence[Tuple[str, ...]] = CANDIDATE_PATHS,
        last_wins: Sequence[Tuple[str, ...]] = LAST_WINS_PATHS,
    ):
        self.paths = tuple(paths)
        self.last_wins = frozenset(last_wins)

    def extract(self, blob: Any) -> Optional[str]:
        scopes = _scopes(blob)
        for path in self.paths:
            for scope in scopes:
                for value in _walk(scope, path, reverse=path in self.last_wins):
                    if is_http_url(value):
                        return value
        return None


class VideoUrlPatternExtractor(UrlExtractor):
    name = "pattern"

    def __init__(self, pattern: "re.Pattern[str]" = VIDEO_URL_PATTERN):
        self.pattern = pattern

    def extract(self, blob: Any) -> Optional[str]:
        text = blob if isinstance(blob, str) else json.dumps(blob, ensure_ascii=False, default=str)
        match = self.pattern.search(text)
        return match.group(0).rstrip(_TRAILING_PUNCTUATION) if match else None


def find_follow_up_links(blob: Any) -> List[str]:
    if not isinstance(blob, dict):
        return []
    containers = [blob]
    if isinstance(blob.get("response"), dict):
        containers.append(blob["response"])

    found: List[str] = []
    for container in containers:
        candidates: List[Any] = [container.get(key) for key in FOLLOW_UP_KEYS]
        links = container.get("links")
        if isinstance(links, list):
            for link in links:
                if isinstance(link, dict):
                    candidates.append(link.get("href") or link.get("url"))
                else:
                    candidates.append(link)
        for candidate in candidates:
            if is_http_url(candidate) and candidate not in found:
                found.append(candidate)
    return found


class ResultNormalizer:
    def __init__(
        self,
        extractors: Optional[Iterable[UrlExtractor]] = None,
        fallback_extractors: Optional[Iterable[UrlExtractor]] = None,
        max_follow_up_links: int = 8,
    ):
        self.extractors = tuple(extractors) if extractors is not None else (StructuredFieldExtractor(),)
        self.fallback_extractors = (
            tuple(fallback_extractors) if fallback_extractors is not None else (VideoUrlPatternExtractor(),)
        )
        self.max_follow_up_links = max_follow_up_links

    def status_of(self, blob: Any, default: NormalizedStatus = NormalizedStatus.IN_QUEUE) -> NormalizedStatus:
        raw_status = find_status(blob)
        if raw_status is None:
            return default
        return map_status(raw_status)

    @staticmethod
    def _run(extractors: Sequence[UrlExtractor], blob: Any) -> Optional[str]:
        for extractor in extractors:
            url = extractor.extract(blob)
            if url:
                logger.debug("Video URL found by %s extractor", extractor.name)
                return url
        return None

    def normalize(self, blob: Any, default_status: NormalizedStatus = NormalizedStatus.IN_QUEUE) -> NormalizedResult:
        """Resolve status and URL without any I/O; follow-up links are not fetched."""
        blob = coerce_blob(blob)
        status = self.status_of(blob, default_status)
        if status is not NormalizedStatus.COMPLETED:
            return NormalizedResult(status, None, blob)
        url = self._run(self.extractors, blob) or self._run(self.fallback_extractors, blob)
        return NormalizedResult(status, url, blob)

    async def resolve(
        self,
        blob: Any,
        fetch: FetchJson,
        default_status: NormalizedStatus = NormalizedStatus.IN_QUEUE,
        visited: Iterable[str] = (),
        hints: Iterable[str] = (),
    ) -> NormalizedResult:
        """Like ``normalize`` but also follows links to secondary result documents.

        ``hints`` are extra follow-up links known from elsewhere, such as the
        ``response_url`` returned at submission. Each link is fetched at most once.
        """
        blob = coerce_blob(blob)
        status = self.status_of(blob, default_status)
        if status is not NormalizedStatus.COMPLETED:
            return NormalizedResult(status, None, blob)

        url = self._run(self.extractors, blob)
        if url:
            return NormalizedResult(status, url, blob)

        seen = set(visited)
        pending = deque(find_follow_up_links(blob))
        pending.extend(link for link in hints if is_http_url(link))
        fetched: List[Any] = []
        followed = 0
        while pending and followed < self.max_follow_up_links:
            link = pending.popleft()
            if link in seen:
                continue
            seen.add(link)
            followed += 1
            try:
                body = coerce_blob(await fetch(link))
            except ProxyError as exc:
                logger.warning("Follow-up link %s could not be fetched: %s", link, exc)
                continue
            url = self._run(self.extractors, body)
            if url:
                return NormalizedResult(status, url, blob)
            fetched.append(body)
            pending.extend(find_follow_up_links(body))

        for candidate in [blob, *fetched]:
            url = self._run(self.fallback_extractors, candidate)
            if url:
                return NormalizedResult(status, url, blob)

        logger.warning("Job reported completion but no video URL was found")
        return NormalizedResult(status, None, blob)
