import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, Optional

from vidproxy.models.domain import Job

logger = logging.getLogger(__name__)


class JobStore(ABC):
    """Shared job table. The cached video URL is written at most once per job."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def put_if_absent(self, job: Job) -> Job:
        """Store ``job`` unless the id is taken; return whichever job is stored."""

    @abstractmethod
    async def compare_and_set_url(self, job_id: str, url: str) -> Optional[str]:
        """Freeze ``url`` on the job if none is cached yet; return the cached URL."""


class InMemoryJobStore(JobStore):
    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    async def put_if_absent(self, job: Job) -> Job:
        async with self._lock:
            existing = self._jobs.get(job.job_id)
            if existing is not None:
                return existing
            self._jobs[job.job_id] = job
            return job

    async def compare_and_set_url(self, job_id: str, url: str) -> Optional[str]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if job.cached_url is None:
                self._jobs[job_id] = replace(job, cached_url=url)
                logger.info("Job %s resolved to %s", job_id, url)
                return url
            if job.cached_url != url:
                logger.debug("Job %s already frozen; ignoring %s", job_id, url)
            return job.cached_url
