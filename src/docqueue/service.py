"""Queue service: the single entry point for callers.

Combines payload validation, dedup short-circuiting, job submission and
worker pool lifecycle. There is no module-level instance; build one with
``QueueService.from_config`` at application start-up and pass it around.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Type

from .config import DocQueueConfig
from .dedup import DedupCache
from .job_store import JobStore
from .models import Job, JobPriority, QueueStats
from .payloads import PAYLOAD_MODELS, DocumentPayload, validate_payload
from .renderer import Renderer
from .storage import build_object_store
from .store.backends import KeyValueStore
from .store.sqlite_backend import SQLiteStore
from .worker import WorkerPool

logger = logging.getLogger(__name__)


class QueueService:
    """Facade over JobStore, DedupCache and WorkerPool."""

    def __init__(
        self,
        job_store: JobStore,
        cache: DedupCache,
        pool: WorkerPool,
        payload_models: Mapping[str, Type[DocumentPayload]] = PAYLOAD_MODELS,
        auto_start: bool = True,
        kv: Optional[KeyValueStore] = None,
    ):
        """
        Args:
            job_store: Job records and queues
            cache: Artifact cache checked before a job is created
            pool: Worker pool processing this store's queues
            payload_models: Job type -> payload model registry
            auto_start: Start the pool when a job is queued and it is idle
            kv: Backing store closed by ``close()`` (when owned by the service)
        """
        self.store = job_store
        self.cache = cache
        self.pool = pool
        self.payload_models = payload_models
        self.auto_start = auto_start
        self._kv = kv

    @classmethod
    def from_config(cls, config: DocQueueConfig, renderer: Renderer) -> "QueueService":
        """Wire every component from a resolved configuration."""
        kv = SQLiteStore(config.store.path, busy_timeout_s=config.store.busy_timeout_s)
        job_store = JobStore.from_config(kv, config.store)
        cache = DedupCache.from_config(build_object_store(config.cache), config.cache)
        pool = WorkerPool(job_store, cache, renderer, config.worker)
        return cls(job_store, cache, pool, auto_start=config.auto_start, kv=kv)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def queue(
        self,
        job_type: str,
        payload: Any,
        priority: JobPriority = JobPriority.NORMAL,
        owner_id: Optional[str] = None,
    ) -> Job:
        """Submit a render request.

        If the payload carries a logical identifier and an artifact for it is
        already stored, the returned job is created directly as completed with
        the cached URL; nothing is queued or rendered.

        Raises:
            InvalidPayloadError: Unknown job type or malformed payload
            StoreUnavailableError: If the job store cannot be reached
        """
        job_type = job_type.lower()
        model = validate_payload(job_type, payload, self.payload_models)
        # Store the payload as submitted.
        data: Dict[str, Any] = (
            dict(payload) if isinstance(payload, Mapping) else model.to_payload()
        )
        logical_id = model.logical_id
        priority = JobPriority.parse(priority)

        if logical_id:
            check = self.cache.exists(logical_id, job_type)
            if check.found:
                logger.info("Cache hit for %s %s", job_type, logical_id)
                return self.store.create_completed_job(
                    job_type,
                    data,
                    priority,
                    owner_id,
                    logical_id,
                    download_url=check.url,
                    cache_key=check.key,
                )

        job = self.store.create_job(
            job_type, data, priority, owner_id=owner_id, logical_id=logical_id
        )

        if self.auto_start and not self.pool.is_running:
            self.pool.start()

        return job

    def status(self, job_id: str) -> Optional[Job]:
        """Current job record, or None if it does not exist (or expired)."""
        return self.store.get_job(job_id)

    def cancel(self, job_id: str) -> Job:
        return self.store.cancel(job_id)

    def retry(self, job_id: str) -> Job:
        return self.store.retry(job_id)

    def list_for_owner(self, owner_id: str) -> List[Job]:
        return self.store.list_by_owner(owner_id)

    def stats(self) -> QueueStats:
        worker = self.pool.stats()
        queue = self.store.stats()
        return QueueStats(
            active=worker.active,
            queued=queue["queued"],
            processing=queue["processing"],
            completed=worker.completed,
            failed=worker.failed,
            retried=worker.retried,
            avg_processing_time_s=worker.avg_processing_time_s,
            queue_depth_by_priority=queue["queue_depth_by_priority"],
            running=self.pool.is_running,
        )

    def start(self) -> None:
        self.pool.start()

    def stop(self) -> None:
        self.pool.stop()

    def close(self) -> None:
        """Stop the pool and release the backing store."""
        self.pool.stop()
        if self._kv is not None:
            self._kv.close()
