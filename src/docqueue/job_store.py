"""Durable job records, priority queues and status notification.

Layout in the shared key-value store (``<p>`` is the configured key prefix):

    <p>:job:<id>               JSON job record, TTL = job retention
    <p>:queue:<priority>       list of job ids, one per priority tier
    <p>:owner_jobs:<owner>     set of job ids created for an owner
    <p>:processing:<id>        claim marker, TTL = processing marker expiry
    <p>:processing_index       set of claimed ids (survives marker expiry)
    <p>:job_status             publish channel for StatusEvent messages

Only ``dequeue_next`` moves a job id off a queue list, and it relies on the
backend's atomic claim (pop + marker + index entry in one step), so no two
workers (threads or processes) can claim the same entry and a claimed entry
is always visible to reclamation.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import StoreConfig
from .errors import (
    AlreadyCompletedError,
    InvalidTransitionError,
    JobNotFoundError,
)
from .models import (
    Job,
    JobMetadata,
    JobPriority,
    JobStatus,
    StatusEvent,
    can_transition,
    utcnow,
)
from .store.backends import KeyValueStore

logger = logging.getLogger(__name__)

# Scan order for dequeue: URGENT -> HIGH -> NORMAL -> LOW
PRIORITY_SCAN_ORDER = sorted(JobPriority, reverse=True)


class JobStore:
    """Single source of truth for job records and queue state."""

    def __init__(
        self,
        kv: KeyValueStore,
        key_prefix: str = "docqueue",
        job_ttl_s: int = 7 * 24 * 60 * 60,
        processing_ttl_s: int = 30 * 60,
        reclaim_after_s: int = 30 * 60,
    ):
        self.kv = kv
        self.key_prefix = key_prefix
        self.job_ttl_s = job_ttl_s
        self.processing_ttl_s = processing_ttl_s
        self.reclaim_after_s = reclaim_after_s

    @classmethod
    def from_config(cls, kv: KeyValueStore, config: StoreConfig) -> "JobStore":
        return cls(
            kv,
            key_prefix=config.key_prefix,
            job_ttl_s=config.job_ttl_s,
            processing_ttl_s=config.processing_ttl_s,
            reclaim_after_s=config.reclaim_after_s,
        )

    # Key layout

    def _job_key(self, job_id: str) -> str:
        return f"{self.key_prefix}:job:{job_id}"

    def _queue_key(self, priority: JobPriority) -> str:
        return f"{self.key_prefix}:queue:{int(priority)}"

    def _owner_key(self, owner_id: str) -> str:
        return f"{self.key_prefix}:owner_jobs:{owner_id}"

    def _marker_key(self, job_id: str) -> str:
        return f"{self.key_prefix}:processing:{job_id}"

    @property
    def _processing_index_key(self) -> str:
        return f"{self.key_prefix}:processing_index"

    @property
    def status_channel(self) -> str:
        return f"{self.key_prefix}:job_status"

    # Creation

    def create_job(
        self,
        job_type: str,
        payload: Dict[str, Any],
        priority: JobPriority = JobPriority.NORMAL,
        owner_id: Optional[str] = None,
        logical_id: Optional[str] = None,
    ) -> Job:
        """Create a pending job and put it on its priority queue.

        Args:
            job_type: Renderer selector
            payload: Opaque renderer input (stored verbatim)
            priority: Queue tier
            owner_id: Optional owner for per-owner listing
            logical_id: Optional caller identifier for artifact dedup

        Returns:
            The persisted job (status pending)

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        job = self._new_job(job_type, payload, priority, owner_id, logical_id)
        self._save(job)
        self._index_owner(job)
        self._publish(job)
        self.enqueue(job.id, job.priority)

        logger.info(
            "Created job %s (type=%s, priority=%s)",
            job.id,
            job.type,
            job.priority.name,
            extra={"job_id": job.id, "job_type": job.type},
        )
        return job

    def create_completed_job(
        self,
        job_type: str,
        payload: Dict[str, Any],
        priority: JobPriority,
        owner_id: Optional[str],
        logical_id: Optional[str],
        download_url: str,
        cache_key: str,
    ) -> Job:
        """Record a job that is already satisfied by a cached artifact.

        The job is written directly as completed and never touches a queue.
        """
        job = self._new_job(job_type, payload, priority, owner_id, logical_id)
        now = utcnow()
        job.status = JobStatus.COMPLETED
        job.metadata.completed_at = now
        job.metadata.download_url = download_url
        job.metadata.cache_key = cache_key
        job.updated_at = now

        self._save(job)
        self._index_owner(job)
        self._publish(job)

        logger.info(
            "Created job %s from cached artifact %s",
            job.id,
            cache_key,
            extra={"job_id": job.id, "job_type": job.type},
        )
        return job

    def _new_job(
        self,
        job_type: str,
        payload: Dict[str, Any],
        priority: JobPriority,
        owner_id: Optional[str],
        logical_id: Optional[str],
    ) -> Job:
        now = utcnow()
        title = payload.get("title") if isinstance(payload, dict) else None
        return Job(
            id=str(uuid.uuid4()),
            type=job_type,
            status=JobStatus.PENDING,
            priority=JobPriority.parse(priority),
            payload=payload,
            owner_id=owner_id,
            logical_id=logical_id,
            metadata=JobMetadata(
                title=title or f"{job_type} document",
                created_at=now,
                retry_count=0,
            ),
            created_at=now,
            updated_at=now,
        )

    def _save(self, job: Job) -> None:
        self.kv.set(self._job_key(job.id), job.model_dump_json(), ttl=self.job_ttl_s)

    def _index_owner(self, job: Job) -> None:
        if not job.owner_id:
            return
        owner_key = self._owner_key(job.owner_id)
        self.kv.sadd(owner_key, job.id)
        self.kv.expire(owner_key, self.job_ttl_s)

    def _publish(self, job: Job) -> None:
        """Best-effort status notification; failures are logged, never raised."""
        event = StatusEvent(job_id=job.id, status=job.status, job=job)
        try:
            self.kv.publish(self.status_channel, event.model_dump_json())
        except Exception:
            logger.error("Failed to publish status update for job %s", job.id, exc_info=True)

    # Reads

    def get_job(self, job_id: str) -> Optional[Job]:
        raw = self.kv.get(self._job_key(job_id))
        if raw is None:
            return None
        return Job.model_validate_json(raw)

    def _require(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_by_owner(self, owner_id: str) -> List[Job]:
        """Jobs created for owner, newest first.

        Ids whose record has expired are skipped.
        """
        jobs = []
        for job_id in self.kv.smembers(self._owner_key(owner_id)):
            job = self.get_job(job_id)
            if job is not None:
                jobs.append(job)

        # Newest insertion first, so equal timestamps still come out newest-first
        jobs.reverse()
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs

    # Mutation

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        priority: Optional[JobPriority] = None,
        in_flight: bool = False,
    ) -> Job:
        """Apply a status transition and metadata patch.

        Args:
            job_id: Job identifier
            status: Target status
            error: Error message to record in metadata
            metadata: Partial metadata patch
            priority: New queue tier (used when a retry is demoted)
            in_flight: Caller is the worker settling a render that started
                before the job was cancelled

        Returns:
            The updated job

        Raises:
            JobNotFoundError: If the job does not exist (or expired)
            InvalidTransitionError: If the state machine forbids the change
            StoreUnavailableError: If the store cannot be reached
        """
        job = self._require(job_id)
        status = JobStatus(status)

        if not can_transition(job.status, status, in_flight=in_flight):
            raise InvalidTransitionError(job.status.value, status.value)

        now = utcnow()
        patch = dict(metadata or {})
        if error is not None:
            patch["error"] = error
        if status == JobStatus.PROCESSING and job.metadata.started_at is None:
            patch.setdefault("started_at", now)
        if status in (JobStatus.COMPLETED, JobStatus.FAILED):
            patch.setdefault("completed_at", now)

        job.metadata = JobMetadata.model_validate({**job.metadata.model_dump(), **patch})
        if priority is not None:
            job.priority = JobPriority.parse(priority)
        previous = job.status
        job.status = status
        job.updated_at = now

        self._save(job)
        if status.is_terminal:
            self._clear_processing(job_id)
        self._publish(job)

        logger.debug(
            "Job %s: %s -> %s",
            job_id,
            previous.value,
            status.value,
            extra={"job_id": job_id, "status": status.value},
        )
        return job

    def cancel(self, job_id: str) -> Job:
        """Cancel a job that has not completed.

        A queued entry is left on its list; the worker that eventually pops it
        sees the cancelled status and drops it. Cancelling clears the error and
        resets the retry counter.

        Raises:
            JobNotFoundError: If the job does not exist
            AlreadyCompletedError: If the job already completed
        """
        job = self._require(job_id)
        if job.status == JobStatus.COMPLETED:
            raise AlreadyCompletedError(job_id)
        if job.status == JobStatus.CANCELLED:
            return job

        job = self.update_status(
            job_id, JobStatus.CANCELLED, metadata={"error": None, "retry_count": 0}
        )
        logger.info("Cancelled job %s", job_id, extra={"job_id": job_id})
        return job

    def retry(self, job_id: str) -> Job:
        """Send a terminally failed job back to its queue.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidTransitionError: If the job is not failed
        """
        job = self._require(job_id)
        if job.status != JobStatus.FAILED:
            raise InvalidTransitionError(job.status.value, JobStatus.PENDING.value)
        job = self.update_status(job_id, JobStatus.PENDING, metadata={"completed_at": None})
        self.enqueue(job_id, job.priority)
        logger.info("Requeued failed job %s", job_id, extra={"job_id": job_id})
        return job

    # Queues

    def enqueue(self, job_id: str, priority: JobPriority) -> None:
        """Push a job id onto the list for its priority tier."""
        queue_key = self._queue_key(JobPriority.parse(priority))
        self.kv.lpush(queue_key, job_id)
        self.kv.expire(queue_key, self.job_ttl_s)

    def dequeue_next(self) -> Optional[str]:
        """Claim the next job id, highest priority first.

        Returns:
            Job id, or None if every queue is empty

        Atomicity: each tier is popped with the backend's atomic claim, which
        writes the processing marker and index entry in the same transaction,
        so a given entry is handed to exactly one caller and never leaves its
        queue unrecorded.
        """
        for priority in PRIORITY_SCAN_ORDER:
            job_id = self.kv.claim(
                self._queue_key(priority),
                self._marker_key(""),
                self._processing_index_key,
                utcnow().isoformat(),
                self.processing_ttl_s,
            )
            if job_id:
                return job_id
        return None

    def release(self, job_id: str) -> None:
        """Drop the claim on a job without changing its status."""
        self._clear_processing(job_id)

    def _clear_processing(self, job_id: str) -> None:
        self.kv.delete(self._marker_key(job_id))
        self.kv.srem(self._processing_index_key, job_id)

    def is_claimed(self, job_id: str) -> bool:
        """True while a live processing marker exists for the job."""
        return self.kv.get(self._marker_key(job_id)) is not None

    def queue_depth(self, priority: Optional[JobPriority] = None) -> int:
        if priority is not None:
            return self.kv.llen(self._queue_key(JobPriority.parse(priority)))
        return sum(self.kv.llen(self._queue_key(p)) for p in JobPriority)

    def processing_count(self) -> int:
        return len(self.kv.smembers(self._processing_index_key))

    def stats(self) -> Dict[str, Any]:
        by_priority = {p.name: self.queue_depth(p) for p in PRIORITY_SCAN_ORDER}
        return {
            "queue_depth_by_priority": by_priority,
            "queued": sum(by_priority.values()),
            "processing": self.processing_count(),
        }

    # Recovery

    def reclaim_stuck(self, now: Optional[datetime] = None) -> int:
        """Recover jobs whose worker crashed, hung or gave up.

        Walks the processing index (not only live markers, which may already
        have expired for a crashed worker):
        - processing jobs started longer ago than the threshold are failed
        - pending jobs whose claim has expired (a worker abandoned the attempt
          before it could start or requeue the job) go back on their queue
        - entries for jobs that are gone or already terminal are dropped

        Args:
            now: Reference time (defaults to current UTC time)

        Returns:
            Count of jobs failed or requeued
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.reclaim_after_s)
        minutes = self.reclaim_after_s // 60
        reclaimed = 0

        for job_id in self.kv.smembers(self._processing_index_key):
            job = self.get_job(job_id)
            if job is None or job.status.is_terminal:
                self._clear_processing(job_id)
                continue

            if job.status == JobStatus.PENDING:
                if self._claim_expired(job_id, now):
                    # Push before dropping the claim so a failure here is retried
                    self.enqueue(job_id, job.priority)
                    self._clear_processing(job_id)
                    reclaimed += 1
                    logger.warning(
                        "Requeued abandoned job %s at priority %s",
                        job_id,
                        job.priority.name,
                        extra={"job_id": job_id},
                    )
                continue

            if job.status != JobStatus.PROCESSING:
                continue

            started = job.metadata.started_at
            if started is None or started > cutoff:
                continue

            try:
                self.update_status(
                    job_id,
                    JobStatus.FAILED,
                    error=f"Job timeout - processing exceeded {minutes} minutes",
                )
            except InvalidTransitionError:
                # Settled by its worker between the read and the update
                logger.debug("Job %s changed state during reclamation", job_id)
                continue

            reclaimed += 1
            logger.warning("Reclaimed stuck job %s (started %s)", job_id, started.isoformat())

        return reclaimed

    def _claim_expired(self, job_id: str, now: datetime) -> bool:
        """True once the job's processing marker is gone or older than its TTL."""
        marker = self.kv.get(self._marker_key(job_id))
        if marker is None:
            return True
        claimed_at = datetime.fromisoformat(marker)
        return claimed_at + timedelta(seconds=self.processing_ttl_s) <= now

    # Notification

    def subscribe(self, callback: Callable[[StatusEvent], None]) -> Callable[[], None]:
        """Receive StatusEvent objects published by this process.

        Returns:
            Function that removes the subscription
        """

        def on_message(channel: str, message: str) -> None:
            callback(StatusEvent.model_validate_json(message))

        return self.kv.subscribe(self.status_channel, on_message)

    def events(self, after_id: int = 0) -> List[Tuple[int, StatusEvent]]:
        """Status events published by any process, oldest first."""
        return [
            (message_id, StatusEvent.model_validate_json(message))
            for message_id, message in self.kv.messages(self.status_channel, after_id)
        ]

    def purge_expired(self) -> int:
        return self.kv.purge_expired()
