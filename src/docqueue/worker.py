"""Worker pool implementation using a scheduler thread and ThreadPoolExecutor.

This module provides bounded-concurrency job execution with:
- A scheduler thread that polls the priority queues on a fixed tick
- ThreadPoolExecutor slots for the long-running render + upload work
- Hard render timeout (a timeout counts as a failed attempt)
- Retry with one-level priority demotion, bounded by max_retries
- Stuck-job reclamation at start-up and on an interval
- Graceful shutdown with a bounded grace period

Only the worker threads block on rendering; the scheduler never does.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Dict, Optional

from .config import WorkerConfig
from .dedup import DedupCache
from .errors import DocQueueError, RenderTimeoutError, StoreUnavailableError
from .job_store import JobStore
from .models import Job, JobStatus, WorkerStats, utcnow
from .renderer import Renderer

logger = logging.getLogger(__name__)

# How often a worker waiting on a render checks for forced shutdown
ABANDON_CHECK_S = 0.2


class _Abandoned(Exception):
    """Raised in a worker thread when stop() gives up waiting for it."""


class WorkerPool:
    """Fixed-size pool that turns queued jobs into completed or failed jobs.

    Features:
    - Explicit start/stop lifecycle (both idempotent)
    - Context manager for graceful shutdown
    - A single job's failure never reaches the scheduling loop
    - Multiple pools (threads or processes) can share one store; the store's
      atomic claim guarantees each queue entry is claimed once
    """

    def __init__(
        self,
        job_store: JobStore,
        cache: DedupCache,
        renderer: Renderer,
        config: Optional[WorkerConfig] = None,
    ):
        """Initialize worker pool.

        Args:
            job_store: Job records and queues
            cache: Artifact cache used to store rendered bytes
            renderer: Turns (job type, payload) into bytes
            config: Scheduling parameters (defaults if omitted)
        """
        self.store = job_store
        self.cache = cache
        self.renderer = renderer
        self.config = config or WorkerConfig()

        self._lock = threading.Lock()
        self._active: Dict[Future, str] = {}
        self._running = False
        self._stop_event = threading.Event()
        self._abandon = threading.Event()
        self._scheduler: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._slots = self.config.max_concurrent_workers
        self._dispatching = False
        self._last_reclaim = 0.0

        self._completed = 0
        self._failed = 0
        self._retried = 0
        self._processing_time_total = 0.0

        logger.info("Worker pool initialized with config: %s", self.config.model_dump())

    @property
    def is_running(self) -> bool:
        return self._running

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop()

    # Lifecycle

    def start(self) -> None:
        """Reclaim stuck jobs, then start the scheduler.

        Starting a running pool is a no-op. A stop() issued while start-up
        reclamation is still running wins: the scheduler is never started.

        Raises:
            StoreUnavailableError: If start-up reclamation cannot reach the store
        """
        with self._lock:
            if self._running:
                logger.warning("Worker pool is already running")
                return
            self._running = True
            stop_event = self._stop_event = threading.Event()
            self._abandon = threading.Event()

        logger.info("Starting worker pool...")

        try:
            cleaned = self.store.reclaim_stuck()
        except StoreUnavailableError:
            with self._lock:
                if self._stop_event is stop_event:
                    self._running = False
            raise
        if cleaned > 0:
            logger.info("Cleaned up %d stuck jobs on startup", cleaned)
        self._last_reclaim = time.monotonic()

        with self._lock:
            if stop_event.is_set():
                logger.info("Worker pool stopped during start-up")
                return
            self._slots = self.config.max_concurrent_workers
            self._executor = ThreadPoolExecutor(
                max_workers=self._slots, thread_name_prefix="docqueue-worker"
            )
            self._scheduler = threading.Thread(
                target=self._run_loop, args=(stop_event,), name="docqueue-scheduler", daemon=True
            )
            self._scheduler.start()

    def stop(self) -> None:
        """Stop claiming jobs and wait for active workers.

        Workers still running after the grace period are abandoned: their
        threads stop waiting on the renderer within ABANDON_CHECK_S and their
        jobs stay processing until reclamation picks them up. The render
        threads themselves are daemons and cannot delay interpreter exit.
        Stopping a stopped pool is a no-op.
        """
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()
            scheduler, executor, abandon = self._scheduler, self._executor, self._abandon

        logger.info("Stopping worker pool...")
        if scheduler is not None:
            scheduler.join()

        with self._lock:
            pending = list(self._active)

        not_done = set()
        if pending:
            logger.info("Waiting for %d active workers to complete...", len(pending))
            _, not_done = wait(pending, timeout=self.config.shutdown_grace_s)

        if not_done:
            logger.warning("Force stopping with %d active workers", len(not_done))
            abandon.set()

        # None when stop() overtook start-up reclamation
        if executor is not None:
            executor.shutdown(wait=not not_done, cancel_futures=bool(not_done))

        with self._lock:
            self._active.clear()
            if self._executor is executor:
                self._scheduler = self._executor = None
        logger.info("Worker pool stopped")

    # Scheduling

    def _run_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self._maybe_reclaim()
                self._process_jobs()
            except Exception:
                logger.exception("Error in worker loop")
            stop_event.wait(self.config.poll_interval_s)

    def _maybe_reclaim(self) -> None:
        interval = self.config.reclaim_interval_s
        if interval is None or time.monotonic() - self._last_reclaim < interval:
            return
        self._last_reclaim = time.monotonic()
        cleaned = self.store.reclaim_stuck()
        if cleaned > 0:
            logger.info("Reclaimed %d stuck jobs", cleaned)

    def _process_jobs(self) -> None:
        """Fill free slots from the queues, highest priority first."""
        with self._lock:
            available = self._slots - len(self._active)
            # A popped id is neither queued nor active until spawned
            self._dispatching = True

        try:
            for _ in range(max(available, 0)):
                if self._stop_event.is_set():
                    break
                job_id = self.store.dequeue_next()
                if not job_id:
                    break  # No jobs in queue
                self._spawn(job_id)
        finally:
            with self._lock:
                self._dispatching = False

    def _spawn(self, job_id: str) -> None:
        future = self._executor.submit(self._process_job, job_id, self._abandon)
        with self._lock:
            self._active[future] = job_id
        # Runs immediately if the job already finished
        future.add_done_callback(self._release_slot)

    def _release_slot(self, future: Future) -> None:
        with self._lock:
            job_id = self._active.pop(future, None)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Worker for job %s crashed: %s", job_id, future.exception())

    # Per-job procedure

    def _process_job(self, job_id: str, abandon: Optional[threading.Event] = None) -> None:
        """Worker function: processes a single claimed job.

        Error handling:
        - Store unavailable: log and abandon (reclamation recovers the job)
        - Render/upload errors and timeouts: retry with demotion or fail
        - Missing or cancelled job: drop the claim silently
        """
        start_time = time.monotonic()

        try:
            job = self.store.get_job(job_id)
            if job is None:
                logger.warning("Job %s not found", job_id)
                self.store.release(job_id)
                return
            if job.status == JobStatus.CANCELLED:
                logger.info("Job %s was cancelled, skipping", job_id)
                self.store.release(job_id)
                return
            job = self.store.update_status(job_id, JobStatus.PROCESSING)
        except StoreUnavailableError:
            logger.error("Store unavailable while claiming job %s, abandoning", job_id, exc_info=True)
            return
        except DocQueueError as e:
            logger.warning("Skipping job %s: %s", job_id, e)
            return

        logger.info("Processing job %s (type: %s)", job_id, job.type, extra={"job_id": job_id})

        try:
            data = self._render(job, abandon)
            artifact = self.cache.store(
                data,
                display_name=job.metadata.title or f"{job.type}_{job.id[:8]}",
                logical_id=job.logical_id,
                job_type=job.type,
            )
        except StoreUnavailableError:
            logger.error("Store unavailable while processing job %s, abandoning", job_id, exc_info=True)
            return
        except _Abandoned:
            logger.warning(
                "Abandoned job %s on shutdown, left for reclamation",
                job_id,
                extra={"job_id": job_id},
            )
            return
        except Exception as e:
            self._handle_failure(job, e)
            return

        try:
            self.store.update_status(
                job_id,
                JobStatus.COMPLETED,
                metadata={
                    "download_url": artifact.url,
                    "cache_key": artifact.key,
                    "completed_at": utcnow(),
                },
                in_flight=True,
            )
        except StoreUnavailableError:
            logger.error("Store unavailable while completing job %s, abandoning", job_id, exc_info=True)
            return
        except DocQueueError as e:
            logger.warning("Job %s rendered but could not be completed: %s", job_id, e)
            return

        elapsed = time.monotonic() - start_time
        with self._lock:
            self._completed += 1
            self._processing_time_total += elapsed

        logger.info(
            "Job %s completed in %.2fs: %s",
            job_id,
            elapsed,
            artifact.url,
            extra={"job_id": job_id},
        )

    def _render(self, job: Job, abandon: Optional[threading.Event] = None) -> bytes:
        """Call the renderer under the processing timeout.

        The render runs on a daemon thread, which cannot be interrupted: on
        timeout or forced shutdown it is left behind and its result discarded,
        and it never holds up interpreter exit.

        Raises:
            RenderTimeoutError: If the renderer exceeds processing_timeout_s
            _Abandoned: If the pool was force-stopped while waiting
        """
        future: Future = Future()

        def target():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.renderer.render(job.type, job.payload))
            except BaseException as e:
                future.set_exception(e)

        threading.Thread(
            target=target, name=f"docqueue-render-{job.id[:8]}", daemon=True
        ).start()

        timeout = self.config.processing_timeout_s
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RenderTimeoutError(f"Render timeout after {timeout:g}s")
            try:
                data = future.result(timeout=min(remaining, ABANDON_CHECK_S))
            except FutureTimeoutError:
                data = None
            # Results arriving after a forced stop are discarded
            if abandon is not None and abandon.is_set():
                raise _Abandoned(job.id)
            if future.done():
                break

        if not isinstance(data, (bytes, bytearray)):
            raise TypeError(f"Renderer returned {type(data).__name__}, expected bytes")
        return bytes(data)

    def _handle_failure(self, job: Job, exc: Exception) -> None:
        """Retry the job one priority level lower, or fail it for good.

        Demotion starts from the priority stored on the freshly reloaded
        record, so repeated failures walk URGENT -> HIGH -> NORMAL -> LOW.
        A job cancelled while its render was in flight is not retried.
        """
        message = str(exc) or type(exc).__name__

        try:
            current = self.store.get_job(job.id)
            if current is None:
                logger.warning("Job %s disappeared after a failed attempt", job.id)
                return
            if current.status == JobStatus.CANCELLED:
                logger.info("Job %s was cancelled during processing, not retrying", job.id)
                return

            retry_count = current.metadata.retry_count + 1
            logger.error(
                "Error processing job %s (attempt %d): %s",
                job.id,
                retry_count,
                message,
                extra={"job_id": job.id},
            )

            if retry_count < self.config.max_retries:
                priority = current.priority.demoted()
                self.store.update_status(
                    job.id,
                    JobStatus.PENDING,
                    error=message,
                    metadata={"retry_count": retry_count},
                    priority=priority,
                )
                # Push before dropping the claim; if the push fails the claim
                # expires and reclamation requeues the job
                self.store.enqueue(job.id, priority)
                self.store.release(job.id)
                with self._lock:
                    self._retried += 1
                logger.info(
                    "Retrying job %s (%d/%d) at priority %s",
                    job.id,
                    retry_count,
                    self.config.max_retries,
                    priority.name,
                )
            else:
                self.store.update_status(
                    job.id,
                    JobStatus.FAILED,
                    error=message,
                    metadata={"retry_count": retry_count},
                )
                with self._lock:
                    self._failed += 1
        except StoreUnavailableError:
            logger.error("Store unavailable while recording failure of job %s", job.id, exc_info=True)
        except DocQueueError as e:
            logger.warning("Could not record failure of job %s: %s", job.id, e)

    # Introspection

    def stats(self) -> WorkerStats:
        with self._lock:
            avg = self._processing_time_total / self._completed if self._completed else 0.0
            return WorkerStats(
                active=len(self._active),
                completed=self._completed,
                failed=self._failed,
                retried=self._retried,
                avg_processing_time_s=avg,
            )

    def update_config(self, **changes) -> WorkerConfig:
        """Adjust worker configuration.

        max_concurrent_workers takes effect on the next start.
        """
        self.config = WorkerConfig.model_validate({**self.config.model_dump(), **changes})
        logger.info("Worker pool config updated: %s", self.config.model_dump())
        return self.config

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Block until the queues are empty and no worker is active.

        Returns:
            True if drained, False if timeout expired first
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self.store.queue_depth() == 0:
                with self._lock:
                    busy = self._dispatching or len(self._active) > 0
                # Re-check: a finishing worker may have re-enqueued a retry
                if not busy and self.store.queue_depth() == 0:
                    return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(min(self.config.poll_interval_s, 0.1))
