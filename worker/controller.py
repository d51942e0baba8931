"""
Upload processing queue.

UploadQueue accepts image payloads, admits at most `max_concurrency` of them
into extraction at a time (FIFO), tracks each job's status and tells
observers about every status change.

All job state, the backlog and the slot counter change only while holding
`self._lock`. Observers are called while the lock is held, so they must
return quickly; they may call back into the queue from the same thread.
"""

import threading
import time
import uuid
from typing import Callable, Dict, List, Optional, Set, Tuple

from loguru import logger

from common.config import JOB_TIMEOUT, MAX_CONCURRENCY
from common.errors import QueueClosedError
from common.extraction import ExtractionService
from common.job_schema import JobSnapshot, JobStatus, Payload, UploadJob
from common.previews import PreviewStore
from worker.scheduler import Scheduler
from worker.worker import ExtractionWorker

Observer = Callable[[JobSnapshot], None]


class UploadQueue:

    def __init__(
        self,
        extractor: ExtractionService,
        previews: PreviewStore,
        max_concurrency: int = MAX_CONCURRENCY,
        job_timeout: Optional[float] = JOB_TIMEOUT,
    ):
        """
        Args:
            extractor: service that turns image bytes into addresses
            previews: owner of the per-job thumbnail files
            max_concurrency: number of jobs allowed in PROCESSING at once
            job_timeout: seconds before an attempt is failed; None waits forever
        """
        if job_timeout is not None and job_timeout <= 0:
            raise ValueError(f"job_timeout must be positive, got {job_timeout}")
        self.extractor = extractor
        self.previews = previews
        self.job_timeout = job_timeout

        self._scheduler = Scheduler(max_concurrency)
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._jobs: Dict[str, UploadJob] = {}
        self._observers: Dict[str, Observer] = {}
        self._listeners: List[Observer] = []
        self._timers: Dict[str, threading.Timer] = {}
        # attempts currently holding a slot
        self._in_flight: Dict[Tuple[str, int], ExtractionWorker] = {}
        self._workers: Set[ExtractionWorker] = set()
        self._closed = False

        logger.info(f"UploadQueue initialized with {max_concurrency} slots")

    @property
    def max_concurrency(self) -> int:
        return self._scheduler.max_concurrency

    # ---------- public contract ----------

    def submit(self, payload: Payload, on_update: Optional[Observer] = None) -> str:
        """
        Creates a QUEUED job for payload and returns its id without waiting
        for processing. Raises UnreadablePayloadError when no preview can be
        made from the payload; no job is created in that case.
        """
        if self._closed:
            raise QueueClosedError("Upload queue has been shut down")

        job_id = f"upload_{uuid.uuid4().hex}"
        preview_path = self.previews.allocate(job_id, payload)
        job = UploadJob(
            id=job_id,
            payload=payload,
            submitted_at=time.monotonic(),
            preview_path=preview_path,
        )

        with self._lock:
            if self._closed:
                self.previews.release(job_id)
                raise QueueClosedError("Upload queue has been shut down")
            self._jobs[job_id] = job
            if on_update is not None:
                self._observers[job_id] = on_update
            self._scheduler.enqueue(job_id)
            logger.info(f"Submitted {job_id} ({payload.media_type}, {len(payload.data)} bytes)")
            self._admit()
        return job_id

    def retry(self, job_id: str) -> bool:
        """Re-queues a FAILED job at the back of the backlog. Any other state is left alone."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.FAILED or self._closed:
                logger.debug(f"Ignoring retry for {job_id}: {job.status.value if job else 'unknown job'}")
                return False
            job.status = JobStatus.QUEUED
            job.error = None
            job.submitted_at = time.monotonic()
            self._scheduler.enqueue(job_id)
            logger.info(f"Retrying {job_id}")
            self._notify(job)
            self._admit()
        return True

    def remove(self, job_id: str) -> bool:
        """
        Forgets a job in any state and releases its preview. Idempotent.
        An in-flight attempt keeps its slot until it returns, but its outcome is dropped.
        """
        with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is None:
                return False
            self._observers.pop(job_id, None)
            self._scheduler.discard(job_id)
            self._cancel_timer(job_id)
            self._idle.notify_all()
        self.previews.release(job_id)
        logger.info(f"Removed {job_id} ({job.status.value})")
        return True

    def get_status(self, job_id: str) -> Optional[JobSnapshot]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.snapshot() if job else None

    def list_jobs(self) -> List[JobSnapshot]:
        """All live jobs, oldest queue position first."""
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.submitted_at)
            return [j.snapshot() for j in jobs]

    def clear_completed(self) -> List[str]:
        """Removes every COMPLETED job and returns their ids."""
        with self._lock:
            done = [j.id for j in self._jobs.values() if j.status == JobStatus.COMPLETED]
        return [job_id for job_id in done if self.remove(job_id)]

    def add_listener(self, listener: Observer) -> None:
        """Registers a callback that receives every snapshot of every job."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Observer) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def stats(self) -> dict:
        with self._lock:
            counts = {status.value: 0 for status in JobStatus}
            for job in self._jobs.values():
                counts[job.status.value] += 1
            return {
                "max_concurrency": self.max_concurrency,
                "processing": self._scheduler.processing,
                "backlog": len(self._scheduler),
                "total": len(self._jobs),
                **counts,
            }

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Blocks until nothing is queued or in flight. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(self._is_idle, timeout)

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """
        Removes every job, stops admitting and optionally joins running workers.
        The preview store belongs to the caller and is left open.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            job_ids = list(self._jobs)

        for job_id in job_ids:
            self.remove(job_id)

        if wait:
            with self._lock:
                workers = list(self._workers)
            for worker in workers:
                worker.join(timeout)

        logger.info("UploadQueue shut down")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()

    # ---------- scheduling ----------

    def _admit(self) -> None:
        # caller holds the lock
        while not self._closed:
            job_id = self._scheduler.admit_next()
            if job_id is None:
                return

            job = self._jobs[job_id]
            job.status = JobStatus.PROCESSING
            job.attempts += 1
            job.result = None
            job.error = None

            worker = ExtractionWorker(job_id, job.attempts, job.payload, self.extractor, self._on_worker_done)
            self._in_flight[(job_id, job.attempts)] = worker
            self._workers.add(worker)
            if self.job_timeout is not None:
                timer = threading.Timer(self.job_timeout, self._on_timeout, args=(job_id, job.attempts))
                timer.daemon = True
                self._timers[job_id] = timer
                timer.start()

            logger.debug(
                f"Admitted {job_id} (attempt {job.attempts}, "
                f"{self._scheduler.processing}/{self.max_concurrency} slots)"
            )
            self._notify(job)
            worker.start()

    def _on_worker_done(self, worker: ExtractionWorker) -> None:
        with self._lock:
            self._workers.discard(worker)
            if self._in_flight.pop((worker.job_id, worker.attempt), None) is None:
                # the watchdog already failed this attempt and freed its slot
                logger.debug(f"Dropping late result for {worker.job_id} (attempt {worker.attempt})")
                self._idle.notify_all()
                return

            self._cancel_timer(worker.job_id)
            self._scheduler.release_slot()

            job = self._jobs.get(worker.job_id)
            if job is None:
                logger.debug(f"Dropping result for removed job {worker.job_id}")
            elif job.status == JobStatus.PROCESSING and job.attempts == worker.attempt:
                if worker.succeeded:
                    job.status = JobStatus.COMPLETED
                    job.result = worker.addresses
                    logger.info(f"Completed {job.id}: {len(job.result)} address(es)")
                else:
                    job.status = JobStatus.FAILED
                    job.error = worker.error
                    logger.warning(f"Failed {job.id}: {job.error}")
                self._notify(job)

            self._admit()
            self._idle.notify_all()

    def _on_timeout(self, job_id: str, attempt: int) -> None:
        with self._lock:
            if self._in_flight.pop((job_id, attempt), None) is None:
                return
            self._timers.pop(job_id, None)
            self._scheduler.release_slot()

            job = self._jobs.get(job_id)
            if job is not None and job.status == JobStatus.PROCESSING and job.attempts == attempt:
                job.status = JobStatus.FAILED
                job.error = f"Extraction timed out after {self.job_timeout:g}s"
                logger.warning(f"Timed out {job_id} (attempt {attempt})")
                self._notify(job)

            self._admit()
            self._idle.notify_all()

    def _cancel_timer(self, job_id: str) -> None:
        timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()

    def _is_idle(self) -> bool:
        return not self._in_flight and len(self._scheduler) == 0

    # ---------- notification ----------

    def _notify(self, job: UploadJob) -> None:
        # caller holds the lock
        snapshot = job.snapshot()
        targets = []
        if job.id in self._observers:
            targets.append(self._observers[job.id])
        targets.extend(self._listeners)

        for callback in targets:
            # an observer may have removed the job
            if job.id not in self._jobs:
                return
            try:
                callback(snapshot)
            except Exception:
                logger.exception(f"Observer failed for {job.id}")
