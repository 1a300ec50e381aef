"""
Batch job manager.

Accepts admitted batches, queues them, and runs each one file at a time
through the pipeline orchestrator. Worker tasks pull job ids from an
asyncio queue; the pipeline itself runs in a worker thread so status reads
are served while a file is being hashed or copied.

Example:
    manager = BatchJobManager(orchestrator, workers=1)
    await manager.start()
    job = manager.submit([BatchFile.from_path(p) for p in paths])
    snapshot = await manager.wait_for(job.job_id)
    await manager.stop()
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ..errors import FatalPipelineError
from .jobs import (
    BatchFile,
    BatchJob,
    InvalidStateTransitionError,
    JobNotFoundError,
    JobStatus,
)

logger = logging.getLogger(__name__)


class BatchJobManager:
    """
    Owns the in-process job table and the workers that drain it.

    Jobs are not persisted; they live until evicted by clear_old_jobs() or
    the process exits. submit() and the async methods must be called from
    the event loop's thread; get_job()/list_jobs() are safe from any thread.
    """

    def __init__(
        self,
        orchestrator: Any,
        workers: int = 1,
        continue_on_error: bool = True,
        retention_hours: float = 24,
    ):
        """
        Initialize batch job manager.

        Args:
            orchestrator: Object with process(path) -> PipelineResult
            workers: Number of jobs that may run concurrently
            continue_on_error: Default mode for submitted jobs
            retention_hours: Age after which finished jobs are evicted
        """
        self.orchestrator = orchestrator
        self.workers = max(1, workers)
        self.continue_on_error = continue_on_error
        self.retention_hours = retention_hours

        self._jobs: Dict[str, BatchJob] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._lock = threading.Lock()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_tasks: List[asyncio.Task] = []

    @classmethod
    def from_config(cls, config: Dict[str, Any], orchestrator: Any) -> 'BatchJobManager':
        batch = config.get('batch', {}) or {}
        return cls(
            orchestrator,
            workers=batch.get('workers', 1),
            continue_on_error=batch.get('continue_on_error', True),
            retention_hours=batch.get('job_retention_hours', 24),
        )

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._worker_tasks)

    def submit(self, files: List[BatchFile], continue_on_error: Optional[bool] = None) -> BatchJob:
        """
        Create a queued job and enqueue it; returns immediately.

        Args:
            files: Admitted files, in processing order
            continue_on_error: Override the manager default for this job

        Returns:
            The new job (status queued)
        """
        if continue_on_error is None:
            continue_on_error = self.continue_on_error

        job = BatchJob(
            job_id=BatchJob.new_id(),
            files=list(files),
            continue_on_error=continue_on_error,
        )

        with self._lock:
            self._jobs[job.job_id] = job
        self._done[job.job_id] = asyncio.Event()
        self._queue.put_nowait(job.job_id)

        logger.info(
            f"Job {job.job_id} queued: {job.total} file(s), "
            f"continue_on_error={continue_on_error}"
        )
        return job

    async def start(self) -> None:
        """Spawn worker tasks; queued jobs start draining immediately."""
        if self.is_running:
            logger.debug("Batch workers already running")
            return

        self._worker_tasks = [
            asyncio.create_task(self._worker(n), name=f"batch-worker-{n}")
            for n in range(self.workers)
        ]
        logger.info(f"Started {self.workers} batch worker(s)")

    async def stop(self) -> None:
        """
        Stop workers after the jobs they are running finish.

        Jobs still queued stay queued.
        """
        if not self._worker_tasks:
            return

        # Sentinels jump the queue so pending jobs are left untouched
        pending = []
        while not self._queue.empty():
            pending.append(self._queue.get_nowait())
            self._queue.task_done()
        for _ in self._worker_tasks:
            self._queue.put_nowait(None)

        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks = []

        for job_id in pending:
            self._queue.put_nowait(job_id)
        logger.info("Batch workers stopped")

    async def run_job(self, job_id: str) -> Dict[str, Any]:
        """
        Process one job to completion on the current task.

        Returns:
            Final job snapshot

        Raises:
            JobNotFoundError: If the job id is unknown
            InvalidStateTransitionError: If the job is not queued
        """
        job = self._require(job_id)

        with self._lock:
            job.transition(JobStatus.PROCESSING)
        logger.info(f"Job {job_id} processing {job.total} file(s)")

        try:
            await self._process_files(job)
        except FatalPipelineError as e:
            logger.error(f"Job {job_id} aborted: {e}")
            with self._lock:
                job.abort(f"Fatal error: {e}")
        except Exception as e:
            logger.error(f"Job {job_id} aborted by unexpected error: {e}", exc_info=True)
            with self._lock:
                job.abort(f"Unexpected error: {e}")
        finally:
            event = self._done.get(job_id)
            if event is not None:
                event.set()

        logger.info(
            f"Job {job_id} {job.status.value}: {job.processed}/{job.total} processed, "
            f"{len(job.errors)} error(s)"
        )
        return self.get_job(job_id)

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Wait until a job reaches a terminal status.

        Raises:
            JobNotFoundError: If the job id is unknown
            asyncio.TimeoutError: If timeout elapses first
        """
        self._require(job_id)
        event = self._done.setdefault(job_id, asyncio.Event())
        if not self._jobs[job_id].status.is_terminal:
            await asyncio.wait_for(event.wait(), timeout)
        return self.get_job(job_id)

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Snapshot of a job, or None if unknown."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.to_dict() if job else None

    def list_jobs(self) -> List[Dict[str, Any]]:
        """Snapshots of every job, oldest first."""
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at)
            return [job.to_dict() for job in jobs]

    def clear_old_jobs(self, max_age_hours: Optional[float] = None) -> int:
        """
        Evict finished jobs older than max_age_hours (default: retention).

        Returns:
            Number of jobs evicted
        """
        if max_age_hours is None:
            max_age_hours = self.retention_hours
        cutoff = datetime.now(timezone.utc) - timedelta(hours=max_age_hours)

        with self._lock:
            expired = [
                job_id for job_id, job in self._jobs.items()
                if job.status.is_terminal and job.completed_at and job.completed_at <= cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
                self._done.pop(job_id, None)

        if expired:
            logger.info(f"Evicted {len(expired)} finished job(s)")
        return len(expired)

    async def _process_files(self, job: BatchJob) -> None:
        """Run the job's files strictly in order."""
        for batch_file in job.files:
            result = await asyncio.to_thread(self.orchestrator.process, batch_file.path)

            if result.success:
                with self._lock:
                    job.record()
                logger.debug(f"Job {job.job_id}: {batch_file.filename} ingested")
                continue

            error = f"{batch_file.filename}: {result.error} (phase: {result.phase})"
            if not job.continue_on_error:
                with self._lock:
                    job.abort(error)
                return

            with self._lock:
                job.record(error)

        with self._lock:
            job.transition(JobStatus.COMPLETED)

    async def _worker(self, worker_id: int) -> None:
        """Pull job ids until a stop sentinel arrives."""
        while True:
            job_id = await self._queue.get()
            try:
                if job_id is None:
                    return
                await self.run_job(job_id)
            except (JobNotFoundError, InvalidStateTransitionError) as e:
                # Evicted, or already run directly through run_job()
                logger.debug(f"Worker {worker_id} skipped job {job_id}: {e}")
            finally:
                self._queue.task_done()

    def _require(self, job_id: str) -> BatchJob:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job
