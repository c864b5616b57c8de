"""
Batch Registry

Process-scoped registry of batch import jobs. Owns job lookup, the
control state machine and aggregate statistics; file execution is
delegated to BatchWorker.

Job states:
    created -> queued -> processing -> {paused <-> processing}
            -> {completed | cancelled | error}

Repeating a control action on a job already in the target state is a
no-op. Any other invalid transition raises BatchControlError and leaves
the job unchanged.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from bmsex.config.bmsex_config import BMSEXConfig
from bmsex.exceptions import BatchControlError, JobNotFoundError, ResourceLimitError
from bmsex.models.batch import BatchJob, BatchOptions, FileTask, JobStatus
from bmsex.processors.base import EstimateUpload
from bmsex.processors.bms.pipeline import EstimatePipeline
from bmsex.services.error_service import ErrorReporter

from .events import ProgressListener, ProgressNotifier
from .worker import BatchWorker, JobRuntime, WorkerConfig

logger = logging.getLogger(__name__)

BatchFile = Union[EstimateUpload, Tuple[str, bytes]]


class BatchRegistry:
    """
    Submits, runs and controls batch jobs.

    Usage:
        registry = BatchRegistry(pipeline=pipeline)
        job_id = await registry.submit([('a.xml', data_a), ('b.xml', data_b)])
        await registry.pause(job_id)
        await registry.resume(job_id)
        snapshot = await registry.wait(job_id)
    """

    def __init__(
        self,
        pipeline: Optional[EstimatePipeline] = None,
        reporter: Optional[ErrorReporter] = None,
        notifier: Optional[ProgressNotifier] = None,
        config: Optional[BMSEXConfig] = None,
        worker_config: Optional[WorkerConfig] = None
    ):
        self.config = config or BMSEXConfig()
        self.reporter = reporter or ErrorReporter(config=self.config)
        self.notifier = notifier or ProgressNotifier(
            max_queue_size=int(self.config.get('batch.event_queue_size', 1000)),
            audit_sink=self.reporter.audit_sink,
        )
        self.pipeline = pipeline or EstimatePipeline(bmsex_config=self.config)
        self.worker = BatchWorker(self.pipeline, self.reporter, self.notifier, worker_config)
        self.max_batch_files = int(self.config.get('intake.max_batch_files', 100))
        self._jobs: Dict[str, JobRuntime] = {}

    async def submit(self, files: Iterable[BatchFile], options: Optional[BatchOptions] = None) -> str:
        """
        Create and queue a batch job.

        Args:
            files: Uploads or (filename, content) pairs, in processing order
            options: Batch options; defaults come from configuration

        Returns:
            The job id
        """
        options = options or BatchOptions.from_config(self.config)
        tasks = []
        for index, item in enumerate(files):
            if isinstance(item, EstimateUpload):
                filename, content = item.filename or f"file_{index + 1}.xml", item.content
            else:
                filename, content = item
            tasks.append(FileTask(filename=filename, index=index, content=content))

        if not tasks:
            raise ValueError("A batch needs at least one file")
        if len(tasks) > self.max_batch_files:
            raise ResourceLimitError(
                f"Batch has {len(tasks)} files; the limit is {self.max_batch_files}",
                limit=self.max_batch_files,
                actual=len(tasks),
            )

        job = BatchJob(files=tasks, options=options)
        runtime = JobRuntime(job=job)
        self._jobs[job.id] = runtime
        self.worker.emit(job, 'job_created')

        job.status = JobStatus.QUEUED
        job.queued_at = datetime.now(timezone.utc)
        job.touch()
        self.worker.emit(job, 'job_queued')
        logger.info(f"Batch {job.id} queued with {len(tasks)} file(s)")

        if options.auto_start:
            await self.start(job.id)
        return job.id

    async def start(self, job_id: str) -> Dict[str, Any]:
        runtime = self._runtime(job_id)
        job = runtime.job
        if runtime.runner is not None or job.status in (JobStatus.PROCESSING, JobStatus.PAUSED):
            return job.to_dict()
        if job.status != JobStatus.QUEUED:
            raise BatchControlError(job_id, 'start', job.status.value)

        runtime.runner = asyncio.create_task(self.worker.run(runtime))
        runtime.runner.add_done_callback(lambda t, jid=job_id: self._runner_done(jid, t))
        # Let the runner claim the job before returning
        await asyncio.sleep(0)
        return job.to_dict()

    def get(self, job_id: str) -> Dict[str, Any]:
        """Point-in-time snapshot of a job"""
        return self._runtime(job_id).job.to_dict()

    def list_jobs(self, status: Optional[Union[JobStatus, str]] = None) -> List[Dict[str, Any]]:
        status = JobStatus(status) if status is not None else None
        jobs = sorted((r.job for r in self._jobs.values()), key=lambda j: j.created_at, reverse=True)
        return [j.to_dict() for j in jobs if status is None or j.status == status]

    async def pause(self, job_id: str) -> Dict[str, Any]:
        """Stop starting new files; the in-flight file finishes"""
        runtime = self._runtime(job_id)
        job = runtime.job
        if job.status == JobStatus.PAUSED:
            return job.to_dict()
        if job.status != JobStatus.PROCESSING:
            raise BatchControlError(job_id, 'pause', job.status.value)
        self.worker.pause(runtime)
        return job.to_dict()

    async def resume(self, job_id: str) -> Dict[str, Any]:
        runtime = self._runtime(job_id)
        job = runtime.job
        if job.status == JobStatus.PROCESSING:
            return job.to_dict()
        if job.status != JobStatus.PAUSED:
            raise BatchControlError(job_id, 'resume', job.status.value)
        self.worker.resume(runtime)
        return job.to_dict()

    async def cancel(self, job_id: str) -> Dict[str, Any]:
        """Skip pending files, abort in-flight ones and wait for the runner to stop"""
        runtime = self._runtime(job_id)
        job = runtime.job
        if job.status == JobStatus.CANCELLED:
            return job.to_dict()
        if job.status not in (JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.PAUSED):
            raise BatchControlError(job_id, 'cancel', job.status.value)

        self.worker.cancel(runtime)
        if runtime.runner is not None and not runtime.runner.done():
            await asyncio.wait({runtime.runner})
        return job.to_dict()

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Wait for a job to reach a terminal state and return its snapshot"""
        runtime = self._runtime(job_id)
        await asyncio.wait_for(runtime.done.wait(), timeout=timeout)
        await self.notifier.flush()
        return runtime.job.to_dict()

    def subscribe(self, listener: ProgressListener) -> None:
        self.notifier.subscribe(listener)

    def unsubscribe(self, listener: ProgressListener) -> None:
        self.notifier.unsubscribe(listener)

    def global_statistics(self) -> Dict[str, Any]:
        jobs = [r.job for r in self._jobs.values()]
        total_files = sum(j.statistics.total_files for j in jobs)
        successful = sum(j.statistics.successful_files for j in jobs)
        failed = sum(j.statistics.failed_files for j in jobs)
        finished_times = [
            j.statistics.processing_time_ms for j in jobs
            if j.status.is_terminal and j.statistics.processing_time_ms is not None
        ]
        attempted = successful + failed
        return {
            'total_batches': len(jobs),
            'active_batches': sum(1 for j in jobs if not j.status.is_terminal),
            'total_files': total_files,
            'successful_files': successful,
            'failed_files': failed,
            'success_rate': round(successful / attempted * 100, 2) if attempted else 0.0,
            'average_processing_time_ms': (
                int(sum(finished_times) / len(finished_times)) if finished_times else 0
            ),
            'events_dropped': self.notifier.dropped,
        }

    def cleanup(self, older_than_days: Optional[int] = None) -> int:
        """Drop terminal jobs that finished before the cutoff"""
        days = older_than_days if older_than_days is not None else int(self.config.get('batch.cleanup_days', 7))
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        stale = [
            job_id for job_id, runtime in self._jobs.items()
            if runtime.job.status.is_terminal
            and (runtime.job.finished_at or runtime.job.updated_at) < cutoff
        ]
        for job_id in stale:
            del self._jobs[job_id]
        if stale:
            logger.info(f"Removed {len(stale)} batch job(s) older than {days} days")
        return len(stale)

    async def shutdown(self) -> None:
        """Cancel every active job and stop the notifier"""
        for job_id, runtime in list(self._jobs.items()):
            if runtime.job.status in (JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.PAUSED):
                await self.cancel(job_id)
        await self.notifier.flush()
        await self.notifier.close()

    def __len__(self) -> int:
        return len(self._jobs)

    def _runtime(self, job_id: str) -> JobRuntime:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise JobNotFoundError(job_id) from None

    def _runner_done(self, job_id: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Batch {job_id} runner stopped with an error: {error}")
