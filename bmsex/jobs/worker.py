"""
Batch File Worker

Runs the files of one BatchJob through the estimate pipeline.
Supports:
- Sequential or bounded-parallel file processing
- A pause gate checked before every new file
- Retries with exponential backoff for retryable failures
- Cancellation of in-flight files

The worker owns the job's runtime transitions (start, pause, resume,
cancel, finish). Validating that a transition is allowed is the
registry's job.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Union

from bmsex.models.batch import BatchJob, FileStatus, FileTask, JobStatus, ProgressEvent
from bmsex.models.options import PipelineOptions
from bmsex.processors.base import EstimateUpload, ProcessingResult
from bmsex.processors.bms.pipeline import EstimatePipeline
from bmsex.services.error_service import ErrorReporter

from .events import ProgressNotifier

logger = logging.getLogger(__name__)

FILE_OPERATION = 'batch_file_processing'


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobRuntime:
    """Live control state of one batch job"""
    job: BatchJob
    gate: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    cancelled: bool = False
    in_flight: Dict[str, asyncio.Task] = field(default_factory=dict)
    runner: Optional[asyncio.Task] = None

    def __post_init__(self):
        # Open until paused
        self.gate.set()


@dataclass
class WorkerConfig:
    """Worker configuration"""
    retry_delay_base: float = 0.5  # seconds
    retry_delay_max: float = 30.0  # seconds


class BatchWorker:
    """
    Executes batch jobs file by file.

    Usage:
        worker = BatchWorker(pipeline, reporter, notifier)
        runtime = JobRuntime(job)
        runtime.runner = asyncio.create_task(worker.run(runtime))
    """

    def __init__(
        self,
        pipeline: EstimatePipeline,
        reporter: ErrorReporter,
        notifier: ProgressNotifier,
        config: Optional[WorkerConfig] = None
    ):
        self.pipeline = pipeline
        self.reporter = reporter
        self.notifier = notifier
        self.config = config or WorkerConfig()

    async def run(self, runtime: JobRuntime) -> None:
        """Process every pending file of the job, then finish it"""
        job = runtime.job
        job.status = JobStatus.PROCESSING
        job.started_at = job.statistics.start_time = _now()
        job.touch()
        self.emit(job, 'job_started')
        logger.info(f"Batch {job.id} started with {len(job.files)} file(s)")

        slots = asyncio.Semaphore(max(1, job.options.concurrency))
        try:
            for task in sorted(job.files, key=lambda f: f.index):
                await runtime.gate.wait()
                if runtime.cancelled:
                    break
                if task.status != FileStatus.PENDING:
                    continue

                await slots.acquire()
                # Pause or cancel may have happened while waiting for a slot
                await runtime.gate.wait()
                if runtime.cancelled or task.status != FileStatus.PENDING:
                    slots.release()
                    if runtime.cancelled:
                        break
                    continue

                self._start_file(job, task)
                file_task = asyncio.create_task(self._process_file(runtime, task))
                runtime.in_flight[task.id] = file_task
                file_task.add_done_callback(lambda _t, fid=task.id: self._file_done(runtime, fid, slots))

            if runtime.in_flight:
                await asyncio.gather(*list(runtime.in_flight.values()), return_exceptions=True)

        except asyncio.CancelledError:
            if not runtime.cancelled:
                self.cancel(runtime)
            raise

        except Exception as e:
            logger.exception(f"Batch {job.id} failed: {e}")
            for file_task in list(runtime.in_flight.values()):
                file_task.cancel()
            job.status = JobStatus.ERROR
            job.error = str(e)

        finally:
            self._finish(runtime)

    def pause(self, runtime: JobRuntime, message: Optional[str] = None) -> None:
        job = runtime.job
        runtime.gate.clear()
        job.status = JobStatus.PAUSED
        job.paused_at = _now()
        job.touch()
        self.emit(job, 'job_paused', message=message)
        logger.info(f"Batch {job.id} paused{': ' + message if message else ''}")

    def resume(self, runtime: JobRuntime) -> None:
        job = runtime.job
        job.status = JobStatus.PROCESSING
        job.paused_at = None
        job.touch()
        runtime.gate.set()
        self.emit(job, 'job_resumed')
        logger.info(f"Batch {job.id} resumed")

    def cancel(self, runtime: JobRuntime) -> int:
        """
        Cancel the job: pending files become skipped and in-flight files are aborted.

        Returns:
            Number of pending files marked skipped
        """
        job = runtime.job
        runtime.cancelled = True
        job.status = JobStatus.CANCELLED

        skipped = 0
        for task in job.pending_files:
            self._skip_file(job, task, "Batch cancelled")
            skipped += 1

        for file_task in list(runtime.in_flight.values()):
            file_task.cancel()

        job.finished_at = job.statistics.end_time = _now()
        job.touch()
        # Wake a paused runner so it can exit
        runtime.gate.set()
        self.emit(job, 'job_cancelled', message=f"{skipped} pending file(s) skipped")
        logger.info(f"Batch {job.id} cancelled; {skipped} pending file(s) skipped")

        if runtime.runner is None:
            runtime.done.set()
        return skipped

    def emit(
        self,
        job: BatchJob,
        event: str,
        task: Optional[FileTask] = None,
        message: Optional[str] = None
    ) -> None:
        self.notifier.publish(ProgressEvent(
            job_id=job.id,
            event=event,
            status=job.status.value,
            progress=job.statistics.progress,
            file_id=task.id if task else None,
            file_status=task.status.value if task else None,
            message=message,
        ))

    async def _process_file(self, runtime: JobRuntime, task: FileTask) -> None:
        job = runtime.job
        options = job.options
        pipeline_options = options.pipeline or PipelineOptions.from_config()
        upload = EstimateUpload(content=task.content, filename=task.filename, metadata={'job_id': job.id})

        try:
            while True:
                task.attempts += 1
                outcome = await self._attempt(upload, pipeline_options, options.validate_first)
                if isinstance(outcome, ProcessingResult):
                    self._complete_file(job, task, outcome)
                    return

                analysis = self.reporter.analyze(outcome)
                retries_left = options.max_retries - (task.attempts - 1)
                if analysis.retryable and retries_left > 0:
                    delay = min(
                        self.config.retry_delay_base * (2 ** (task.attempts - 1)),
                        self.config.retry_delay_max
                    )
                    logger.info(
                        f"Retrying {task.filename} in batch {job.id} "
                        f"({task.attempts}/{options.max_retries}) in {delay}s"
                    )
                    self.emit(job, 'file_retry', task, message=analysis.user_message)
                    await asyncio.sleep(delay)
                    continue

                self._fail_file(runtime, task, outcome)
                return

        except asyncio.CancelledError:
            if not task.status.is_terminal:
                self._skip_file(job, task, "Cancelled while processing")
            raise

    async def _attempt(
        self,
        upload: EstimateUpload,
        options: PipelineOptions,
        validate_first: bool
    ) -> Union[ProcessingResult, BaseException, str]:
        """Run the pipeline once; returns the successful result or the failure"""
        try:
            result = await self.pipeline.process(upload, options=options, validate_first=validate_first)
        except Exception as e:
            logger.exception(f"Pipeline raised for {upload.filename}: {e}")
            return e
        if result.success:
            return result
        return result.exception or result.error or "Processing failed"

    def _complete_file(self, job: BatchJob, task: FileTask, result: ProcessingResult) -> None:
        task.status = FileStatus.COMPLETED
        task.progress = 100
        task.finished_at = _now()
        task.result = result.content.summary() if result.content is not None else None
        job.statistics.successful_files += 1
        job.statistics.processed_size += task.size
        job.touch()
        self.emit(job, 'file_completed', task)

    def _fail_file(self, runtime: JobRuntime, task: FileTask, failure: Union[BaseException, str]) -> None:
        job = runtime.job
        report = self.reporter.report_error(failure, {
            'file': task.filename,
            'operation': FILE_OPERATION,
            'user': job.options.user_id,
            'job_id': job.id,
            'attempts': task.attempts,
        })
        task.status = FileStatus.FAILED
        task.progress = 100
        task.finished_at = _now()
        task.error = report.analysis.user_message
        task.error_report_id = report.id
        job.statistics.failed_files += 1
        job.statistics.processed_size += task.size
        job.touch()
        self.emit(job, 'file_failed', task, message=report.analysis.user_message)
        logger.warning(f"File {task.filename} failed in batch {job.id} (report {report.id})")

        if job.options.pause_on_error and job.status == JobStatus.PROCESSING and not runtime.cancelled:
            self.pause(runtime, message=f"Paused after {task.filename} failed")

    def _start_file(self, job: BatchJob, task: FileTask) -> None:
        task.status = FileStatus.PROCESSING
        task.progress = 10
        task.started_at = _now()
        job.touch()
        self.emit(job, 'file_started', task)

    def _skip_file(self, job: BatchJob, task: FileTask, reason: str) -> None:
        task.status = FileStatus.SKIPPED
        task.error = reason
        task.finished_at = _now()
        job.statistics.skipped_files += 1
        job.touch()
        self.emit(job, 'file_skipped', task, message=reason)

    def _file_done(self, runtime: JobRuntime, file_id: str, slots: asyncio.Semaphore) -> None:
        runtime.in_flight.pop(file_id, None)
        slots.release()

    def _finish(self, runtime: JobRuntime) -> None:
        job = runtime.job
        # Files cancelled before their task ever ran
        for task in job.files:
            if task.status == FileStatus.PROCESSING:
                self._skip_file(job, task, "Cancelled while processing")

        if job.status == JobStatus.ERROR:
            job.finished_at = job.statistics.end_time = _now()
            self.emit(job, 'job_error', message=job.error)
        elif not runtime.cancelled:
            job.status = JobStatus.COMPLETED
            job.finished_at = job.statistics.end_time = _now()
            self.emit(job, 'job_completed')
            stats = job.statistics
            logger.info(
                f"Batch {job.id} completed: {stats.successful_files} succeeded, "
                f"{stats.failed_files} failed, {stats.skipped_files} skipped"
            )
        job.touch()
        runtime.done.set()
