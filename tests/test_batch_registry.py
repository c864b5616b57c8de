"""
Tests for batch job orchestration
"""

import asyncio

import pytest

from bmsex.exceptions import BatchControlError, JobNotFoundError, ResourceLimitError
from bmsex.jobs.registry import BatchRegistry
from bmsex.jobs.worker import FILE_OPERATION, WorkerConfig
from bmsex.models.batch import BatchOptions
from bmsex.models.options import PipelineOptions
from bmsex.models.errors import ErrorCategory
from bmsex.processors.base import EstimateUpload
from bmsex.services.error_service import USER_MESSAGES

from conftest import simple_estimate


class GatedPipeline:
    """Wraps a pipeline and holds every file until the gate opens"""

    def __init__(self, inner):
        self.inner = inner
        self.gate = asyncio.Event()
        self.calls = []

    async def process(self, upload, options=None, validate_first=True):
        self.calls.append(upload.filename)
        await self.gate.wait()
        return await self.inner.process(upload, options=options, validate_first=validate_first)


class FlakyPipeline:
    """Fails the first ``failures`` calls with a connection error"""

    def __init__(self, inner, failures=1):
        self.inner = inner
        self.failures = failures
        self.calls = 0

    async def process(self, upload, options=None, validate_first=True):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("connection reset by vendor gateway")
        return await self.inner.process(upload, options=options, validate_first=validate_first)


async def until(predicate, timeout=5.0):
    """Poll until ``predicate`` holds"""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def three_files():
    return [(f"{n}.xml", simple_estimate(estimate_id=f"EST-{n}")) for n in (1, 2, 3)]


def file_statuses(snapshot):
    return [f['status'] for f in snapshot['files']]


class TestBatchProcessing:
    """Runs to completion"""

    @pytest.mark.asyncio
    async def test_failed_file_does_not_stop_the_batch(self, pipeline, bmsex_config, simple_xml, malformed_xml, cieca_xml):
        registry = BatchRegistry(pipeline=pipeline, config=bmsex_config)

        job_id = await registry.submit([
            ('first.xml', simple_xml),
            ('broken.xml', malformed_xml),
            EstimateUpload(content=cieca_xml, filename='third.xml'),
        ])
        snapshot = await registry.wait(job_id, timeout=10)

        assert snapshot['status'] == 'completed'
        assert snapshot['message'] == "All files processed"
        assert snapshot['progress'] == 100
        assert file_statuses(snapshot) == ['completed', 'failed', 'completed']
        stats = snapshot['statistics']
        assert stats['successful_files'] == 2
        assert stats['failed_files'] == 1
        assert stats['processed_files'] == 3
        assert stats['processed_size'] == stats['total_size']

        broken = snapshot['files'][1]
        assert broken['error'] == USER_MESSAGES[ErrorCategory.PARSING]
        report = registry.reporter.get(broken['error_report_id'])
        assert report.context.job_id == job_id
        assert report.context.operation == FILE_OPERATION
        assert report.context.file == 'broken.xml'

        assert snapshot['files'][0]['result']['document_id'] == 'EST-1001'
        assert snapshot['control'] == {'can_pause': False, 'can_resume': False, 'can_cancel': False}
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_events_follow_the_lifecycle(self, pipeline, bmsex_config, simple_xml):
        registry = BatchRegistry(pipeline=pipeline, config=bmsex_config)
        seen = []
        registry.subscribe(lambda event: seen.append(event.event))

        job_id = await registry.submit([('only.xml', simple_xml)])
        await registry.wait(job_id, timeout=10)

        assert seen == ['job_created', 'job_queued', 'job_started', 'file_started', 'file_completed', 'job_completed']
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_retryable_failure_is_retried(self, pipeline, bmsex_config, simple_xml):
        flaky = FlakyPipeline(pipeline, failures=1)
        registry = BatchRegistry(pipeline=flaky, config=bmsex_config, worker_config=WorkerConfig(retry_delay_base=0.01))
        events = []
        registry.subscribe(lambda event: events.append(event.event))

        job_id = await registry.submit([('a.xml', simple_xml)], BatchOptions(max_retries=2))
        snapshot = await registry.wait(job_id, timeout=10)

        assert file_statuses(snapshot) == ['completed']
        assert snapshot['files'][0]['attempts'] == 2
        assert 'file_retry' in events
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_parse_failure_is_not_retried(self, pipeline, bmsex_config, malformed_xml):
        registry = BatchRegistry(pipeline=pipeline, config=bmsex_config, worker_config=WorkerConfig(retry_delay_base=0.01))

        job_id = await registry.submit([('bad.xml', malformed_xml)], BatchOptions(max_retries=3))
        snapshot = await registry.wait(job_id, timeout=10)

        assert snapshot['files'][0]['attempts'] == 1
        assert snapshot['files'][0]['status'] == 'failed'
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_parallel_files(self, pipeline, bmsex_config):
        registry = BatchRegistry(pipeline=pipeline, config=bmsex_config)

        job_id = await registry.submit(three_files(), BatchOptions(concurrency=3))
        snapshot = await registry.wait(job_id, timeout=10)

        assert file_statuses(snapshot) == ['completed', 'completed', 'completed']
        assert [f['result']['document_id'] for f in snapshot['files']] == ['EST-1', 'EST-2', 'EST-3']
        await registry.shutdown()


class TestBatchControl:
    """Pause, resume and cancel"""

    @pytest.mark.asyncio
    async def test_pause_and_resume_process_every_file_once(self, pipeline, bmsex_config):
        gated = GatedPipeline(pipeline)
        registry = BatchRegistry(pipeline=gated, config=bmsex_config)

        job_id = await registry.submit(three_files())
        await until(lambda: len(gated.calls) == 1)

        paused = await registry.pause(job_id)
        assert paused['status'] == 'paused'
        assert paused['control']['can_resume']

        # The in-flight file finishes; nothing new starts
        gated.gate.set()
        await until(lambda: registry.get(job_id)['statistics']['successful_files'] == 1)
        await asyncio.sleep(0.05)
        assert file_statuses(registry.get(job_id)) == ['completed', 'pending', 'pending']
        assert gated.calls == ['1.xml']

        resumed = await registry.resume(job_id)
        assert resumed['status'] == 'processing'
        snapshot = await registry.wait(job_id, timeout=10)

        assert snapshot['status'] == 'completed'
        assert gated.calls == ['1.xml', '2.xml', '3.xml']
        assert snapshot['statistics']['successful_files'] == 3
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_repeated_control_actions_are_no_ops(self, pipeline, bmsex_config):
        gated = GatedPipeline(pipeline)
        registry = BatchRegistry(pipeline=gated, config=bmsex_config)

        job_id = await registry.submit(three_files())
        await until(lambda: len(gated.calls) == 1)

        assert (await registry.resume(job_id))['status'] == 'processing'
        await registry.pause(job_id)
        assert (await registry.pause(job_id))['status'] == 'paused'
        assert (await registry.start(job_id))['status'] == 'paused'

        await registry.cancel(job_id)
        assert (await registry.cancel(job_id))['status'] == 'cancelled'
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_skips_pending_and_in_flight_files(self, pipeline, bmsex_config):
        gated = GatedPipeline(pipeline)
        registry = BatchRegistry(pipeline=gated, config=bmsex_config)

        job_id = await registry.submit(three_files())
        await until(lambda: len(gated.calls) == 1)

        snapshot = await registry.cancel(job_id)

        assert snapshot['status'] == 'cancelled'
        assert file_statuses(snapshot) == ['skipped', 'skipped', 'skipped']
        assert snapshot['files'][0]['error'] == "Cancelled while processing"
        assert snapshot['files'][1]['error'] == "Batch cancelled"
        assert snapshot['statistics']['skipped_files'] == 3
        assert snapshot['statistics']['successful_files'] == 0
        assert gated.calls == ['1.xml']

        final = await registry.wait(job_id, timeout=5)
        assert final['status'] == 'cancelled'
        with pytest.raises(BatchControlError):
            await registry.resume(job_id)
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_pause_on_error(self, pipeline, bmsex_config, simple_xml, malformed_xml):
        registry = BatchRegistry(pipeline=pipeline, config=bmsex_config)

        job_id = await registry.submit(
            [('bad.xml', malformed_xml), ('good.xml', simple_xml)],
            BatchOptions(pause_on_error=True),
        )
        await until(lambda: registry.get(job_id)['status'] == 'paused')

        assert file_statuses(registry.get(job_id)) == ['failed', 'pending']

        await registry.resume(job_id)
        snapshot = await registry.wait(job_id, timeout=10)
        assert snapshot['status'] == 'completed'
        assert file_statuses(snapshot) == ['failed', 'completed']
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_pause_on_error_for_last_file_still_completes(self, pipeline, bmsex_config, simple_xml, malformed_xml):
        registry = BatchRegistry(pipeline=pipeline, config=bmsex_config)

        job_id = await registry.submit(
            [('good.xml', simple_xml), ('bad.xml', malformed_xml)],
            BatchOptions(pause_on_error=True),
        )
        snapshot = await registry.wait(job_id, timeout=10)

        assert snapshot['status'] == 'completed'
        assert file_statuses(snapshot) == ['completed', 'failed']
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_pipeline_pause_on_error_pauses_the_batch(self, pipeline, bmsex_config, simple_xml, malformed_xml):
        registry = BatchRegistry(pipeline=pipeline, config=bmsex_config)

        job_id = await registry.submit(
            [('1.xml', simple_xml), ('2.xml', malformed_xml), ('3.xml', simple_estimate(estimate_id='EST-3'))],
            BatchOptions(pipeline=PipelineOptions(pause_on_error=True)),
        )
        await until(lambda: registry.get(job_id)['status'] == 'paused')

        snapshot = registry.get(job_id)
        assert snapshot['options']['pause_on_error'] is True
        assert file_statuses(snapshot) == ['completed', 'failed', 'pending']

        await registry.resume(job_id)
        snapshot = await registry.wait(job_id, timeout=10)
        assert snapshot['status'] == 'completed'
        assert file_statuses(snapshot) == ['completed', 'failed', 'completed']
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_progress_never_goes_backwards(self, pipeline, bmsex_config, simple_xml, malformed_xml):
        registry = BatchRegistry(pipeline=pipeline, config=bmsex_config)
        events = []
        registry.subscribe(lambda event: events.append(event))

        job_id = await registry.submit(
            [
                ('1.xml', simple_xml),
                ('2.xml', malformed_xml),
                ('3.xml', simple_estimate(estimate_id='EST-3')),
                ('4.xml', simple_estimate(estimate_id='EST-4')),
            ],
            BatchOptions(pause_on_error=True),
        )
        await until(lambda: registry.get(job_id)['status'] == 'paused')
        polled = [registry.get(job_id)['progress']]

        await registry.resume(job_id)
        while registry.get(job_id)['status'] not in ('completed', 'failed', 'cancelled'):
            polled.append(registry.get(job_id)['progress'])
            await asyncio.sleep(0.005)
        snapshot = await registry.wait(job_id, timeout=10)
        polled.append(snapshot['progress'])
        await registry.notifier.flush()

        pushed = [event.progress for event in events if event.job_id == job_id]
        assert snapshot['status'] == 'completed'
        assert len(pushed) > 4
        for sequence in (pushed, polled):
            assert all(a <= b for a, b in zip(sequence, sequence[1:])), sequence
        assert pushed[-1] == polled[-1] == 100
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_queued_job(self, pipeline, bmsex_config):
        registry = BatchRegistry(pipeline=pipeline, config=bmsex_config)

        job_id = await registry.submit(three_files(), BatchOptions(auto_start=False))

        assert registry.get(job_id)['status'] == 'queued'
        with pytest.raises(BatchControlError, match="Cannot pause batch"):
            await registry.pause(job_id)

        snapshot = await registry.cancel(job_id)
        assert snapshot['status'] == 'cancelled'
        assert file_statuses(snapshot) == ['skipped', 'skipped', 'skipped']
        with pytest.raises(BatchControlError):
            await registry.start(job_id)
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_manual_start(self, pipeline, bmsex_config):
        registry = BatchRegistry(pipeline=pipeline, config=bmsex_config)
        job_id = await registry.submit(three_files(), BatchOptions(auto_start=False))

        await registry.start(job_id)
        snapshot = await registry.wait(job_id, timeout=10)

        assert snapshot['status'] == 'completed'
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_job(self, pipeline, bmsex_config):
        registry = BatchRegistry(pipeline=pipeline, config=bmsex_config)

        with pytest.raises(JobNotFoundError):
            registry.get('bat_missing')
        with pytest.raises(JobNotFoundError):
            await registry.pause('bat_missing')


class TestBatchRegistryHousekeeping:

    @pytest.mark.asyncio
    async def test_submit_checks(self, pipeline, bmsex_config):
        bmsex_config.set('intake.max_batch_files', 2)
        registry = BatchRegistry(pipeline=pipeline, config=bmsex_config)

        with pytest.raises(ValueError):
            await registry.submit([])
        with pytest.raises(ResourceLimitError) as exc_info:
            await registry.submit(three_files())
        assert exc_info.value.limit == 2
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_statistics_listing_and_cleanup(self, pipeline, bmsex_config, simple_xml, malformed_xml):
        registry = BatchRegistry(pipeline=pipeline, config=bmsex_config)
        job_id = await registry.submit([('a.xml', simple_xml), ('b.xml', malformed_xml)])
        await registry.wait(job_id, timeout=10)

        stats = registry.global_statistics()
        assert stats['total_batches'] == 1
        assert stats['active_batches'] == 0
        assert stats['total_files'] == 2
        assert stats['success_rate'] == 50.0
        assert stats['events_dropped'] == 0

        assert [j['id'] for j in registry.list_jobs(status='completed')] == [job_id]
        assert registry.list_jobs(status='paused') == []

        assert registry.cleanup(older_than_days=1) == 0
        assert registry.cleanup(older_than_days=0) == 1
        assert len(registry) == 0
        await registry.shutdown()
