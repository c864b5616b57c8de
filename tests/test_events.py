"""
Tests for progress event fan-out
"""

import asyncio
from unittest.mock import Mock

import pytest

from bmsex.jobs.events import ProgressNotifier
from bmsex.models.batch import ProgressEvent


def event(name='file_completed', job_id='bat_1'):
    return ProgressEvent(job_id=job_id, event=name, status='processing', progress=50)


class TestProgressNotifier:

    @pytest.mark.asyncio
    async def test_delivers_to_every_listener(self):
        notifier = ProgressNotifier()
        first, second = [], []
        notifier.subscribe(first.append)
        notifier.subscribe(second.append)

        notifier.publish(event('job_started'))
        notifier.publish(event('file_started'))
        await notifier.flush()

        assert [e.event for e in first] == ['job_started', 'file_started']
        assert [e.event for e in second] == ['job_started', 'file_started']
        assert notifier.get_stats()['delivered'] == 4
        await notifier.close()

    @pytest.mark.asyncio
    async def test_async_listener(self):
        notifier = ProgressNotifier()
        received = []

        async def listener(e):
            await asyncio.sleep(0)
            received.append(e.job_id)

        notifier.subscribe(listener)
        notifier.publish(event(job_id='bat_9'))
        await notifier.flush()

        assert received == ['bat_9']
        await notifier.close()

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self):
        notifier = ProgressNotifier()
        received = []

        def broken(e):
            raise RuntimeError("listener bug")

        notifier.subscribe(broken)
        notifier.subscribe(received.append)
        notifier.publish(event())
        await notifier.flush()

        assert len(received) == 1
        assert notifier.get_stats()['listener_errors'] == 1
        await notifier.close()

    @pytest.mark.asyncio
    async def test_slow_listener_times_out(self):
        notifier = ProgressNotifier(listener_timeout=0.05)

        async def slow(e):
            await asyncio.sleep(1)

        notifier.subscribe(slow)
        notifier.publish(event())
        await notifier.flush()

        assert notifier.get_stats()['listener_errors'] == 1
        await notifier.close()

    @pytest.mark.asyncio
    async def test_full_queue_drops_events(self):
        notifier = ProgressNotifier(max_queue_size=2)
        received = []
        notifier.subscribe(received.append)

        # Publishing without yielding fills the queue before the drain task runs
        for i in range(5):
            notifier.publish(event(f'event_{i}'))
        await notifier.flush()

        assert notifier.dropped == 3
        assert [e.event for e in received] == ['event_0', 'event_1']
        assert notifier.get_stats()['published'] == 5
        await notifier.close()

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        notifier = ProgressNotifier()
        received = []
        notifier.subscribe(received.append)
        notifier.subscribe(received.append)
        assert notifier.get_stats()['listeners'] == 1

        notifier.unsubscribe(received.append)
        notifier.publish(event())
        await notifier.flush()

        assert received == []
        await notifier.close()

    @pytest.mark.asyncio
    async def test_events_reach_audit_sink(self):
        sink = Mock()
        notifier = ProgressNotifier(audit_sink=sink)

        notifier.publish(event('job_completed'))
        await notifier.flush()

        sink.record_event.assert_called_once()
        assert sink.record_event.call_args[0][0]['event'] == 'job_completed'
        await notifier.close()
