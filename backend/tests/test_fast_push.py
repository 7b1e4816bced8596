import asyncio

import pytest
from unittest.mock import AsyncMock

from fieldsync.schemas.sync import PushSummary, SyncReport, SyncResult
from fieldsync.services.fast_push import FULL_SYNC_SCHEDULE_DELAY_MS, FastPushService, FullSyncState, PushState


@pytest.fixture
def push_fn():
    return AsyncMock(return_value=PushSummary(pushed=1))


@pytest.fixture
def full_sync_fn():
    return AsyncMock(return_value=SyncReport())


@pytest.fixture
def service(settings, scheduler, connectivity, push_fn, full_sync_fn):
    fast_push = FastPushService(settings, scheduler, connectivity)
    fast_push.configure(push_fn, full_sync_fn)
    yield fast_push
    fast_push.cancel_all()


async def burst(service, scheduler, count, gap_ms=10):
    for i in range(count):
        if i:
            await scheduler.advance(gap_ms)
        service.notify_mutation_added()


class TestCoalescing:
    @pytest.mark.asyncio
    async def test_rapid_mutations_trigger_one_push(self, service, scheduler, settings, push_fn):
        await burst(service, scheduler, 5)
        assert push_fn.await_count == 0
        assert service.state == PushState.DEBOUNCING

        await scheduler.advance(settings.FAST_PUSH_DEBOUNCE_MS)

        push_fn.assert_awaited_once()
        metrics = service.get_metrics()
        assert metrics.mutations_coalesced == 5
        assert metrics.push_count == 1
        assert metrics.last_push_at is not None
        assert service.state == PushState.IDLE
        assert service.get_pending_count() == 0

    @pytest.mark.asyncio
    async def test_each_mutation_restarts_the_window(self, service, scheduler, settings, push_fn):
        service.notify_mutation_added()
        await scheduler.advance(settings.FAST_PUSH_DEBOUNCE_MS - 1)
        service.notify_mutation_added()
        await scheduler.advance(settings.FAST_PUSH_DEBOUNCE_MS - 1)
        assert push_fn.await_count == 0

        await scheduler.advance(1)
        push_fn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_full_buffer_pushes_immediately(self, service, scheduler, settings, push_fn):
        settings.FAST_PUSH_MAX_BUFFER_SIZE = 3
        settings.FAST_PUSH_SCHEDULE_FULL_SYNC = False
        for _ in range(3):
            service.notify_mutation_added()
        await scheduler.settle()

        push_fn.assert_awaited_once()
        assert not service.has_pending_push()
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_disabled_flag_ignores_notifications(self, service, scheduler, settings, push_fn):
        settings.SYNC_OPT_FAST_PUSH_ONLY = False
        service.notify_mutation_added()
        await scheduler.advance(10_000)

        assert push_fn.await_count == 0
        assert service.get_pending_count() == 0
        assert service.get_metrics().mutations_coalesced == 0

    @pytest.mark.asyncio
    async def test_flush_now_skips_the_window(self, service, scheduler, push_fn):
        service.notify_mutation_added()
        result = await service.flush_now()

        assert result.pushed == 1
        assert result.coalesced == 1
        await scheduler.advance(10_000)
        push_fn.assert_awaited_once()


class TestFullSyncThrottle:
    @pytest.mark.asyncio
    async def test_push_schedules_full_sync(self, service, scheduler, full_sync_fn):
        result = await service.flush_now()
        assert result.full_sync_scheduled is True
        assert service.get_metrics().scheduled_full_sync_pending is True
        assert full_sync_fn.await_count == 0

        await scheduler.advance(FULL_SYNC_SCHEDULE_DELAY_MS)

        full_sync_fn.assert_awaited_once()
        assert service.get_metrics().last_full_sync_at is not None
        assert service.full_sync_state == FullSyncState.THROTTLED

    @pytest.mark.asyncio
    async def test_full_sync_is_throttled_within_window(self, service, scheduler, settings, full_sync_fn):
        await service.flush_now()
        await scheduler.advance(FULL_SYNC_SCHEDULE_DELAY_MS)

        result = await service.flush_now()

        assert result.full_sync_scheduled is False
        assert service.get_metrics().full_syncs_throttled == 1
        await scheduler.advance(FULL_SYNC_SCHEDULE_DELAY_MS)
        full_sync_fn.assert_awaited_once()

        await scheduler.advance(settings.FULL_SYNC_THROTTLE_MS)
        assert service.can_execute_full_sync()
        assert (await service.flush_now()).full_sync_scheduled is True

    @pytest.mark.asyncio
    async def test_two_bursts_run_one_full_sync(self, service, scheduler, settings, push_fn, full_sync_fn):
        await burst(service, scheduler, 5)
        await scheduler.advance(settings.FAST_PUSH_DEBOUNCE_MS + FULL_SYNC_SCHEDULE_DELAY_MS)
        await burst(service, scheduler, 5)
        await scheduler.advance(settings.FAST_PUSH_DEBOUNCE_MS + FULL_SYNC_SCHEDULE_DELAY_MS)

        assert push_fn.await_count == 2
        full_sync_fn.assert_awaited_once()
        assert service.get_metrics().full_syncs_throttled >= 1

    @pytest.mark.asyncio
    async def test_already_scheduled_is_not_counted_as_throttled(self, service):
        assert service.schedule_full_sync() is True
        assert service.schedule_full_sync() is False
        assert service.get_metrics().full_syncs_throttled == 0

    @pytest.mark.asyncio
    async def test_completed_full_sync_cancels_scheduled_one(self, service, scheduler, settings, full_sync_fn):
        await service.flush_now()
        service.notify_full_sync_completed()
        await scheduler.advance(FULL_SYNC_SCHEDULE_DELAY_MS)

        assert full_sync_fn.await_count == 0
        assert service.get_throttle_remaining_ms() == settings.FULL_SYNC_THROTTLE_MS - FULL_SYNC_SCHEDULE_DELAY_MS

    @pytest.mark.asyncio
    async def test_schedule_flag_off(self, service, scheduler, settings, full_sync_fn):
        settings.FAST_PUSH_SCHEDULE_FULL_SYNC = False
        result = await service.flush_now()
        await scheduler.advance(FULL_SYNC_SCHEDULE_DELAY_MS)

        assert result.full_sync_scheduled is False
        assert full_sync_fn.await_count == 0

    @pytest.mark.asyncio
    async def test_prefer_wifi_defers_full_sync(self, service, scheduler, settings, connectivity, full_sync_fn):
        settings.FULL_SYNC_PREFER_WIFI = True
        connectivity.set_status(True, "cellular")

        await service.flush_now()
        await scheduler.advance(FULL_SYNC_SCHEDULE_DELAY_MS)
        assert full_sync_fn.await_count == 0
        assert service.get_metrics().scheduled_full_sync_pending is True

        connectivity.set_status(True, "wifi")
        await scheduler.advance(settings.FULL_SYNC_THROTTLE_MS)
        full_sync_fn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reset_metrics_clears_throttle(self, service, scheduler):
        await service.flush_now()
        await scheduler.advance(FULL_SYNC_SCHEDULE_DELAY_MS)
        assert not service.can_execute_full_sync()

        service.reset_metrics()

        assert service.can_execute_full_sync()
        assert service.get_metrics().push_count == 0

    @pytest.mark.asyncio
    async def test_throttle_remaining_never_increases(self, service, scheduler, settings):
        service.notify_full_sync_completed()
        assert not service.can_execute_full_sync()

        samples = [service.get_throttle_remaining_ms()]
        step = settings.FULL_SYNC_THROTTLE_MS / 7
        for _ in range(8):
            await scheduler.advance(step)
            samples.append(service.get_throttle_remaining_ms())

        assert samples[0] == settings.FULL_SYNC_THROTTLE_MS
        assert all(later <= earlier for earlier, later in zip(samples, samples[1:]))
        assert samples[-1] == 0
        assert service.can_execute_full_sync()


class TestFailures:
    @pytest.mark.asyncio
    async def test_offline_never_calls_push(self, service, scheduler, settings, connectivity, push_fn, full_sync_fn):
        connectivity.set_status(False, "none")
        service.notify_mutation_added()
        await scheduler.advance(settings.FAST_PUSH_DEBOUNCE_MS)

        assert push_fn.await_count == 0
        result = await service.flush_now()
        assert result.offline is True
        assert service.get_metrics().push_count == 0
        assert full_sync_fn.await_count == 0

    @pytest.mark.asyncio
    async def test_push_failure_is_not_counted(self, service, scheduler, push_fn, full_sync_fn):
        push_fn.side_effect = ConnectionError("socket closed")
        service.notify_mutation_added()
        service.notify_mutation_added()

        result = await service.flush_now()

        assert result.failed == 2
        assert result.full_sync_scheduled is False
        assert service.get_metrics().push_count == 0
        await scheduler.advance(FULL_SYNC_SCHEDULE_DELAY_MS)
        assert full_sync_fn.await_count == 0

    @pytest.mark.asyncio
    async def test_failing_full_sync_does_not_start_throttle(self, service, scheduler, full_sync_fn):
        full_sync_fn.side_effect = RuntimeError("pull failed")
        await service.flush_now()
        await scheduler.advance(FULL_SYNC_SCHEDULE_DELAY_MS)

        full_sync_fn.assert_awaited_once()
        assert service.can_execute_full_sync()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "report",
        [
            SyncReport(results=[SyncResult(entity="clients", success=False)]),
            SyncReport(skipped_reason="in_progress"),
            SyncReport(skipped_reason="offline"),
        ],
    )
    async def test_unsuccessful_full_sync_does_not_start_throttle(self, service, scheduler, full_sync_fn, report):
        full_sync_fn.return_value = report
        await service.flush_now()
        await scheduler.advance(FULL_SYNC_SCHEDULE_DELAY_MS)

        full_sync_fn.assert_awaited_once()
        assert service.can_execute_full_sync()
        assert service.get_metrics().last_full_sync_at is None

    @pytest.mark.asyncio
    async def test_unconfigured_service_does_nothing(self, settings, scheduler, connectivity):
        fast_push = FastPushService(settings, scheduler, connectivity)
        fast_push.notify_mutation_added()

        result = await fast_push.flush_now()

        assert result.coalesced == 1
        assert result.pushed == 0


class TestConcurrency:
    @pytest.fixture
    def gated_push(self):
        state = {"in_flight": 0, "max_in_flight": 0, "calls": 0}
        gate = asyncio.Event()

        async def push():
            state["calls"] += 1
            state["in_flight"] += 1
            state["max_in_flight"] = max(state["max_in_flight"], state["in_flight"])
            await gate.wait()
            state["in_flight"] -= 1
            return PushSummary(pushed=1)

        return push, gate, state

    @pytest.mark.asyncio
    async def test_requests_during_push_run_once_more(self, settings, scheduler, connectivity, gated_push):
        push, gate, state = gated_push
        fast_push = FastPushService(settings, scheduler, connectivity)
        fast_push.configure(push, AsyncMock(), pending_probe=lambda: True)

        first = asyncio.create_task(fast_push.flush_now())
        await scheduler.settle()
        assert fast_push.state == PushState.PUSHING

        second = await fast_push.flush_now()
        third = await fast_push.flush_now()
        gate.set()
        await first

        assert second.deferred is True
        assert third.deferred is True
        assert state["calls"] == 2
        assert state["max_in_flight"] == 1
        fast_push.cancel_all()

    @pytest.mark.asyncio
    async def test_follow_up_skipped_when_queue_drained(self, settings, scheduler, connectivity, gated_push):
        push, gate, state = gated_push
        fast_push = FastPushService(settings, scheduler, connectivity)
        fast_push.configure(push, AsyncMock(), pending_probe=lambda: False)

        first = asyncio.create_task(fast_push.flush_now())
        await scheduler.settle()
        await fast_push.flush_now()
        gate.set()
        await first

        assert state["calls"] == 1
        fast_push.cancel_all()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_cancel_all_drops_timers(self, service, scheduler, push_fn, full_sync_fn):
        await service.flush_now()
        service.notify_mutation_added()

        service.cancel_all()
        await scheduler.advance(60_000)

        push_fn.assert_awaited_once()
        assert full_sync_fn.await_count == 0
        assert not service.has_pending_push()
        assert service.get_metrics().scheduled_full_sync_pending is False
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_status_snapshot(self, service):
        service.notify_mutation_added()
        status = service.get_status()

        assert status.state == "debouncing"
        assert status.full_sync_state == "ready"
        assert status.pending_count == 1
        assert status.throttle_remaining_ms == 0
        assert status.metrics.mutations_coalesced == 1
