from datetime import timedelta

import pytest
import pytest_asyncio

from fieldsync.database import session_scope
from fieldsync.models.mutation import Mutation, MutationOperation
from fieldsync.models.sync_run import SyncRun
from fieldsync.schemas.triggers import PushNotificationPayload
from fieldsync.scheduler import CLEANUP_JOB_ID, SYNC_JOB_ID, SyncJobScheduler
from fieldsync.utils.timers import utcnow


class TestSyncJobScheduler:
    @pytest_asyncio.fixture
    async def jobs(self, context):
        job_scheduler = SyncJobScheduler(context)
        yield job_scheduler
        job_scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_scheduled_job_runs_full_sync(self, jobs, session_factory):
        await jobs.scheduled_sync_job()

        with session_scope(session_factory) as db:
            runs = db.query(SyncRun).all()
            assert [r.trigger_type for r in runs] == ["scheduled"]
        assert jobs.get_schedule().running is False

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, jobs, connector):
        jobs._sync_running = True
        await jobs.scheduled_sync_job()
        assert connector.fetch_page.await_count == 0

    @pytest.mark.asyncio
    async def test_cleanup_job(self, jobs, context, session_factory):
        mutation = context.queue.enqueue("clients", "1", MutationOperation.UPDATE)
        context.queue.mark_completed([mutation.id])
        with session_scope(session_factory) as db:
            db.query(Mutation).update({Mutation.created_at: utcnow() - timedelta(days=30)}, synchronize_session=False)

        await jobs.cleanup_job()

        assert context.queue.get_all() == []

    @pytest.mark.asyncio
    async def test_start_and_reschedule(self, jobs):
        jobs.start()
        schedule = jobs.get_schedule()
        assert schedule.enabled is True
        assert schedule.interval_minutes == 30
        assert schedule.next_run is not None
        assert jobs.scheduler.get_job(CLEANUP_JOB_ID) is not None

        jobs.reschedule_sync_job(5, True)
        assert jobs.get_schedule().interval_minutes == 5

        jobs.reschedule_sync_job(5, False)
        schedule = jobs.get_schedule()
        assert schedule.enabled is False
        assert schedule.interval_minutes == 0
        assert jobs.scheduler.get_job(SYNC_JOB_ID) is None

    @pytest.mark.asyncio
    async def test_cleanup_job_prunes_expired_trigger_cooldowns(self, jobs, context, scheduler, settings):
        payload = PushNotificationPayload.from_notification_data({"eventType": "record.updated", "entity": "clients"})
        await context.triggers.trigger_now(payload)
        assert context.triggers.tracked_keys() == 1

        await scheduler.advance(settings.SYNC_TRIGGER_COOLDOWN_MS)
        await jobs.cleanup_job()

        assert context.triggers.tracked_keys() == 0
