"""
Coalesced push of local mutations with a throttled follow-up full sync.

Bursts of local writes are debounced into a single push-only round trip.
After a successful push a full sync is scheduled, at most once per throttle
window. The service is owned by the process-lifetime sync context; nothing
here is module-level state.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from fieldsync.config import Settings
from fieldsync.connectors.connectivity import ConnectivityMonitor
from fieldsync.schemas.sync import FastPushMetrics, FastPushResult, FastPushStatus, PushSummary, SyncReport
from fieldsync.utils.timers import DelayedTask, Scheduler, TaskTracker, utcnow

log = logging.getLogger(__name__)

# Small gap between a successful push and the full sync it schedules
FULL_SYNC_SCHEDULE_DELAY_MS = 100

PushFn = Callable[[], Awaitable[PushSummary]]
FullSyncFn = Callable[[], Awaitable[SyncReport]]
PendingProbe = Callable[[], bool]


class PushState(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    PUSHING = "pushing"


class FullSyncState(str, Enum):
    READY = "ready"
    THROTTLED = "throttled"


class FastPushService:
    """
    IDLE -> DEBOUNCING on the first notification, DEBOUNCING -> PUSHING when the
    quiet period elapses or the buffer fills, PUSHING -> IDLE when the round trip
    ends. Full sync scheduling is gated separately by READY/THROTTLED.

    Only one push is ever in flight. A request arriving mid-push does not start
    a second network call: it is absorbed and the in-flight cycle runs exactly
    once more when it finishes, provided mutations are still pending.
    """

    def __init__(self, settings: Settings, scheduler: Scheduler, connectivity: ConnectivityMonitor):
        self.settings = settings
        self.scheduler = scheduler
        self.connectivity = connectivity

        self._tasks = TaskTracker("fast-push")
        self._debounce = DelayedTask(scheduler, self._tasks, "fast-push-debounce")
        self._full_sync_timer = DelayedTask(scheduler, self._tasks, "scheduled-full-sync")
        self._push_lock = asyncio.Lock()
        self._rerun_requested = False

        self._pending_count = 0
        self._last_full_sync_ms: Optional[float] = None
        self._metrics = FastPushMetrics()

        self._push_fn: Optional[PushFn] = None
        self._full_sync_fn: Optional[FullSyncFn] = None
        self._pending_probe: Optional[PendingProbe] = None

    def configure(
        self,
        push_fn: PushFn,
        full_sync_fn: FullSyncFn,
        pending_probe: Optional[PendingProbe] = None,
    ) -> None:
        self._push_fn = push_fn
        self._full_sync_fn = full_sync_fn
        self._pending_probe = pending_probe

    @property
    def is_configured(self) -> bool:
        return self._push_fn is not None and self._full_sync_fn is not None

    @property
    def state(self) -> PushState:
        if self._push_lock.locked():
            return PushState.PUSHING
        if self._debounce.pending:
            return PushState.DEBOUNCING
        return PushState.IDLE

    @property
    def full_sync_state(self) -> FullSyncState:
        return FullSyncState.READY if self.can_execute_full_sync() else FullSyncState.THROTTLED

    # Notifications

    def notify_mutation_added(self) -> None:
        """Record one local write and (re)start the debounce window."""
        if not self.settings.SYNC_OPT_FAST_PUSH_ONLY:
            return

        self._pending_count += 1
        self._metrics.mutations_coalesced += 1

        if self._pending_count >= self.settings.FAST_PUSH_MAX_BUFFER_SIZE:
            log.debug(f"Fast push buffer full ({self._pending_count}), pushing immediately")
            self._debounce.cancel()
            self._tasks.spawn(self._execute_fast_push())
            return

        self._debounce.schedule(self.settings.FAST_PUSH_DEBOUNCE_MS, self._execute_fast_push)
        log.trace(f"Fast push debounced, {self._pending_count} mutation(s) buffered")

    async def flush_now(self) -> FastPushResult:
        """Push immediately, bypassing the debounce window."""
        self._debounce.cancel()
        return await self._execute_fast_push()

    def notify_full_sync_completed(self) -> None:
        self._last_full_sync_ms = self.scheduler.now_ms()
        self._metrics.last_full_sync_at = utcnow()
        if self._full_sync_timer.cancel():
            log.debug("Full sync completed elsewhere, dropped the scheduled one")
        self._metrics.scheduled_full_sync_pending = False

    # Push cycle

    async def _execute_fast_push(self) -> FastPushResult:
        if not self.is_configured:
            log.warning("Fast push requested before the service was configured")
            coalesced, self._pending_count = self._pending_count, 0
            return FastPushResult(coalesced=coalesced)

        if self._push_lock.locked():
            self._rerun_requested = True
            log.debug("Push already in flight, queued one follow-up cycle")
            return FastPushResult(coalesced=self._pending_count, deferred=True)

        async with self._push_lock:
            result = await self._push_cycle()
            while self._rerun_requested:
                self._rerun_requested = False
                if self._pending_probe is not None and not self._pending_probe():
                    log.debug("Follow-up push not needed, queue already drained")
                    break
                result = await self._push_cycle()
        return result

    async def _push_cycle(self) -> FastPushResult:
        coalesced, self._pending_count = self._pending_count, 0

        status = await self.connectivity.fetch()
        if not status.is_connected:
            log.info(f"Offline, deferring push of {coalesced} mutation(s)")
            return FastPushResult(coalesced=coalesced, offline=True)

        try:
            summary = await self._push_fn()
        except Exception as e:
            # Mutations stay queued, the next notification or online transition retries them
            log.warning(f"Fast push failed: {e}")
            return FastPushResult(failed=coalesced, coalesced=coalesced)

        self._metrics.push_count += 1
        self._metrics.last_push_at = utcnow()
        log.info(f"Fast push done: {summary.pushed} pushed, {summary.failed} failed, {coalesced} coalesced")

        scheduled = False
        if self.settings.FAST_PUSH_SCHEDULE_FULL_SYNC:
            scheduled = self.schedule_full_sync()
        return FastPushResult(
            pushed=summary.pushed,
            failed=summary.failed,
            coalesced=coalesced,
            full_sync_scheduled=scheduled,
        )

    # Full sync throttle

    def get_throttle_remaining_ms(self) -> float:
        if self._last_full_sync_ms is None:
            return 0.0
        elapsed = self.scheduler.now_ms() - self._last_full_sync_ms
        return max(0.0, self.settings.FULL_SYNC_THROTTLE_MS - elapsed)

    def can_execute_full_sync(self) -> bool:
        return self.get_throttle_remaining_ms() <= 0

    def schedule_full_sync(self) -> bool:
        """Schedule one full sync unless one is pending or the throttle window is open."""
        if self._full_sync_timer.pending:
            log.debug("Full sync already scheduled")
            return False
        if not self.can_execute_full_sync():
            self._metrics.full_syncs_throttled += 1
            log.debug(f"Full sync throttled, {self.get_throttle_remaining_ms():.0f}ms remaining")
            return False

        self._full_sync_timer.schedule(FULL_SYNC_SCHEDULE_DELAY_MS, self._execute_scheduled_full_sync)
        self._metrics.scheduled_full_sync_pending = True
        log.debug(f"Full sync scheduled in {FULL_SYNC_SCHEDULE_DELAY_MS}ms")
        return True

    async def _execute_scheduled_full_sync(self) -> None:
        self._metrics.scheduled_full_sync_pending = False
        if not self.is_configured:
            return

        status = await self.connectivity.fetch()
        if not status.is_connected:
            log.info("Offline, dropping scheduled full sync")
            return
        if self.settings.FULL_SYNC_PREFER_WIFI and status.type != "wifi":
            log.info(f"Not on Wi-Fi ({status.type}), deferring full sync by one throttle window")
            self._full_sync_timer.schedule(self.settings.FULL_SYNC_THROTTLE_MS, self._execute_scheduled_full_sync)
            self._metrics.scheduled_full_sync_pending = True
            return

        try:
            report = await self._full_sync_fn()
        except Exception as e:
            log.error(f"Scheduled full sync failed: {e}", exc_info=True)
            return
        if not report.success:
            # Skipped or partially failed cycles do not start the throttle window
            log.warning(f"Scheduled full sync did not complete cleanly (skipped: {report.skipped_reason})")
            return
        self._last_full_sync_ms = self.scheduler.now_ms()
        self._metrics.last_full_sync_at = utcnow()

    # Lifecycle and introspection

    def cancel_all(self) -> None:
        """Drop the debounce timer and any scheduled full sync. In-flight pushes run to completion."""
        self._debounce.cancel()
        self._full_sync_timer.cancel()
        self._pending_count = 0
        self._rerun_requested = False
        self._metrics.scheduled_full_sync_pending = False
        log.debug("Fast push timers cancelled")

    async def wait_idle(self) -> None:
        await self._tasks.wait_idle()

    def get_metrics(self) -> FastPushMetrics:
        return self._metrics.model_copy()

    def reset_metrics(self) -> None:
        self._metrics = FastPushMetrics(scheduled_full_sync_pending=self._full_sync_timer.pending)
        self._last_full_sync_ms = None

    def has_pending_push(self) -> bool:
        """True while notifications are buffered for the next push cycle."""
        return self._pending_count > 0 or self._debounce.pending

    def get_pending_count(self) -> int:
        """
        Notifications buffered since the last push cycle started.

        This is the debounce buffer, not the queue: a cycle that went offline or
        failed drains it while the mutations stay PENDING in the queue. Use
        `MutationQueue.count_pending()` for the durable backlog.
        """
        return self._pending_count

    def get_status(self) -> FastPushStatus:
        return FastPushStatus(
            state=self.state.value,
            full_sync_state=self.full_sync_state.value,
            pending_count=self._pending_count,
            throttle_remaining_ms=self.get_throttle_remaining_ms(),
            metrics=self.get_metrics(),
        )
