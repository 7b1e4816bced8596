import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from fieldsync.config import Settings
from fieldsync.schemas.triggers import (
    FULL_SYNC_EVENT,
    PushNotificationPayload,
    TriggerAction,
    TriggerDecision,
    TriggerOutcome,
    TriggerStats,
)
from fieldsync.utils.timers import DelayedTask, Scheduler, TaskTracker

log = logging.getLogger(__name__)

SyncSingleFn = Callable[[str, str], Awaitable[object]]
SyncListFn = Callable[[str], Awaitable[object]]
SyncFullFn = Callable[[], Awaitable[object]]

# Dedup key for full syncs that name no entity
ANY_ENTITY_KEY = "*"


class SyncTriggers:
    """
    Maps inbound push-notification payloads to the narrowest re-sync action.

    Debounce delays: every payload for a key restarts that key's timer, so only
    the last one of a burst runs. Cooldown rejects: once an action for a key
    completed, further runs for that key are blocked until the cooldown elapsed.
    """

    def __init__(
        self,
        settings: Settings,
        scheduler: Scheduler,
        sync_single: SyncSingleFn,
        sync_list: SyncListFn,
        sync_full: SyncFullFn,
        known_entities: Optional[Callable[[], Iterable[str]]] = None,
    ):
        self.settings = settings
        self.scheduler = scheduler
        self._sync_single = sync_single
        self._sync_list = sync_list
        self._sync_full = sync_full
        self._known_entities = known_entities

        self._tasks = TaskTracker("sync-triggers")
        self._timers: Dict[str, DelayedTask] = {}
        self._last_completed_ms: Dict[str, float] = {}
        self._running: Set[str] = set()
        self._stats = TriggerStats()

    def resolve(self, payload: PushNotificationPayload) -> Optional[TriggerDecision]:
        """Pick the action and dedup key for a payload, or None when it should be ignored."""
        if payload.event_type == FULL_SYNC_EVENT:
            return TriggerDecision(
                key=payload.entity or ANY_ENTITY_KEY,
                action=TriggerAction.FULL,
                entity=payload.entity,
            )

        if payload.scope_hint == "full":
            return TriggerDecision(key=payload.entity or ANY_ENTITY_KEY, action=TriggerAction.FULL, entity=payload.entity)

        if not payload.entity:
            log.debug(f"Ignoring '{payload.event_type}' push without an entity")
            return None
        if self._known_entities is not None and payload.entity not in set(self._known_entities()):
            log.debug(f"Ignoring '{payload.event_type}' push for unregistered entity '{payload.entity}'")
            return None

        if payload.scope_hint == "single" and payload.entity_id:
            return TriggerDecision(
                key=f"{payload.entity}:{payload.entity_id}",
                action=TriggerAction.SINGLE,
                entity=payload.entity,
                entity_id=payload.entity_id,
            )
        # single without an id degrades to a list refresh
        return TriggerDecision(key=payload.entity, action=TriggerAction.LIST, entity=payload.entity)

    def handle_payload(self, payload: PushNotificationPayload) -> TriggerOutcome:
        """Debounce the payload's action under its dedup key."""
        self._stats.received += 1
        decision = self.resolve(payload)
        if decision is None:
            self._stats.ignored += 1
            return TriggerOutcome.IGNORED

        self.prune_expired()
        timer = self._timers.get(decision.key)
        if timer is None:
            timer = self._timers[decision.key] = DelayedTask(self.scheduler, self._tasks, f"trigger:{decision.key}")
        if timer.pending:
            self._stats.coalesced += 1
        else:
            self._stats.scheduled += 1

        timer.schedule(self.settings.SYNC_TRIGGER_DEBOUNCE_MS, lambda: self._run(decision))
        log.debug(f"Push '{payload.event_type}' -> {decision.action.value} sync for '{decision.key}' (debounced)")
        return TriggerOutcome.SCHEDULED

    async def trigger_now(self, payload: PushNotificationPayload) -> TriggerOutcome:
        """Run the payload's action immediately, still subject to cooldown."""
        self._stats.received += 1
        decision = self.resolve(payload)
        if decision is None:
            self._stats.ignored += 1
            return TriggerOutcome.IGNORED
        self.prune_expired()
        timer = self._timers.get(decision.key)
        if timer is not None:
            timer.cancel()
        return await self._run(decision)

    def cooldown_remaining_ms(self, key: str) -> float:
        completed = self._last_completed_ms.get(key)
        if completed is None:
            return 0.0
        return max(0.0, self.settings.SYNC_TRIGGER_COOLDOWN_MS - (self.scheduler.now_ms() - completed))

    def prune_expired(self) -> int:
        """Forget cooldowns that have elapsed. Returns how many keys were dropped."""
        expired = [key for key in self._last_completed_ms if self.cooldown_remaining_ms(key) <= 0]
        for key in expired:
            del self._last_completed_ms[key]
        return len(expired)

    def tracked_keys(self) -> int:
        return len(set(self._timers) | set(self._last_completed_ms))

    async def _run(self, decision: TriggerDecision) -> TriggerOutcome:
        key = decision.key
        timer = self._timers.get(key)
        if timer is not None and not timer.pending:
            del self._timers[key]

        if key in self._running or self.cooldown_remaining_ms(key) > 0:
            self._stats.blocked += 1
            log.debug(f"Sync for '{key}' blocked ({self.cooldown_remaining_ms(key):.0f}ms cooldown left)")
            return TriggerOutcome.BLOCKED

        self._running.add(key)
        try:
            if decision.action == TriggerAction.SINGLE:
                await self._sync_single(decision.entity, decision.entity_id)
            elif decision.action == TriggerAction.LIST:
                await self._sync_list(decision.entity)
            else:
                await self._sync_full()
        except Exception as e:
            self._stats.failed += 1
            log.error(f"Push-triggered {decision.action.value} sync for '{key}' failed: {e}")
            return TriggerOutcome.FAILED
        finally:
            self._running.discard(key)
            self._last_completed_ms[key] = self.scheduler.now_ms()

        self._stats.executed += 1
        log.info(f"Push-triggered {decision.action.value} sync for '{key}' done")
        return TriggerOutcome.EXECUTED

    def pending_keys(self) -> List[str]:
        return sorted(key for key, timer in self._timers.items() if timer.pending)

    def get_stats(self) -> TriggerStats:
        return self._stats.model_copy()

    def cancel_all(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._last_completed_ms.clear()

    async def wait_idle(self) -> None:
        await self._tasks.wait_idle()
