"""Process-lifetime owner of every sync service."""

import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from fieldsync.config import Settings
from fieldsync.connectors.base import BaseSyncConnector
from fieldsync.connectors.connectivity import ConnectivityMonitor, HttpHealthProbe
from fieldsync.connectors.http_connector import HttpSyncConnector
from fieldsync.database import init_db, make_engine, make_session_factory
from fieldsync.entities import DEFAULT_ENTITIES
from fieldsync.models.mutation import Mutation, MutationOperation
from fieldsync.schemas.mutation import MutationEvent, MutationEventType
from fieldsync.schemas.sync import NetworkStatus, SyncEntityConfig, SyncEvent, SyncEventType
from fieldsync.services.fast_push import FastPushService
from fieldsync.services.local_store import LocalStore
from fieldsync.services.mutation_queue import MutationQueue
from fieldsync.services.sync_engine import SyncEngine
from fieldsync.services.sync_metrics import SyncMetricsCollector
from fieldsync.services.sync_triggers import SyncTriggers
from fieldsync.utils.timers import DelayedTask, LoopScheduler, Scheduler, TaskTracker

log = logging.getLogger(__name__)


class SyncContext:
    """
    Wires the mutation queue, sync engine, fast push service and push triggers
    together and owns their lifecycle.

    Local writes go through `enqueue_mutation`; the queue's `mutation_added`
    event feeds the fast push path, or the naive debounced full sync when
    fast push is switched off.
    """

    def __init__(
        self,
        settings: Settings,
        db_engine: Engine,
        connector: BaseSyncConnector,
        connectivity: ConnectivityMonitor,
        scheduler: Optional[Scheduler] = None,
        session_factory: Optional[sessionmaker] = None,
    ):
        self.settings = settings
        self.db_engine = db_engine
        self.session_factory = session_factory or make_session_factory(db_engine)
        self.connector = connector
        self.connectivity = connectivity
        self.scheduler = scheduler or LoopScheduler()

        self.queue = MutationQueue(self.session_factory)
        self.store = LocalStore(db_engine)
        self.metrics = SyncMetricsCollector(settings.SLOW_CHUNK_THRESHOLD_MS)
        self.sync_engine = SyncEngine(
            settings=settings,
            connector=connector,
            queue=self.queue,
            store=self.store,
            metrics=self.metrics,
            connectivity=connectivity,
            session_factory=self.session_factory,
        )
        self.fast_push = FastPushService(settings, self.scheduler, connectivity)
        self.fast_push.configure(
            push_fn=self.sync_engine.push_only,
            full_sync_fn=lambda: self.sync_engine.sync_all("fast_push"),
            pending_probe=lambda: self.queue.count_pending() > 0,
        )
        self.triggers = SyncTriggers(
            settings,
            self.scheduler,
            sync_single=self.sync_engine.sync_record,
            sync_list=self.sync_engine.sync_entity,
            sync_full=lambda: self.sync_engine.sync_all("push"),
            known_entities=self.sync_engine.entity_names,
        )

        self._tasks = TaskTracker("sync-context")
        self._fallback_sync = DelayedTask(self.scheduler, self._tasks, "mutation-fallback-sync")
        self._unsubscribers = [
            self.queue.subscribe(self._on_mutation_event),
            self.connectivity.subscribe(self._on_connectivity_change),
            self.sync_engine.subscribe(self._on_sync_event),
        ]
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings, entities: Optional[Iterable[SyncEntityConfig]] = None) -> "SyncContext":
        db_engine = make_engine(settings.database_url)
        init_db(db_engine)
        connector = HttpSyncConnector({
            "base_url": settings.api_base_url,
            "api_token": settings.api_token,
            "technician_id": settings.technician_id,
            "timeout": settings.request_timeout_s,
            "push_timeout": settings.push_timeout_s,
            "health_path": settings.health_path,
        })
        connectivity = ConnectivityMonitor(probe=HttpHealthProbe(settings.api_base_url, settings.health_path))
        context = cls(settings, db_engine, connector, connectivity)
        context.register_entities(DEFAULT_ENTITIES if entities is None else entities)
        return context

    def register_entities(self, configs: Iterable[SyncEntityConfig]) -> None:
        for config in configs:
            self.sync_engine.register_entity(config)

    def enqueue_mutation(
        self,
        entity: str,
        entity_id: str,
        operation: MutationOperation,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Mutation:
        """Record a local write. It always succeeds locally, whatever happens to the sync."""
        return self.queue.enqueue(entity, entity_id, operation, payload)

    def _on_mutation_event(self, event: MutationEvent) -> None:
        if event.type != MutationEventType.MUTATION_ADDED or self._closed:
            return
        if self.settings.SYNC_OPT_FAST_PUSH_ONLY:
            self.fast_push.notify_mutation_added()
        else:
            self._fallback_sync.schedule(
                self.settings.MUTATION_SYNC_DEBOUNCE_MS,
                lambda: self.sync_engine.sync_all("mutation"),
            )

    def _on_connectivity_change(self, previous: NetworkStatus, current: NetworkStatus) -> None:
        if self._closed:
            return
        if current.is_connected and not previous.is_connected:
            log.info("Back online, starting sync with retry")
            self._tasks.spawn(self.sync_engine.sync_with_retry("online"))
        elif not current.is_connected:
            self._fallback_sync.cancel()

    def _on_sync_event(self, event: SyncEvent) -> None:
        if event.type == SyncEventType.SYNC_COMPLETED and event.data.get("success"):
            self.fast_push.notify_full_sync_completed()

    async def wait_idle(self) -> None:
        await self.fast_push.wait_idle()
        await self.triggers.wait_idle()
        await self._tasks.wait_idle()

    def cancel_all(self) -> None:
        self.fast_push.cancel_all()
        self.triggers.cancel_all()
        self._fallback_sync.cancel()

    async def shutdown(self) -> None:
        """Tear down timers and connections; no callback fires afterwards."""
        if self._closed:
            return
        self._closed = True
        self.cancel_all()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._tasks.cancel_all()
        await self.connector.close()
        await self.connectivity.close()
        log.info("Sync context shut down")
