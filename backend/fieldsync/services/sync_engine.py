import asyncio
import logging
import math
import time
from itertools import groupby
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy.orm import sessionmaker

from fieldsync.config import Settings
from fieldsync.connectors.base import BaseSyncConnector, RejectedRequestError
from fieldsync.connectors.connectivity import ConnectivityMonitor
from fieldsync.database import session_scope
from fieldsync.models.mutation import Mutation
from fieldsync.models.sync_meta import SyncMeta
from fieldsync.models.sync_run import SyncRun
from fieldsync.schemas.metrics import ChunkMetrics, EntitySyncMetrics, SaveToLocalDbMetrics
from fieldsync.schemas.sync import (
    PushSummary,
    SyncEntityConfig,
    SyncError,
    SyncEvent,
    SyncEventType,
    SyncReport,
    SyncResult,
    SyncState,
    SyncStatus,
)
from fieldsync.services.local_store import LocalStore
from fieldsync.services.mutation_queue import MutationQueue
from fieldsync.services.normalizer import NormalizerService, StorageRow
from fieldsync.services.reconciler import ReconciliationService
from fieldsync.services.sync_metrics import SyncMetricsCollector, estimate_memory_bytes, generate_correlation_id
from fieldsync.utils.timers import utcnow

log = logging.getLogger(__name__)

SyncListener = Callable[[SyncEvent], None]

# Server-side status of an accepted mutation
APPLIED = "applied"


def mutation_request_id(mutation: Mutation) -> str:
    """Idempotency key the server deduplicates retried pushes with."""
    return f"{mutation.entity_id}-{mutation.operation.value}-{mutation.id}"


class SyncEngine:
    """
    Pulls paginated remote snapshots per registered entity and reconciles them
    into the local store, and pushes the mutation queue to the server.

    Two locks guard the shared resources:
    - the push lock makes sure only one push cycle holds PROCESSING mutations
    - the sync lock makes full syncs mutually exclusive
    """

    def __init__(
        self,
        settings: Settings,
        connector: BaseSyncConnector,
        queue: MutationQueue,
        store: LocalStore,
        metrics: SyncMetricsCollector,
        connectivity: ConnectivityMonitor,
        session_factory: sessionmaker,
        normalizer_service: Optional[NormalizerService] = None,
        reconciliation_service: Optional[ReconciliationService] = None,
    ):
        self.settings = settings
        self.connector = connector
        self.queue = queue
        self.store = store
        self.metrics = metrics
        self.connectivity = connectivity
        self._session_factory = session_factory
        self.normalizer_service = normalizer_service or NormalizerService()
        self.reconciliation_service = reconciliation_service or ReconciliationService()

        self._entities: Dict[str, SyncEntityConfig] = {}
        self._sync_lock = asyncio.Lock()
        self._push_lock = asyncio.Lock()
        self._failed_reset_done = False
        self._state = SyncState()
        self._listeners: List[SyncListener] = []

    # Registration

    def register_entity(self, config: SyncEntityConfig) -> None:
        if config.name in self._entities:
            log.debug(f"Re-registering sync entity '{config.name}'")
        self._entities[config.name] = config

    def get_entity(self, name: str) -> SyncEntityConfig:
        try:
            return self._entities[name]
        except KeyError:
            raise KeyError(f"Unknown sync entity: {name}") from None

    def entity_names(self) -> List[str]:
        return [config.name for config in self.entities_by_priority()]

    def entities_by_priority(self) -> List[SyncEntityConfig]:
        return sorted(self._entities.values(), key=lambda c: (c.priority, c.name))

    # State and events

    def get_state(self) -> SyncState:
        return self._state.model_copy()

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    def subscribe(self, listener: SyncListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event_type: SyncEventType, **fields: Any) -> None:
        event = SyncEvent(type=event_type, **fields)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                log.error(f"Sync listener failed on {event_type.value}: {e}", exc_info=True)

    def _set_state(self, **changes: Any) -> None:
        self._state = self._state.model_copy(update=changes)

    # Transform

    def build_rows_sync(
        self,
        items: Sequence[Dict[str, Any]],
        columns: Sequence[str],
        synced_at: str,
    ) -> List[StorageRow]:
        return [self.normalizer_service.build_row(item, columns, synced_at) for item in items]

    async def iter_row_chunks(
        self,
        items: Sequence[Dict[str, Any]],
        columns: Sequence[str],
        synced_at: str,
        chunk_size: int,
    ) -> AsyncIterator[Tuple[int, List[StorageRow], float]]:
        """Yield (index, rows, build_ms) per chunk, handing the loop back between chunks."""
        chunk_count = math.ceil(len(items) / chunk_size)
        for index in range(chunk_count):
            if index:
                await asyncio.sleep(self.settings.CHUNK_YIELD_DELAY_MS / 1000)
            started = time.perf_counter()
            chunk = items[index * chunk_size:(index + 1) * chunk_size]
            rows = self.build_rows_sync(chunk, columns, synced_at)
            yield index, rows, (time.perf_counter() - started) * 1000

    async def build_rows_in_chunks(
        self,
        items: Sequence[Dict[str, Any]],
        columns: Sequence[str],
        synced_at: str,
        chunk_size: Optional[int] = None,
    ) -> List[StorageRow]:
        rows: List[StorageRow] = []
        async for _, chunk_rows, _ in self.iter_row_chunks(
            items, columns, synced_at, max(1, chunk_size or self.settings.CHUNK_SIZE)
        ):
            rows.extend(chunk_rows)
        return rows

    # Local writes

    async def save_to_local_db(
        self,
        config: SyncEntityConfig,
        items: Sequence[Dict[str, Any]],
        pending_ids: Set[str],
        correlation_id: Optional[str] = None,
    ) -> Optional[SaveToLocalDbMetrics]:
        """
        Reconcile fetched items against pending local edits and upsert the rest.
        Returns None without touching the store when there is nothing to save.
        """
        if not items:
            log.debug(f"[{correlation_id}] {config.name}: nothing fetched, no local writes")
            return None

        started = time.perf_counter()
        batch = self.reconciliation_service.partition(items, pending_ids)
        if batch.skipped:
            log.info(
                f"[{correlation_id}] {config.name}: kept {len(batch.skipped)} local record(s) "
                f"with unsynced mutations"
            )

        chunk_size = max(1, self.settings.CHUNK_SIZE)
        use_chunks = self.settings.SYNC_OPT_CHUNK_PROCESSING and len(batch.safe) > chunk_size
        chunks: List[ChunkMetrics] = []

        if batch.safe:
            columns = self.normalizer_service.resolve_columns(batch.safe)
            storage_columns = self.normalizer_service.storage_columns(columns)
            synced_at = utcnow().isoformat()

            if use_chunks:
                async for index, rows, build_ms in self.iter_row_chunks(batch.safe, columns, synced_at, chunk_size):
                    write_started = time.perf_counter()
                    self.store.upsert_rows(config.table_name, storage_columns, rows)
                    write_ms = (time.perf_counter() - write_started) * 1000
                    chunks.append(ChunkMetrics(index=index, item_count=len(rows), duration_ms=build_ms + write_ms))
            else:
                rows = self.build_rows_sync(batch.safe, columns, synced_at)
                self.store.upsert_rows(config.table_name, storage_columns, rows)
                chunks.append(
                    ChunkMetrics(
                        index=0,
                        item_count=len(rows),
                        duration_ms=(time.perf_counter() - started) * 1000,
                    )
                )

        durations = [c.duration_ms for c in chunks]
        metrics = SaveToLocalDbMetrics(
            correlation_id=correlation_id,
            entity=config.name,
            total_items=len(items),
            safe_data_items=len(batch.safe),
            skipped_items=len(batch.skipped),
            chunk_size=chunk_size,
            chunk_count=len(chunks),
            chunks=chunks,
            total_duration_ms=(time.perf_counter() - started) * 1000,
            avg_chunk_duration_ms=sum(durations) / len(durations) if durations else 0.0,
            max_chunk_duration_ms=max(durations) if durations else 0.0,
            used_chunk_processing=use_chunks,
            estimated_memory_bytes=estimate_memory_bytes(items),
        )
        self.metrics.record_save_to_local_db(metrics)
        return metrics

    # Pull

    def _get_sync_meta(self, entity: str) -> Optional[SyncMeta]:
        with session_scope(self._session_factory) as db:
            return db.get(SyncMeta, entity)

    def _update_sync_meta(self, entity: str, **values: Any) -> None:
        with session_scope(self._session_factory) as db:
            meta = db.get(SyncMeta, entity)
            if meta is None:
                meta = SyncMeta(entity=entity)
                db.add(meta)
            for key, value in values.items():
                setattr(meta, key, value)

    async def _pull_all(self, config: SyncEntityConfig, since: Optional[str]) -> Tuple[List[Dict[str, Any]], Optional[str], int]:
        items: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        pages = 0
        while True:
            page = await self.connector.fetch_page(config, cursor=cursor, since=since, limit=config.batch_size)
            pages += 1
            items.extend(page.items)
            log.trace(f"{config.name}: page {pages} brought {len(page.items)} item(s), hasMore={page.has_more}")
            if not page.has_more:
                break
            if not page.next_cursor:
                log.warning(f"{config.name}: server reported hasMore without a cursor, stopping pagination")
                break
            cursor = page.next_cursor
        return items, cursor, pages

    async def sync_entity(self, name: str, correlation_id: Optional[str] = None) -> SyncResult:
        """Pull every page of one entity and reconcile it into the local store."""
        config = self.get_entity(name)
        correlation_id = correlation_id or generate_correlation_id()
        started = time.perf_counter()
        pull_started_at = utcnow()

        meta = self._get_sync_meta(name)
        since = meta.last_sync_at.isoformat() if meta and meta.last_sync_at else None

        try:
            items, cursor, pages = await self._pull_all(config, since)
            pending_ids = self.queue.pending_entity_ids(name)
            save = await self.save_to_local_db(config, items, pending_ids, correlation_id)
        except Exception as e:
            log.error(f"[{correlation_id}] Sync of {name} failed: {e}")
            self._update_sync_meta(name, sync_status="error")
            return SyncResult(
                success=False,
                entity=name,
                errors=[SyncError(entity=name, message=str(e))],
                duration_ms=(time.perf_counter() - started) * 1000,
            )

        self._update_sync_meta(name, last_sync_at=pull_started_at, last_cursor=cursor, sync_status="idle")
        duration_ms = (time.perf_counter() - started) * 1000
        self.metrics.record_entity_sync(
            EntitySyncMetrics(
                correlation_id=correlation_id,
                entity=name,
                pulled=len(items),
                pages=pages,
                duration_ms=duration_ms,
            )
        )
        self._emit(SyncEventType.ENTITY_SYNCED, correlation_id=correlation_id, entity=name, data={"pulled": len(items)})
        log.info(
            f"[{correlation_id}] {name}: pulled {len(items)} item(s) in {pages} page(s), "
            f"saved {save.safe_data_items if save else 0}, skipped {save.skipped_items if save else 0}"
        )
        return SyncResult(
            success=True,
            entity=name,
            pulled=len(items),
            saved=save.safe_data_items if save else 0,
            skipped=save.skipped_items if save else 0,
            pages=pages,
            duration_ms=duration_ms,
        )

    async def sync_record(self, name: str, entity_id: str) -> SyncResult:
        """Refresh one record, honouring the same pending-mutation skip policy."""
        config = self.get_entity(name)
        correlation_id = generate_correlation_id()
        started = time.perf_counter()
        try:
            item = await self.connector.fetch_record(config, str(entity_id))
            items = [item] if item else []
            save = await self.save_to_local_db(config, items, self.queue.pending_entity_ids(name), correlation_id)
        except Exception as e:
            log.error(f"[{correlation_id}] Sync of {name}:{entity_id} failed: {e}")
            return SyncResult(
                success=False,
                entity=name,
                errors=[SyncError(entity=name, entity_id=str(entity_id), message=str(e))],
                duration_ms=(time.perf_counter() - started) * 1000,
            )
        return SyncResult(
            success=True,
            entity=name,
            pulled=len(items),
            saved=save.safe_data_items if save else 0,
            skipped=save.skipped_items if save else 0,
            pages=1,
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    async def sync_entity_range(self, names: Sequence[str], correlation_id: Optional[str] = None) -> List[SyncResult]:
        """Sync a subset of entities sequentially in priority order."""
        configs = sorted((self.get_entity(n) for n in names), key=lambda c: (c.priority, c.name))
        correlation_id = correlation_id or generate_correlation_id()
        return [await self.sync_entity(c.name, correlation_id) for c in configs]

    async def _pull_entities(self, configs: List[SyncEntityConfig], correlation_id: str) -> List[SyncResult]:
        parallel: List[SyncEntityConfig] = []
        sequential = configs
        if self.settings.SYNC_OPT_PARALLEL_ENTITIES:
            safe = set(self.settings.PARALLEL_SAFE_ENTITIES)
            parallel = [c for c in configs if c.name in safe]
            sequential = [c for c in configs if c.name not in safe]

        total = len(configs) or 1
        results: List[SyncResult] = []

        if parallel:
            semaphore = asyncio.Semaphore(max(1, self.settings.MAX_PARALLEL_ENTITIES))

            async def run(config: SyncEntityConfig) -> SyncResult:
                async with semaphore:
                    return await self.sync_entity(config.name, correlation_id)

            results.extend(await asyncio.gather(*(run(c) for c in parallel)))
            self._set_state(progress=len(results) / total)

        for config in sequential:
            results.append(await self.sync_entity(config.name, correlation_id))
            self._set_state(progress=len(results) / total)

        return results

    # Push

    def _group_by_entity(self, mutations: Sequence[Mutation]) -> List[Tuple[str, List[Mutation]]]:
        """Group a batch by entity: registered entities in priority order, unknown ones last."""
        def order(entity: str) -> Tuple[int, int, str]:
            config = self._entities.get(entity)
            return (0, config.priority, entity) if config else (1, 0, entity)

        ordered = sorted(mutations, key=lambda m: (order(m.entity), m.id))
        return [(entity, list(group)) for entity, group in groupby(ordered, key=lambda m: m.entity)]

    async def _push_entity_batch(self, entity: str, mutations: List[Mutation]) -> PushSummary:
        ids = [m.id for m in mutations]
        config = self._entities.get(entity)
        if config is None:
            self.queue.mark_failed(ids, f"Unknown sync entity: {entity}")
            return PushSummary(failed=len(ids))

        self.queue.mark_processing(ids)
        payload = {
            "mutations": [
                {
                    "mutationId": mutation_request_id(m),
                    "action": m.operation.value.lower(),
                    "record": m.payload if m.payload is not None else {"id": m.entity_id},
                    "clientUpdatedAt": m.created_at.isoformat() if m.created_at else None,
                }
                for m in mutations
            ]
        }

        try:
            response = await self.connector.push_mutations(config, payload)
        except RejectedRequestError as e:
            self.queue.mark_failed(ids, str(e))
            return PushSummary(failed=len(ids))
        except Exception:
            released = self.queue.release(ids)
            log.warning(f"Push of {len(ids)} {entity} mutation(s) failed, {released} returned to pending")
            raise

        results = {r.get("mutationId"): r for r in (response or {}).get("results", []) if isinstance(r, dict)}
        completed: List[int] = []
        failures: Dict[str, List[int]] = {}
        for m in mutations:
            result = results.get(mutation_request_id(m))
            if result is not None and result.get("status") == APPLIED:
                completed.append(m.id)
            else:
                error = (result or {}).get("error") or (
                    f"Rejected by server ({result.get('status')})" if result else "No result returned for mutation"
                )
                failures.setdefault(error, []).append(m.id)

        self.queue.mark_completed(completed)
        for error, failed_ids in failures.items():
            self.queue.mark_failed(failed_ids, error)

        failed = sum(len(v) for v in failures.values())
        log.info(f"Pushed {entity}: {len(completed)} applied, {failed} rejected")
        return PushSummary(pushed=len(completed), failed=failed)

    async def _push_pending_mutations(self) -> PushSummary:
        summary = PushSummary()
        async with self._push_lock:
            while True:
                batch = self.queue.get_pending(limit=self.settings.PUSH_BATCH_SIZE)
                if not batch:
                    break
                for entity, mutations in self._group_by_entity(batch):
                    result = await self._push_entity_batch(entity, mutations)
                    summary.pushed += result.pushed
                    summary.failed += result.failed
                if len(batch) < self.settings.PUSH_BATCH_SIZE:
                    break
        return summary

    async def push_only(self) -> PushSummary:
        """
        Upload pending mutations without pulling anything.
        Transport failures propagate after the claimed mutations went back to PENDING.
        """
        if not self.settings.is_configured:
            log.debug("Push skipped: sync is not configured")
            return PushSummary()
        return await self._push_pending_mutations()

    # Full sync

    def _start_run(self, trigger_type: str, correlation_id: str) -> Optional[int]:
        with session_scope(self._session_factory) as db:
            run = SyncRun(
                trigger_type=trigger_type,
                correlation_id=correlation_id,
                start_time=utcnow(),
                status="running",
            )
            db.add(run)
            db.flush()
            return run.id

    def _finish_run(self, run_id: Optional[int], report: SyncReport, error: Optional[str]) -> None:
        if run_id is None:
            return
        with session_scope(self._session_factory) as db:
            run = db.get(SyncRun, run_id)
            if run is None:
                return
            failed_entities = sum(1 for r in report.results if not r.success)
            run.end_time = utcnow()
            run.entities_synced = len(report.results) - failed_entities
            run.entities_failed = failed_entities
            run.items_pulled = sum(r.pulled for r in report.results)
            run.mutations_pushed = report.pushed
            run.mutations_failed = report.push_failed
            if error:
                run.status = "failed"
            elif report.success:
                run.status = "completed"
            else:
                run.status = "partial"
            run.error_message = error or report.push_error or "; ".join(
                e.message for r in report.results for e in r.errors
            ) or None

    async def sync_all(self, trigger_type: str = "manual") -> SyncReport:
        """
        Full sync: push the queue, then pull every registered entity.
        Returns a skipped report when offline, unconfigured or already running.
        """
        if self._sync_lock.locked():
            log.info("Full sync already running, skipping")
            return SyncReport(trigger_type=trigger_type, skipped_reason="in_progress")
        if not self.settings.is_configured:
            log.warning("Full sync skipped: API token or technician not configured")
            return SyncReport(trigger_type=trigger_type, skipped_reason="not_configured")
        status = await self.connectivity.fetch()
        if not status.is_connected:
            log.info("Full sync skipped: offline")
            return SyncReport(trigger_type=trigger_type, skipped_reason="offline")

        async with self._sync_lock:
            started = time.perf_counter()
            correlation_id = self.metrics.start_cycle()
            report = SyncReport(correlation_id=correlation_id, trigger_type=trigger_type)
            run_id = self._start_run(trigger_type, correlation_id)
            self._set_state(status=SyncStatus.SYNCING, progress=0.0, error=None)
            self._emit(SyncEventType.SYNC_STARTED, correlation_id=correlation_id)
            log.info(f"[{correlation_id}] Starting full sync ({trigger_type})")

            error: Optional[str] = None
            try:
                if not self._failed_reset_done:
                    self._failed_reset_done = True
                    self.queue.reset_failed()

                try:
                    pushed = await self._push_pending_mutations()
                    report.pushed, report.push_failed = pushed.pushed, pushed.failed
                except Exception as e:
                    log.warning(f"[{correlation_id}] Push phase failed, continuing with pull: {e}")
                    report.push_error = str(e)

                report.results = await self._pull_entities(self.entities_by_priority(), correlation_id)
            except Exception as e:
                error = f"Unexpected error: {e}"
                log.error(f"[{correlation_id}] Full sync failed: {e}", exc_info=True)

            report.duration_ms = (time.perf_counter() - started) * 1000
            self._finish_run(run_id, report, error)
            self.metrics.end_cycle(error=error or report.push_error)

            if error is None:
                self._set_state(
                    status=SyncStatus.IDLE if report.success else SyncStatus.ERROR,
                    last_sync_at=utcnow(),
                    progress=1.0,
                    error=None if report.success else "Some entities failed to sync",
                )
                self._emit(
                    SyncEventType.SYNC_COMPLETED,
                    correlation_id=correlation_id,
                    data={"success": report.success, "pushed": report.pushed},
                )
            else:
                self._set_state(status=SyncStatus.ERROR, error=error)
                self._emit(SyncEventType.SYNC_FAILED, correlation_id=correlation_id, data={"error": error})

        return report

    async def sync_with_retry(self, trigger_type: str = "retry") -> SyncReport:
        """Run a full sync, retrying failed cycles with exponential backoff."""
        max_retries = max(0, self.settings.SYNC_MAX_RETRIES)
        report = SyncReport(trigger_type=trigger_type)
        for attempt in range(max_retries + 1):
            report = await self.sync_all(trigger_type)
            if report.success or report.skipped_reason:
                return report
            if attempt == max_retries:
                break
            delay_ms = self.settings.SYNC_RETRY_BASE_DELAY_MS * (2 ** attempt)
            log.warning(f"Sync attempt {attempt + 1}/{max_retries + 1} failed, retrying in {delay_ms}ms")
            await asyncio.sleep(delay_ms / 1000)
        log.error(f"Sync failed after {max_retries + 1} attempt(s)")
        return report
