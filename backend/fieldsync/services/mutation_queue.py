"""Durable, ordered queue of local writes waiting to be pushed."""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy.orm import sessionmaker

from fieldsync.database import session_scope
from fieldsync.models.mutation import Mutation, MutationOperation, MutationState, UNSYNCED_STATES
from fieldsync.schemas.mutation import MutationEvent, MutationEventType
from fieldsync.utils.timers import utcnow

log = logging.getLogger(__name__)

MutationListener = Callable[[MutationEvent], None]


class MutationQueue:
    """
    Owns every state transition of a :class:`Mutation`.

    PENDING -> PROCESSING when a push claims it, PROCESSING -> COMPLETED on
    server ack, PROCESSING -> FAILED on rejection, PROCESSING -> PENDING when
    the push call itself failed, FAILED -> PENDING through `reset_failed`.
    Each operation runs in its own transaction.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._listeners: List[MutationListener] = []

    # Events

    def subscribe(self, listener: MutationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event_type: MutationEventType, **fields: Any) -> None:
        if not self._listeners:
            return
        event = MutationEvent(type=event_type, pending_count=self.count_pending(), **fields)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                log.error(f"Mutation listener failed on {event_type.value}: {e}", exc_info=True)

    # Writes

    def enqueue(
        self,
        entity: str,
        entity_id: str,
        operation: MutationOperation,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Mutation:
        with session_scope(self._session_factory) as db:
            mutation = Mutation(
                entity=entity,
                entity_id=str(entity_id),
                operation=MutationOperation(operation),
                payload=payload,
                status=MutationState.PENDING,
                attempts=0,
            )
            db.add(mutation)
            db.flush()
            db.refresh(mutation)

        log.debug(f"Enqueued {mutation.operation.value} {entity}:{entity_id} as mutation #{mutation.id}")
        self._emit(
            MutationEventType.MUTATION_ADDED,
            mutation_id=mutation.id,
            entity=entity,
            entity_id=mutation.entity_id,
        )
        return mutation

    def _transition(
        self,
        ids: Iterable[int],
        values: Dict[str, Any],
        from_states: Optional[Iterable[MutationState]] = None,
    ) -> int:
        ids = list(ids)
        if not ids:
            return 0
        with session_scope(self._session_factory) as db:
            q = db.query(Mutation).filter(Mutation.id.in_(ids))
            if from_states is not None:
                q = q.filter(Mutation.status.in_(list(from_states)))
            return q.update(values, synchronize_session=False)

    def mark_processing(self, ids: Iterable[int]) -> int:
        return self._transition(
            ids,
            {
                Mutation.status: MutationState.PROCESSING,
                Mutation.attempts: Mutation.attempts + 1,
                Mutation.last_attempt_at: utcnow(),
            },
        )

    def mark_completed(self, ids: Iterable[int]) -> int:
        count = self._transition(ids, {Mutation.status: MutationState.COMPLETED, Mutation.error_message: None})
        if count:
            self._emit(MutationEventType.MUTATION_COMPLETED, count=count)
        return count

    def mark_failed(self, ids: Iterable[int], error_message: Optional[str] = None) -> int:
        count = self._transition(ids, {Mutation.status: MutationState.FAILED, Mutation.error_message: error_message})
        if count:
            log.warning(f"Marked {count} mutation(s) as failed: {error_message}")
            self._emit(MutationEventType.MUTATION_FAILED, count=count)
        return count

    def release(self, ids: Iterable[int]) -> int:
        """Return claimed mutations to PENDING after a push call that never reached the server."""
        return self._transition(
            ids,
            {Mutation.status: MutationState.PENDING},
            from_states=[MutationState.PROCESSING],
        )

    def reset_failed(self) -> int:
        with session_scope(self._session_factory) as db:
            count = db.query(Mutation).filter(Mutation.status == MutationState.FAILED).update(
                {
                    Mutation.status: MutationState.PENDING,
                    Mutation.attempts: 0,
                    Mutation.error_message: None,
                },
                synchronize_session=False,
            )
        if count:
            log.info(f"Reset {count} failed mutation(s) to pending")
            self._emit(MutationEventType.MUTATIONS_RESET, count=count)
        return count

    def remove(self, mutation_id: int) -> bool:
        with session_scope(self._session_factory) as db:
            deleted = db.query(Mutation).filter(Mutation.id == mutation_id).delete(synchronize_session=False)
        if deleted:
            self._emit(MutationEventType.MUTATION_REMOVED, mutation_id=mutation_id, count=deleted)
        return bool(deleted)

    def cleanup(self, older_than_days: int = 7) -> int:
        """Delete completed mutations older than the retention window."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        with session_scope(self._session_factory) as db:
            count = db.query(Mutation).filter(
                Mutation.status == MutationState.COMPLETED,
                Mutation.created_at < cutoff,
            ).delete(synchronize_session=False)
        if count:
            log.info(f"Cleaned up {count} completed mutation(s) older than {older_than_days} days")
            self._emit(MutationEventType.MUTATIONS_CLEANUP, count=count)
        return count

    def delete_failed(self) -> int:
        with session_scope(self._session_factory) as db:
            count = db.query(Mutation).filter(Mutation.status == MutationState.FAILED).delete(
                synchronize_session=False
            )
        if count:
            log.info(f"Deleted {count} failed mutation(s)")
            self._emit(MutationEventType.MUTATIONS_CLEANUP, count=count)
        return count

    # Reads

    def get_pending(self, entity: Optional[str] = None, limit: Optional[int] = None) -> List[Mutation]:
        with session_scope(self._session_factory) as db:
            q = db.query(Mutation).filter(Mutation.status == MutationState.PENDING)
            if entity:
                q = q.filter(Mutation.entity == entity)
            q = q.order_by(Mutation.id.asc())
            if limit:
                q = q.limit(limit)
            return q.all()

    def pending_entity_ids(self, entity: str) -> Set[str]:
        """Ids of records whose local edit the server has not acknowledged yet."""
        with session_scope(self._session_factory) as db:
            rows = (
                db.query(Mutation.entity_id)
                .filter(Mutation.entity == entity, Mutation.status.in_(list(UNSYNCED_STATES)))
                .distinct()
                .all()
            )
        return {row[0] for row in rows}

    def count_pending(self, entity: Optional[str] = None) -> int:
        with session_scope(self._session_factory) as db:
            q = db.query(Mutation).filter(Mutation.status == MutationState.PENDING)
            if entity:
                q = q.filter(Mutation.entity == entity)
            return q.count()

    def has_pending_for(self, entity: str, entity_id: str) -> bool:
        with session_scope(self._session_factory) as db:
            return (
                db.query(Mutation.id)
                .filter(
                    Mutation.entity == entity,
                    Mutation.entity_id == str(entity_id),
                    Mutation.status.in_([MutationState.PENDING, MutationState.PROCESSING]),
                )
                .first()
                is not None
            )

    def get_by_entity(self, entity: str, entity_id: str) -> List[Mutation]:
        with session_scope(self._session_factory) as db:
            return (
                db.query(Mutation)
                .filter(Mutation.entity == entity, Mutation.entity_id == str(entity_id))
                .order_by(Mutation.id.asc())
                .all()
            )

    def get_all(self, status: Optional[MutationState] = None, limit: Optional[int] = None) -> List[Mutation]:
        with session_scope(self._session_factory) as db:
            q = db.query(Mutation)
            if status is not None:
                q = q.filter(Mutation.status == status)
            q = q.order_by(Mutation.id.asc())
            if limit:
                q = q.limit(limit)
            return q.all()
