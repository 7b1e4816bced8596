from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from fieldsync.api.deps import get_sync_context
from fieldsync.context import SyncContext
from fieldsync.models.mutation import MutationState
from fieldsync.schemas.mutation import MutationCreate, MutationResponse

log = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=MutationResponse, status_code=status.HTTP_201_CREATED)
async def enqueue_mutation(
    mutation: MutationCreate,
    context: SyncContext = Depends(get_sync_context),
):
    """Record a local write; the fast push path uploads it in the background."""
    created = context.enqueue_mutation(
        mutation.entity,
        mutation.entity_id,
        mutation.operation,
        mutation.payload,
    )
    return MutationResponse.model_validate(created)


@router.get("", response_model=List[MutationResponse])
async def list_mutations(
    status: Optional[MutationState] = None,
    entity: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 100,
    context: SyncContext = Depends(get_sync_context),
):
    """List queued mutations, optionally filtered by state or record."""
    if entity and entity_id:
        mutations = context.queue.get_by_entity(entity, entity_id)
        if status is not None:
            mutations = [m for m in mutations if m.status == status]
    elif status == MutationState.PENDING:
        mutations = context.queue.get_pending(entity=entity, limit=limit)
    else:
        mutations = context.queue.get_all(status=status, limit=limit)
        if entity:
            mutations = [m for m in mutations if m.entity == entity]
    return [MutationResponse.model_validate(m) for m in mutations]


@router.post("/reset-failed")
async def reset_failed(context: SyncContext = Depends(get_sync_context)):
    """Return FAILED mutations to PENDING so the next push retries them."""
    count = context.queue.reset_failed()
    if count:
        context.fast_push.notify_mutation_added()
    return {"reset": count}


@router.delete("/failed")
async def delete_failed(context: SyncContext = Depends(get_sync_context)):
    return {"deleted": context.queue.delete_failed()}


@router.delete("/{mutation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_mutation(mutation_id: int, context: SyncContext = Depends(get_sync_context)):
    if not context.queue.remove(mutation_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Mutation not found")
