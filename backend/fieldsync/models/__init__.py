"""Database models."""

from fieldsync.models.mutation import Mutation, MutationOperation, MutationState
from fieldsync.models.sync_meta import SyncMeta
from fieldsync.models.sync_run import SyncRun

__all__ = [
    "Mutation",
    "MutationOperation",
    "MutationState",
    "SyncMeta",
    "SyncRun",
]
