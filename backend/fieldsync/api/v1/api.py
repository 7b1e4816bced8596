from fastapi import APIRouter

from fieldsync.api.v1.endpoints import mutations, sync, webhook

api_router = APIRouter()
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
api_router.include_router(mutations.router, prefix="/mutations", tags=["mutations"])
api_router.include_router(webhook.router, prefix="/webhook", tags=["webhook"])
