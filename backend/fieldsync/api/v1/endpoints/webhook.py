import hmac
import json
import logging
from hashlib import sha256
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError

from fieldsync.api.deps import get_sync_context
from fieldsync.context import SyncContext
from fieldsync.schemas.triggers import PushNotificationPayload, TriggerOutcome, TriggerResponse

log = logging.getLogger(__name__)
router = APIRouter()


def expected_signature(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, sha256).hexdigest()


@router.post("/push", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def push_notification(
    request: Request,
    x_fieldsync_signature: Optional[str] = Header(None, alias="X-Fieldsync-Signature"),
    context: SyncContext = Depends(get_sync_context),
):
    """Receive a push notification and schedule the matching re-sync."""
    body = await request.body()

    secret = context.settings.webhook_secret
    if secret:
        if not x_fieldsync_signature or not hmac.compare_digest(
            x_fieldsync_signature, expected_signature(secret, body)
        ):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    try:
        data = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not valid JSON")

    try:
        payload = PushNotificationPayload.from_notification_data(data if isinstance(data, dict) else None)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.errors(include_url=False))

    if payload is None:
        log.debug("Push notification without eventType ignored")
        return TriggerResponse(status=TriggerOutcome.IGNORED)

    decision = context.triggers.resolve(payload)
    outcome = context.triggers.handle_payload(payload)
    return TriggerResponse(
        status=outcome,
        key=decision.key if decision else None,
        action=decision.action if decision else None,
    )
