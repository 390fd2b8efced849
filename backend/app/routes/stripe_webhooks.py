from __future__ import annotations
import json
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
from app.db import get_session
from app.errors import InvalidSignature
from app.jobs.queue import kick_publisher
from app.schemas.webhook import WebhookAck
from app.services import inbox

router = APIRouter(tags=["stripe"], dependencies=[Depends(kick_publisher)])

@router.post("/stripe/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_session),
):
    payload = await request.body()
    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid webhook: body is not JSON")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook: expected an event object")

    # handler failures are recorded and retried by us, so the processor still gets a 2xx
    try:
        result = await inbox.receive(
            db,
            webhook_id=event.get("id") or "",
            event_type=event.get("type") or "",
            payload=event,
            signature=stripe_signature,
            raw_body=payload,
        )
    except InvalidSignature as e:
        raise HTTPException(status_code=400, detail=e.message)
    return WebhookAck(accepted=result["accepted"], duplicate=result["duplicate"], status=result["status"])
