from typing import Any, Dict, List, Union
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
import logging

from call_signaling.core.dependencies import get_channel
from call_signaling.services.channel import SignalingChannel

logger = logging.getLogger(__name__)
router = APIRouter()


class ReconnectPayload(BaseModel):
    active_sessions: List[str]


@router.post("/signaling/events", status_code=status.HTTP_202_ACCEPTED)
async def receive_events(
    body: Union[List[Dict[str, Any]], Dict[str, Any]],
    channel: SignalingChannel = Depends(get_channel),
):
    # Validation happens in the store: a malformed event for the current
    # session must fail that session rather than be rejected here
    events = body if isinstance(body, list) else [body]
    for event in events:
        await channel.deliver(event)
    return {"status": "accepted", "count": len(events)}


@router.post("/signaling/reconnect", status_code=status.HTTP_202_ACCEPTED)
async def reconnected(payload: ReconnectPayload, channel: SignalingChannel = Depends(get_channel)):
    await channel.reconcile_with(payload.active_sessions)
    return {"status": "reconciled"}
