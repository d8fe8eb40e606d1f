from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
import logging

from call_signaling.core.dependencies import get_history, get_store
from call_signaling.core.states import CallType
from call_signaling.services.history import CallHistoryRecorder
from call_signaling.services.store import CallSessionStore

logger = logging.getLogger(__name__)
router = APIRouter()


class StartCallPayload(BaseModel):
    participants: List[str] = Field(min_length=1)
    call_type: CallType = CallType.VOICE
    group_id: Optional[str] = None


def _state(store: CallSessionStore) -> dict:
    session = store.current_session
    return {
        "session": session.model_dump(mode="json") if session else None,
        "is_answering_call": store.is_answering_call,
        "is_declining_call": store.is_declining_call,
        "is_starting_call": store.is_starting_call,
        "is_in_call": store.is_in_call,
    }


@router.get("/calls/current")
async def current_call(store: CallSessionStore = Depends(get_store)):
    return _state(store)


@router.post("/calls", status_code=status.HTTP_201_CREATED)
async def start_call(payload: StartCallPayload, store: CallSessionStore = Depends(get_store)):
    try:
        session = await store.start_call(payload.participants, payload.call_type, payload.group_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return session.model_dump(mode="json")


@router.post("/calls/{call_id}/answer")
async def answer_call(call_id: str, store: CallSessionStore = Depends(get_store)):
    session = await store.answer(call_id)
    return session.model_dump(mode="json")


@router.post("/calls/{call_id}/decline")
async def decline_call(call_id: str, store: CallSessionStore = Depends(get_store)):
    session = await store.decline(call_id)
    return session.model_dump(mode="json")


@router.post("/calls/{call_id}/hangup")
async def hang_up_call(call_id: str, store: CallSessionStore = Depends(get_store)):
    session = await store.hang_up(call_id)
    return session.model_dump(mode="json")


@router.post("/calls/{call_id}/cancel")
async def cancel_call(call_id: str, store: CallSessionStore = Depends(get_store)):
    session = await store.cancel(call_id)
    return session.model_dump(mode="json")


@router.post("/calls/{call_id}/acknowledge", status_code=status.HTTP_204_NO_CONTENT)
async def acknowledge_call(call_id: str, store: CallSessionStore = Depends(get_store)):
    await store.acknowledge(call_id)


@router.post("/calls/{call_id}/mute")
async def toggle_mute(call_id: str, store: CallSessionStore = Depends(get_store)):
    return {"muted": await store.toggle_mute(call_id)}


@router.post("/calls/{call_id}/video")
async def toggle_video(call_id: str, store: CallSessionStore = Depends(get_store)):
    return {"video_enabled": await store.toggle_video(call_id)}


@router.post("/calls/{call_id}/media-closed")
async def media_closed(call_id: str, store: CallSessionStore = Depends(get_store)):
    session = await store.media_closed(call_id)
    return {"applied": session is not None}


@router.get("/calls/history")
async def call_history(
    limit: int = Query(50, ge=1, le=200),
    history: CallHistoryRecorder = Depends(get_history),
):
    records = await history.list_calls(limit)
    return [
        {
            "session_id": r.session_id,
            "direction": r.direction.value,
            "call_type": r.call_type.value,
            "initiator": r.initiator,
            "participants": r.participants,
            "group_id": r.group_id,
            "is_group_call": r.is_group_call,
            "status": r.status.value,
            "end_reason": r.end_reason,
            "started_at": r.started_at.isoformat() if r.started_at else None,
            "answered_at": r.answered_at.isoformat() if r.answered_at else None,
            "ended_at": r.ended_at.isoformat() if r.ended_at else None,
            "duration": r.duration,
        }
        for r in records
    ]
