from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from call_signaling.core.states import CallDirection, CallStatus, CallType, EndReason, EventKind, IntentKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallSession(BaseModel):
    """
    The unit of truth for one call attempt.

    Owned by CallSessionStore; everything else only sees copies.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str
    direction: CallDirection
    call_type: CallType = Field(default=CallType.VOICE, alias="callType")
    participants: List[str]
    initiator: str
    status: CallStatus = CallStatus.RINGING
    group_id: Optional[str] = Field(default=None, alias="groupId")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    answered_at: Optional[datetime] = Field(default=None, alias="answeredAt")
    ended_at: Optional[datetime] = Field(default=None, alias="endedAt")
    end_reason: Optional[EndReason] = Field(default=None, alias="endReason")
    muted: bool = False
    video_enabled: bool = True

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_group_call(self) -> bool:
        return self.group_id is not None or len(self.participants) > 1

    @property
    def duration(self) -> int:
        """Whole seconds the call has been active, 0 if it never connected."""
        if self.answered_at is None:
            return 0
        end = self.ended_at or utcnow()
        return max(0, int((end - self.answered_at).total_seconds()))


class SignalingEvent(BaseModel):
    """An inbound lifecycle event as delivered by a SignalingChannel."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1)
    kind: EventKind
    call_type: CallType = Field(default=CallType.VOICE, alias="callType")
    caller: Optional[str] = None
    participants: List[str] = Field(default_factory=list)
    group_id: Optional[str] = Field(default=None, alias="groupId")
    reason: Optional[str] = None


class Intent(BaseModel):
    """An outbound intent handed to SignalingChannel.send()."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    kind: IntentKind
    call_type: Optional[CallType] = Field(default=None, alias="callType")
    participants: List[str] = Field(default_factory=list)
    group_id: Optional[str] = Field(default=None, alias="groupId")
    reason: Optional[str] = None


class SendResult(BaseModel):
    accepted: bool
    reason: Optional[str] = None


class Transition(BaseModel):
    """Published to store subscribers after every applied status change."""
    session: CallSession
    previous: Optional[CallStatus] = None

    @property
    def current(self) -> CallStatus:
        return self.session.status
