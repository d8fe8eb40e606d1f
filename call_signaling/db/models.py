from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean, Enum as SQLAlchemyEnum
from sqlalchemy.sql import func
from call_signaling.db.base import Base
from call_signaling.core.states import CallDirection, CallStatus, CallType


class CallRecord(Base):
    """
    Call history entry, written once a session reaches a terminal state.
    """
    __tablename__ = "call_records"

    # Primary key: the session id assigned by whichever side started the call
    session_id = Column(String, primary_key=True, index=True)

    direction = Column(SQLAlchemyEnum(CallDirection), nullable=False)
    call_type = Column(SQLAlchemyEnum(CallType), default=CallType.VOICE, nullable=False)
    initiator = Column(String, nullable=False, index=True)
    participants = Column(JSON, nullable=False, default=list)
    group_id = Column(String, nullable=True)
    is_group_call = Column(Boolean, default=False, nullable=False)

    # Terminal status and why it was reached
    status = Column(SQLAlchemyEnum(CallStatus), nullable=False)
    end_reason = Column(String, nullable=True)

    # Timestamps
    started_at = Column(DateTime(timezone=True), nullable=False)
    answered_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration = Column(Integer, default=0, nullable=False)

    recorded_at = Column(DateTime(timezone=True), server_default=func.now())
