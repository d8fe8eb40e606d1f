import asyncio
import logging
from typing import List, Set

from sqlalchemy.future import select

from call_signaling.db.models import CallRecord
from call_signaling.models.session import CallSession, Transition

logger = logging.getLogger(__name__)


class CallHistoryRecorder:
    """
    Persists every session that reaches a terminal state.

    Subscribed to the store; writes run as background tasks so the store
    never waits on the database.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._pending: Set[asyncio.Task] = set()

    def on_transition(self, transition: Transition) -> None:
        if not transition.session.is_terminal:
            return
        task = asyncio.create_task(self.record(transition.session))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def record(self, call: CallSession) -> None:
        async with self._session_factory() as session:
            try:
                record = await session.get(CallRecord, call.id)
                if record is None:
                    record = CallRecord(session_id=call.id)
                    session.add(record)
                record.direction = call.direction
                record.call_type = call.call_type
                record.initiator = call.initiator
                record.participants = list(call.participants)
                record.group_id = call.group_id
                record.is_group_call = call.is_group_call
                record.status = call.status
                record.end_reason = call.end_reason.value if call.end_reason else None
                record.started_at = call.created_at
                record.answered_at = call.answered_at
                record.ended_at = call.ended_at
                record.duration = call.duration
                await session.commit()
                logger.info(f"Recorded call {call.id} ({call.status.value})")
            except Exception as e:
                logger.exception(f"Failed to record call {call.id}: {e}")
                await session.rollback()

    async def list_calls(self, limit: int = 50) -> List[CallRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CallRecord).order_by(CallRecord.started_at.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def drain(self) -> None:
        """Wait for in-flight writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
