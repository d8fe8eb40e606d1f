from datetime import timedelta

import pytest
import pytest_asyncio

from call_signaling.core.states import CallDirection, CallStatus, CallType, EndReason
from call_signaling.db.base import Base
from call_signaling.db.session import create_engine, create_session_factory
from call_signaling.models.session import CallSession, Transition, utcnow
from call_signaling.services.history import CallHistoryRecorder


@pytest_asyncio.fixture
async def recorder(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path}/history.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield CallHistoryRecorder(create_session_factory(engine))
    await engine.dispose()


def ended_call(session_id="c1", minutes_ago=10, talked=42, **overrides):
    started = utcnow() - timedelta(minutes=minutes_ago)
    fields = dict(
        id=session_id,
        direction=CallDirection.INCOMING,
        call_type=CallType.VIDEO,
        participants=["alice"],
        initiator="alice",
        status=CallStatus.ENDED,
        created_at=started,
        answered_at=started + timedelta(seconds=5),
        ended_at=started + timedelta(seconds=5 + talked),
        end_reason=EndReason.REMOTE_HANGUP,
    )
    fields.update(overrides)
    return CallSession(**fields)


@pytest.mark.asyncio
async def test_record_and_list(recorder):
    await recorder.record(ended_call())

    records = await recorder.list_calls()

    assert len(records) == 1
    record = records[0]
    assert record.session_id == "c1"
    assert record.status is CallStatus.ENDED
    assert record.call_type is CallType.VIDEO
    assert record.end_reason == "remote-hangup"
    assert record.duration == 42
    assert record.is_group_call is False
    assert record.participants == ["alice"]


@pytest.mark.asyncio
async def test_newest_first_with_limit(recorder):
    await recorder.record(ended_call("old", minutes_ago=30))
    await recorder.record(ended_call("new", minutes_ago=1))
    await recorder.record(ended_call("mid", minutes_ago=10))

    records = await recorder.list_calls(limit=2)

    assert [r.session_id for r in records] == ["new", "mid"]


@pytest.mark.asyncio
async def test_record_is_upsert(recorder):
    await recorder.record(ended_call())
    await recorder.record(ended_call(status=CallStatus.FAILED, end_reason=EndReason.ERROR))

    records = await recorder.list_calls()

    assert len(records) == 1
    assert records[0].status is CallStatus.FAILED


@pytest.mark.asyncio
async def test_only_terminal_transitions_are_recorded(recorder):
    ringing = ended_call("c1", status=CallStatus.RINGING, answered_at=None, ended_at=None, end_reason=None)
    missed = ended_call("c2", status=CallStatus.MISSED, answered_at=None, end_reason=EndReason.TIMEOUT)

    recorder.on_transition(Transition(session=ringing))
    recorder.on_transition(Transition(session=missed, previous=CallStatus.RINGING))
    await recorder.drain()

    records = await recorder.list_calls()
    assert [r.session_id for r in records] == ["c2"]
    assert records[0].duration == 0
    assert records[0].end_reason == "timeout"
