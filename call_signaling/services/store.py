"""
Call session store.

Single authority for "is there a call, who is in it, what state is it in"
on this device. Inbound events and local actions are serialized through
one asyncio.Lock; outbound sends happen outside the lock so a remote
event can always overtake a slow acknowledgement.
"""
import asyncio
import logging
from collections import OrderedDict
from typing import Any, Callable, Iterable, List, Optional, Set, Union
from uuid import uuid4

from pydantic import ValidationError

from call_signaling.core.exceptions import ChannelRejectionError, InvalidStateError, StaleEventDiscarded
from call_signaling.core.states import (
    CallDirection,
    CallStatus,
    CallType,
    EndReason,
    EventKind,
    IntentKind,
    can_transition,
)
from call_signaling.models.session import CallSession, Intent, SignalingEvent, Transition, utcnow
from call_signaling.services.channel import RawEvent, SignalingChannel
from call_signaling.services.media import MediaController
from call_signaling.services.timers import CancelableTimer

logger = logging.getLogger(__name__)

Subscriber = Callable[[Transition], Any]
IngestResult = Union[CallSession, StaleEventDiscarded]

UNKNOWN_CALLER = "unknown"

TERMINAL_EVENTS = frozenset({
    EventKind.ANSWERED_ELSEWHERE,
    EventKind.DECLINED,
    EventKind.DECLINED_ELSEWHERE,
    EventKind.CANCELED,
    EventKind.ENDED,
})


class CallSessionStore:
    """
    Owns the single current CallSession and applies the call state machine.

    Actions (answer, decline, hang_up, cancel) are idempotent where the UI
    can double-invoke them, and raise InvalidStateError when called against
    the wrong session or status. Events that reference a terminated or
    non-current session are discarded and logged.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        *,
        local_identity: str,
        ring_timeout: float = 30.0,
        answer_timeout: float = 10.0,
        terminal_grace: float = 5.0,
        stale_memory: int = 128,
        media: Optional[MediaController] = None,
    ):
        self._channel = channel
        self.local_identity = local_identity
        self.ring_timeout = ring_timeout
        self.answer_timeout = answer_timeout
        self.terminal_grace = terminal_grace
        self.stale_memory = stale_memory
        self._media = media

        self._lock = asyncio.Lock()
        self._session: Optional[CallSession] = None
        self._terminated: "OrderedDict[str, None]" = OrderedDict()
        self._subscribers: List[Subscriber] = []

        self._ring_timer = CancelableTimer("ring-timeout")
        self._grace_timer = CancelableTimer("terminal-grace")

        self._answer_outcome: Optional[asyncio.Future] = None
        self._answer_send: Optional[asyncio.Task] = None
        self._decline_outcome: Optional[asyncio.Future] = None
        self._declining_id: Optional[str] = None
        self._starting = False
        self._background: Set[asyncio.Task] = set()

        channel.on_event(self.ingest)
        channel.on_reconnect(self.reconcile)

    @classmethod
    def from_settings(cls, channel: SignalingChannel, settings, media: Optional[MediaController] = None) -> "CallSessionStore":
        return cls(
            channel,
            local_identity=settings.DEVICE_IDENTITY,
            ring_timeout=settings.RING_TIMEOUT_SECONDS,
            answer_timeout=settings.ANSWER_TIMEOUT_SECONDS,
            terminal_grace=settings.TERMINAL_GRACE_SECONDS,
            stale_memory=settings.STALE_SESSION_MEMORY,
            media=media,
        )

    # ===== Reads =====

    @property
    def current_session(self) -> Optional[CallSession]:
        if self._session is None:
            return None
        return self._session.model_copy(deep=True)

    @property
    def is_answering_call(self) -> bool:
        return self._answer_outcome is not None

    @property
    def is_declining_call(self) -> bool:
        return self._decline_outcome is not None

    @property
    def is_starting_call(self) -> bool:
        return self._starting

    @property
    def is_in_call(self) -> bool:
        return self._session is not None and self._session.status is CallStatus.ACTIVE

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register for transitions. Returns a callable that unsubscribes."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    # ===== Actions =====

    async def start_call(
        self,
        participants: Iterable[str],
        call_type: CallType = CallType.VOICE,
        group_id: Optional[str] = None,
    ) -> CallSession:
        """Place an outgoing call. Group calls need a group_id."""
        remote = [p for p in dict.fromkeys(participants) if p and p != self.local_identity]
        if not remote:
            raise ValueError("At least one remote participant is required")
        if group_id is None and len(remote) != 1:
            raise ValueError("A direct call needs exactly one remote participant")

        async with self._lock:
            current = self._session
            if current is not None and not current.is_terminal:
                raise InvalidStateError("start a call", current.id, current.status.value, "another call is in progress")
            session = CallSession(
                id=uuid4().hex,
                direction=CallDirection.OUTGOING,
                call_type=call_type,
                participants=remote,
                initiator=self.local_identity,
                group_id=group_id,
            )
            self._starting = True
            self._install(session)

        intent = Intent(
            session_id=session.id,
            kind=IntentKind.INVITE,
            call_type=call_type,
            participants=remote,
            group_id=group_id,
        )
        error = await self._send_checked(intent)

        async with self._lock:
            self._starting = False
            if error is not None:
                logger.error(f"Invite for {session.id} was not accepted: {error}")
                if self._is_current(session, CallStatus.RINGING):
                    self._apply(session, CallStatus.FAILED, EndReason.ERROR)
            return session.model_copy(deep=True)

    async def answer(self, session_id: str) -> CallSession:
        """
        Answer the ringing incoming call.

        The session moves to ANSWERING before anything is awaited, so a
        second call while the first is in flight returns the same pending
        result and sends nothing. Resolves to the settled session: ACTIVE
        on acknowledgement, FAILED on rejection or timeout, or whatever
        terminal state a racing remote event produced.
        """
        async with self._lock:
            session = self._require(session_id, "answer")
            if session.status is CallStatus.ANSWERING and self._answer_outcome is not None:
                logger.info(f"answer({session_id}) already in flight")
                outcome = self._answer_outcome
            else:
                self._require_status(session, "answer", CallStatus.RINGING)
                if session.direction is CallDirection.OUTGOING:
                    raise InvalidStateError("answer", session_id, session.status.value, "outgoing calls are answered remotely")
                outcome = self._answer_outcome = asyncio.get_running_loop().create_future()
                self._apply(session, CallStatus.ANSWERING)
                self._answer_send = self._spawn(self._send_answer(session))
        return await asyncio.shield(outcome)

    async def decline(self, session_id: str) -> CallSession:
        """Decline a ringing (or answering) incoming call; applied before the intent is acknowledged."""
        async with self._lock:
            if self._decline_outcome is not None and self._declining_id == session_id:
                logger.info(f"decline({session_id}) already in flight")
                outcome = self._decline_outcome
            else:
                session = self._require(session_id, "decline")
                self._require_status(session, "decline", CallStatus.RINGING, CallStatus.ANSWERING)
                if session.direction is CallDirection.OUTGOING:
                    raise InvalidStateError("decline", session_id, session.status.value, "use cancel for outgoing calls")
                outcome = self._decline_outcome = asyncio.get_running_loop().create_future()
                self._declining_id = session_id
                self._apply(session, CallStatus.DECLINED, EndReason.LOCAL_DECLINED)
                self._spawn(self._send_decline(session, outcome))
        return await asyncio.shield(outcome)

    async def hang_up(self, session_id: str) -> CallSession:
        async with self._lock:
            session = self._require(session_id, "hang up")
            self._require_status(session, "hang up", CallStatus.ACTIVE)
            self._apply(session, CallStatus.ENDED, EndReason.LOCAL_HANGUP)
            snapshot = session.model_copy(deep=True)
        error = await self._send_checked(Intent(session_id=session_id, kind=IntentKind.HANG_UP))
        if error is not None:
            logger.warning(f"Hang-up for {session_id} not acknowledged ({error}); call is ended locally")
        return snapshot

    async def cancel(self, session_id: str) -> CallSession:
        """Withdraw an outgoing call that has not been answered yet."""
        async with self._lock:
            session = self._require(session_id, "cancel")
            self._require_status(session, "cancel", CallStatus.RINGING)
            if session.direction is not CallDirection.OUTGOING:
                raise InvalidStateError("cancel", session_id, session.status.value, "only outgoing calls can be canceled")
            self._apply(session, CallStatus.CANCELED, EndReason.LOCAL_CANCELED)
            snapshot = session.model_copy(deep=True)
        error = await self._send_checked(Intent(session_id=session_id, kind=IntentKind.CANCEL))
        if error is not None:
            logger.warning(f"Cancel for {session_id} not acknowledged ({error}); call is canceled locally")
        return snapshot

    async def acknowledge(self, session_id: str) -> None:
        """Clear a terminal session from the slot once the UI has shown its outcome."""
        async with self._lock:
            session = self._session
            if session is None or session.id != session_id:
                raise InvalidStateError("acknowledge", session_id, detail="not the current session")
            if not session.is_terminal:
                raise InvalidStateError("acknowledge", session_id, session.status.value)
            self._clear_slot()

    async def toggle_mute(self, session_id: str) -> bool:
        async with self._lock:
            session = self._require(session_id, "toggle mute")
            self._require_status(session, "toggle mute", CallStatus.ACTIVE)
            session.muted = not session.muted
            if self._media is not None:
                self._media.set_muted(session, session.muted)
            return session.muted

    async def toggle_video(self, session_id: str) -> bool:
        async with self._lock:
            session = self._require(session_id, "toggle video")
            self._require_status(session, "toggle video", CallStatus.ACTIVE)
            session.video_enabled = not session.video_enabled
            if self._media is not None:
                self._media.set_video_enabled(session, session.video_enabled)
            return session.video_enabled

    async def media_closed(self, session_id: str) -> Optional[CallSession]:
        """Media transport reported the session closed underneath us."""
        async with self._lock:
            session = self._session
            if session is None or session.id != session_id or session.status is not CallStatus.ACTIVE:
                logger.info(f"Ignoring media close for {session_id}")
                return None
            self._apply(session, CallStatus.ENDED, EndReason.MEDIA_CLOSED)
            return session.model_copy(deep=True)

    # ===== Inbound =====

    async def ingest(self, event: RawEvent) -> IngestResult:
        """Apply one inbound signaling event. Never raises for stale or unknown events."""
        if isinstance(event, SignalingEvent):
            parsed = event
        else:
            try:
                parsed = SignalingEvent.model_validate(event)
            except ValidationError as e:
                return await self._ingest_malformed(event, e)

        async with self._lock:
            return self._apply_event(parsed)

    async def reconcile(self, active_session_ids: Iterable[str]) -> Optional[CallSession]:
        """
        Called after the transport reconnects with the sessions the backend
        still considers live. A locally non-terminal session missing from
        that set is ended as if the remote side had canceled or hung up.
        """
        active = set(active_session_ids)
        async with self._lock:
            session = self._session
            if session is None or session.is_terminal or session.id in active:
                return None
            logger.warning(f"Session {session.id} not found after reconnect; closing it locally")
            if session.status is CallStatus.ACTIVE:
                self._apply(session, CallStatus.ENDED, EndReason.REMOTE_HANGUP)
            else:
                self._apply(session, CallStatus.CANCELED, EndReason.REMOTE_CANCELED)
            return session.model_copy(deep=True)

    async def close(self) -> None:
        """Cancel timers and in-flight work."""
        self._ring_timer.cancel()
        self._grace_timer.cancel()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ===== Internal: event handling =====

    def _apply_event(self, event: SignalingEvent) -> IngestResult:
        session = self._session

        if event.session_id in self._terminated:
            return self._discard(event, "session already terminated")

        if event.kind is EventKind.INCOMING:
            return self._ingest_incoming(event)

        if session is None or session.id != event.session_id:
            if event.kind in TERMINAL_EVENTS:
                # the matching incoming may still be in flight
                self._remember_terminated(event.session_id)
            return self._discard(event, "not the current session")

        target = self._target_for(session, event.kind)
        if target is None:
            return self._discard(event, f"no transition from {session.status.value}")
        status, reason = target
        self._apply(session, status, reason)
        return session.model_copy(deep=True)

    def _ingest_incoming(self, event: SignalingEvent) -> IngestResult:
        session = self._session

        if session is not None and session.id == event.session_id:
            if event.caller and session.initiator != UNKNOWN_CALLER and event.caller != session.initiator:
                logger.error(f"Identity mismatch for {session.id}: expected {session.initiator}, got {event.caller}")
                self._apply(session, CallStatus.FAILED, EndReason.ERROR)
                return session.model_copy(deep=True)
            return self._discard(event, "duplicate incoming event")

        if session is not None and not session.is_terminal:
            logger.warning(f"Busy: rejecting incoming call {event.session_id} while {session.id} is {session.status.value}")
            self._remember_terminated(event.session_id)
            self._spawn(self._send_checked(Intent(session_id=event.session_id, kind=IntentKind.DECLINE, reason="busy")))
            return StaleEventDiscarded(event, "busy")

        caller = event.caller or UNKNOWN_CALLER
        participants = [p for p in dict.fromkeys([caller, *event.participants]) if p != self.local_identity]
        new_session = CallSession(
            id=event.session_id,
            direction=CallDirection.INCOMING,
            call_type=event.call_type,
            participants=participants,
            initiator=caller,
            group_id=event.group_id,
        )
        self._install(new_session)
        return new_session.model_copy(deep=True)

    @staticmethod
    def _target_for(session: CallSession, kind: EventKind):
        status = session.status
        pending = status in (CallStatus.RINGING, CallStatus.ANSWERING)

        if kind is EventKind.ANSWERED:
            if status is CallStatus.ANSWERING or (status is CallStatus.RINGING and session.direction is CallDirection.OUTGOING):
                return CallStatus.ACTIVE, None
        elif kind is EventKind.ANSWERED_ELSEWHERE:
            if pending and session.direction is CallDirection.INCOMING:
                return CallStatus.CANCELED, EndReason.ANSWERED_ELSEWHERE
        elif kind in (EventKind.DECLINED, EventKind.DECLINED_ELSEWHERE):
            if pending:
                return CallStatus.DECLINED, EndReason.REMOTE_DECLINED
        elif kind in (EventKind.CANCELED, EventKind.ENDED):
            if pending:
                return CallStatus.CANCELED, EndReason.REMOTE_CANCELED
            if status is CallStatus.ACTIVE:
                return CallStatus.ENDED, EndReason.REMOTE_HANGUP
        return None

    async def _ingest_malformed(self, event: Any, error: ValidationError) -> IngestResult:
        session_id = None
        if isinstance(event, dict):
            session_id = event.get("sessionId") or event.get("session_id")
        async with self._lock:
            session = self._session
            if session is not None and session_id == session.id and not session.is_terminal:
                logger.error(f"Malformed event for {session.id}: {error.error_count()} validation error(s)")
                self._apply(session, CallStatus.FAILED, EndReason.ERROR)
                return session.model_copy(deep=True)
        logger.warning(f"Discarding malformed event: {error.error_count()} validation error(s)")
        return StaleEventDiscarded(event, "malformed")

    def _discard(self, event: SignalingEvent, reason: str) -> StaleEventDiscarded:
        logger.info(f"Discarding {event.kind.value} event for {event.session_id}: {reason}")
        return StaleEventDiscarded(event, reason)

    # ===== Internal: outbound =====

    async def _send_checked(self, intent: Intent, timeout: Optional[float] = None) -> Optional[str]:
        """Send an intent; returns None when accepted, otherwise the reason."""
        try:
            if timeout is None:
                result = await self._channel.send(intent)
            else:
                result = await asyncio.wait_for(self._channel.send(intent), timeout)
        except ChannelRejectionError as e:
            return e.reason
        except asyncio.TimeoutError:
            return f"no acknowledgement within {timeout}s"
        if not result.accepted:
            return result.reason or "rejected"
        return None

    async def _send_answer(self, session: CallSession) -> None:
        error = await self._send_checked(Intent(session_id=session.id, kind=IntentKind.ANSWER), self.answer_timeout)
        async with self._lock:
            if not self._is_current(session, CallStatus.ANSWERING):
                logger.info(f"Ignoring answer acknowledgement for {session.id}: session is {session.status.value}")
                return
            if error is None:
                self._apply(session, CallStatus.ACTIVE)
            else:
                logger.error(f"Answer for {session.id} failed: {error}")
                self._apply(session, CallStatus.FAILED, EndReason.ERROR)

    async def _send_decline(self, session: CallSession, outcome: asyncio.Future) -> None:
        try:
            error = await self._send_checked(Intent(session_id=session.id, kind=IntentKind.DECLINE), self.answer_timeout)
            if error is not None:
                logger.warning(f"Decline for {session.id} not acknowledged ({error}); call stays declined")
        finally:
            if self._decline_outcome is outcome:
                self._decline_outcome = None
                self._declining_id = None
            if not outcome.done():
                outcome.set_result(session.model_copy(deep=True))

    # ===== Internal: state =====

    def _install(self, session: CallSession) -> None:
        previous = self._session
        if previous is not None:
            logger.info(f"Session {previous.id} ({previous.status.value}) superseded by {session.id}")
        self._grace_timer.cancel()
        self._session = session
        self._ring_timer.arm(self.ring_timeout, self._on_ring_timeout, session.id)
        logger.info(f"Session {session.id}: new {session.direction.value} {session.call_type.value} call ringing")
        self._publish(Transition(session=session.model_copy(deep=True)))

    def _apply(self, session: CallSession, target: CallStatus, reason: Optional[EndReason] = None) -> None:
        previous = session.status
        if not can_transition(previous, target):
            raise InvalidStateError(f"move to {target.value}", session.id, previous.value)

        session.status = target
        now = utcnow()
        if previous is CallStatus.RINGING:
            self._ring_timer.cancel()
        if target is CallStatus.ACTIVE:
            session.answered_at = now
            if self._media is not None:
                self._media.start(session.model_copy(deep=True))
        if previous is CallStatus.ACTIVE and self._media is not None:
            self._media.stop(session.model_copy(deep=True))
        if target.is_terminal:
            session.ended_at = now
            session.end_reason = reason
            self._remember_terminated(session.id)
            self._grace_timer.arm(self.terminal_grace, self._on_grace_expired, session.id)

        suffix = f" ({reason.value})" if reason else ""
        logger.info(f"Session {session.id}: {previous.value} -> {target.value}{suffix}")

        if previous is CallStatus.ANSWERING:
            self._settle_answer(session)
        self._publish(Transition(session=session.model_copy(deep=True), previous=previous))

    def _settle_answer(self, session: CallSession) -> None:
        outcome, self._answer_outcome = self._answer_outcome, None
        send, self._answer_send = self._answer_send, None
        if send is not None and send is not asyncio.current_task() and not send.done():
            # the ack no longer matters; the session already moved on
            send.cancel()
        if outcome is not None and not outcome.done():
            outcome.set_result(session.model_copy(deep=True))

    def _publish(self, transition: Transition) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(transition)
            except Exception:
                logger.exception(f"Subscriber failed on {transition.session.id} -> {transition.current.value}")

    def _require(self, session_id: str, action: str) -> CallSession:
        session = self._session
        if session is None:
            raise InvalidStateError(action, session_id, detail="no current session")
        if session.id != session_id:
            raise InvalidStateError(action, session_id, detail=f"current session is {session.id}")
        if session.is_terminal:
            raise InvalidStateError(action, session_id, session.status.value)
        return session

    @staticmethod
    def _require_status(session: CallSession, action: str, *allowed: CallStatus) -> None:
        if session.status not in allowed:
            raise InvalidStateError(action, session.id, session.status.value)

    def _is_current(self, session: CallSession, status: CallStatus) -> bool:
        return self._session is session and session.status is status

    def _remember_terminated(self, session_id: str) -> None:
        self._terminated[session_id] = None
        self._terminated.move_to_end(session_id)
        while len(self._terminated) > self.stale_memory:
            self._terminated.popitem(last=False)

    def _clear_slot(self) -> None:
        self._grace_timer.cancel()
        if self._session is not None:
            logger.info(f"Session {self._session.id} cleared")
        self._session = None

    # ===== Internal: timers and tasks =====

    def _on_ring_timeout(self, session_id: str) -> None:
        self._spawn(self._expire_ringing(session_id))

    async def _expire_ringing(self, session_id: str) -> None:
        async with self._lock:
            session = self._session
            if session is None or session.id != session_id or session.status is not CallStatus.RINGING:
                logger.debug(f"Ring timeout for {session_id} no longer applies")
                return
            self._apply(session, CallStatus.MISSED, EndReason.TIMEOUT)
            outgoing = session.direction is CallDirection.OUTGOING
        if outgoing:
            await self._send_checked(Intent(session_id=session_id, kind=IntentKind.CANCEL, reason="timeout"))

    def _on_grace_expired(self, session_id: str) -> None:
        self._spawn(self._expire_terminal(session_id))

    async def _expire_terminal(self, session_id: str) -> None:
        async with self._lock:
            session = self._session
            if session is not None and session.id == session_id and session.is_terminal:
                self._clear_slot()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()!r}")
