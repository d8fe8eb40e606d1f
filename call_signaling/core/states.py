from enum import Enum


class CallStatus(str, Enum):
    """
    Represents the lifecycle states of a call session on this device.

    States:
    - RINGING: Call has been signaled but not yet answered, declined or canceled.
    - ANSWERING: Local answer was sent; awaiting confirmation.
    - ACTIVE: Call is connected; media is running.
    - DECLINED: Call was declined locally or by the remote side.
    - CANCELED: Caller gave up before the call became active.
    - MISSED: Ring timeout elapsed with no action.
    - ENDED: An active call was hung up.
    - FAILED: Unrecoverable signaling error.
    """
    RINGING = "ringing"
    ANSWERING = "answering"
    ACTIVE = "active"
    DECLINED = "declined"
    CANCELED = "canceled"
    MISSED = "missed"
    ENDED = "ended"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


class CallDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class CallType(str, Enum):
    VOICE = "voice"
    VIDEO = "video"


class EndReason(str, Enum):
    REMOTE_DECLINED = "remote-declined"
    REMOTE_CANCELED = "remote-canceled"
    REMOTE_HANGUP = "remote-hangup"
    ANSWERED_ELSEWHERE = "answered-elsewhere"
    LOCAL_DECLINED = "local-declined"
    LOCAL_CANCELED = "local-canceled"
    LOCAL_HANGUP = "local-hangup"
    MEDIA_CLOSED = "media-closed"
    TIMEOUT = "timeout"
    ERROR = "error"


class EventKind(str, Enum):
    """Inbound call-lifecycle events pushed by the remote party or backend."""
    INCOMING = "incoming"
    ANSWERED = "answered"
    ANSWERED_ELSEWHERE = "answered-elsewhere"
    DECLINED = "declined"
    DECLINED_ELSEWHERE = "declined-elsewhere"
    CANCELED = "canceled"
    ENDED = "ended"


class IntentKind(str, Enum):
    """Outbound intents sent through the signaling channel."""
    INVITE = "invite"
    ANSWER = "answer"
    DECLINE = "decline"
    HANG_UP = "hangUp"
    CANCEL = "cancel"


TERMINAL_STATES = frozenset({
    CallStatus.DECLINED,
    CallStatus.CANCELED,
    CallStatus.MISSED,
    CallStatus.ENDED,
    CallStatus.FAILED,
})

# RINGING -> ACTIVE is the outgoing path (remote answered our invite)
ALLOWED_TRANSITIONS = {
    CallStatus.RINGING: frozenset({
        CallStatus.ANSWERING,
        CallStatus.ACTIVE,
        CallStatus.DECLINED,
        CallStatus.CANCELED,
        CallStatus.MISSED,
        CallStatus.FAILED,
    }),
    CallStatus.ANSWERING: frozenset({
        CallStatus.ACTIVE,
        CallStatus.DECLINED,
        CallStatus.CANCELED,
        CallStatus.FAILED,
    }),
    CallStatus.ACTIVE: frozenset({
        CallStatus.ENDED,
        CallStatus.FAILED,
    }),
}


def can_transition(current: CallStatus, target: CallStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())
