from typing import Optional


class InvalidStateError(Exception):
    """An action was attempted against a session in the wrong status, or with no session."""

    def __init__(self, action: str, session_id: Optional[str] = None, status: Optional[str] = None, detail: str = ""):
        self.action = action
        self.session_id = session_id
        self.status = status
        message = f"Cannot {action}"
        if session_id:
            message += f" session {session_id}"
        if status:
            message += f" in status '{status}'"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ChannelRejectionError(Exception):
    """The remote side or backend rejected an outbound intent."""

    def __init__(self, intent=None, reason: str = "rejected"):
        self.intent = intent
        self.reason = reason
        super().__init__(reason)


class StaleEventDiscarded:
    """
    Outcome of ingesting an event that cannot apply to the current session.
    Returned and logged, never raised.
    """

    def __init__(self, event, reason: str):
        self.event = event
        self.reason = reason

    def __repr__(self) -> str:
        return f"StaleEventDiscarded(reason={self.reason!r})"
