"""
Routes the user between call screens as the store's session changes.

Exactly one navigation command per transition, and none when the screen
already on top reflects the store's state.
"""
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from call_signaling.core.states import CallDirection, CallStatus, CallType
from call_signaling.models.session import CallSession, Transition

logger = logging.getLogger(__name__)


class Screen(str, Enum):
    INCOMING_CALL = "incoming-call"
    CALL = "call"
    GROUP_CALL = "group-call"
    VIDEO_CALL = "video-call"


class Navigator(Protocol):
    def push(self, screen: Screen, params: Dict[str, Any]) -> None: ...

    def replace(self, screen: Screen, params: Dict[str, Any]) -> None: ...

    def back(self) -> None: ...

    def notify(self, message: str) -> None: ...


def call_screen_for(session: CallSession) -> Screen:
    if session.is_group_call:
        return Screen.GROUP_CALL
    if session.call_type is CallType.VIDEO:
        return Screen.VIDEO_CALL
    return Screen.CALL


class NavigationBridge:

    def __init__(self, store, navigator: Navigator):
        self._store = store
        self._navigator = navigator
        self._shown: Optional[Tuple[str, Screen]] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def shown(self) -> Optional[Tuple[str, Screen]]:
        """(session id, screen) currently presented for a call, if any."""
        return self._shown

    def attach(self) -> None:
        """Subscribe to the store and bring the screen in line with its current state."""
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self._store.subscribe(self.on_transition)
        session = self._store.current_session
        if session is not None and not session.is_terminal:
            self._show_for(session)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def on_transition(self, transition: Transition) -> None:
        session = transition.session
        if session.is_terminal:
            self._leave(session)
        else:
            self._show_for(session)

    def _show_for(self, session: CallSession) -> None:
        if session.status is CallStatus.ANSWERING:
            return
        if session.status is CallStatus.RINGING and session.direction is CallDirection.INCOMING:
            target = Screen.INCOMING_CALL
        else:
            target = call_screen_for(session)

        if self._shown == (session.id, target):
            return

        params = {"callId": session.id}
        if self._shown is not None and self._shown[0] == session.id:
            # never leave a stale ringing screen underneath the call screen
            logger.info(f"Replacing {self._shown[1].value} with {target.value} for {session.id}")
            self._navigator.replace(target, params)
        else:
            logger.info(f"Presenting {target.value} for {session.id}")
            self._navigator.push(target, params)
        self._shown = (session.id, target)

    def _leave(self, session: CallSession) -> None:
        if self._shown is None or self._shown[0] != session.id:
            return
        logger.info(f"Leaving {self._shown[1].value} for {session.id} ({session.status.value})")
        self._shown = None
        self._navigator.back()
        if session.status is CallStatus.FAILED:
            self._navigator.notify("Call failed")

