"""
Signaling channel contract.

A channel delivers inbound call-lifecycle events to registered handlers
and accepts outbound intents. Delivery order is not guaranteed; the
store keys every effect on session id + target status.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional, Tuple, Union

from call_signaling.core.exceptions import ChannelRejectionError
from call_signaling.models.session import Intent, SendResult, SignalingEvent

logger = logging.getLogger(__name__)

RawEvent = Union[SignalingEvent, Mapping[str, Any]]
EventHandler = Callable[[RawEvent], Awaitable[Any]]
ReconnectHandler = Callable[[Iterable[str]], Awaitable[Any]]


class SignalingChannel(ABC):

    def __init__(self):
        self._event_handlers: List[EventHandler] = []
        self._reconnect_handlers: List[ReconnectHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        """Register a handler invoked once per inbound lifecycle event."""
        self._event_handlers.append(handler)

    def on_reconnect(self, handler: ReconnectHandler) -> None:
        """Register a handler invoked with the backend's active session ids after a reconnect."""
        self._reconnect_handlers.append(handler)

    async def deliver(self, event: RawEvent) -> None:
        """Hand one inbound event to every registered handler."""
        for handler in list(self._event_handlers):
            await handler(event)

    async def reconcile_with(self, active_session_ids: Iterable[str]) -> None:
        """Report the sessions the backend still considers live after a reconnect."""
        ids = set(active_session_ids)
        logger.info(f"Channel reconnected; backend reports {len(ids)} active session(s)")
        for handler in list(self._reconnect_handlers):
            await handler(ids)

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def send(self, intent: Intent) -> SendResult:
        """
        Send an outbound intent.

        Returns SendResult(accepted=False) or raises ChannelRejectionError
        when the remote side refuses it.
        """


class InMemorySignalingChannel(SignalingChannel):
    """
    Loopback channel used for local development and tests.

    With auto_accept every intent is acknowledged immediately. Otherwise
    sends park on a future until resolve() is called, which lets callers
    control exactly when an acknowledgement lands.
    """

    def __init__(self, auto_accept: bool = True):
        super().__init__()
        self.auto_accept = auto_accept
        self.sent: List[Intent] = []
        self.pending: List[Tuple[Intent, asyncio.Future]] = []

    async def send(self, intent: Intent) -> SendResult:
        self.sent.append(intent)
        logger.debug(f"Loopback intent {intent.kind.value} for {intent.session_id}")
        if self.auto_accept:
            return SendResult(accepted=True)
        future = asyncio.get_running_loop().create_future()
        self.pending.append((intent, future))
        return await future

    def resolve(self, index: int = 0, accepted: bool = True, reason: Optional[str] = None) -> Intent:
        """Acknowledge (or reject) a parked intent."""
        intent, future = self.pending.pop(index)
        if not future.done():
            future.set_result(SendResult(accepted=accepted, reason=reason))
        return intent

    def fail(self, index: int = 0, reason: str = "rejected") -> Intent:
        """Make a parked send raise ChannelRejectionError."""
        intent, future = self.pending.pop(index)
        if not future.done():
            future.set_exception(ChannelRejectionError(intent, reason))
        return intent

    def sent_kinds(self) -> List[str]:
        return [intent.kind.value for intent in self.sent]
