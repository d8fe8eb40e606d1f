"""
Websocket stream for presentation clients.

Each connected client receives a state snapshot on connect, then every
store transition and every navigation command. Clients send back
{"action": ..., "session_id": ...} messages that map onto store actions,
or watchTyping/unwatchTyping messages that open a typing poller for a
conversation until the client leaves it or disconnects.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Set, Tuple

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from call_signaling.core.exceptions import InvalidStateError
from call_signaling.models.session import Transition
from call_signaling.services.navigation import Screen
from call_signaling.services.presence import TypingFetcher, TypingStatusPoller

router = APIRouter()
logger = logging.getLogger(__name__)


class NavigationHub:
    """Fans out transitions and navigation commands to connected clients."""

    def __init__(self):
        self._queues: Set[asyncio.Queue] = set()

    @property
    def client_count(self) -> int:
        return len(self._queues)

    def connect(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.add(queue)
        return queue

    def disconnect(self, queue: asyncio.Queue) -> None:
        self._queues.discard(queue)

    def broadcast(self, message: Dict[str, Any]) -> None:
        for queue in list(self._queues):
            queue.put_nowait(message)

    # Store subscriber
    def on_transition(self, transition: Transition) -> None:
        self.broadcast({
            "type": "transition",
            "previous": transition.previous.value if transition.previous else None,
            "session": transition.session.model_dump(mode="json"),
        })

    # Navigator protocol
    def push(self, screen: Screen, params: Dict[str, Any]) -> None:
        self.broadcast({"type": "navigate", "action": "push", "screen": screen.value, "params": params})

    def replace(self, screen: Screen, params: Dict[str, Any]) -> None:
        self.broadcast({"type": "navigate", "action": "replace", "screen": screen.value, "params": params})

    def back(self) -> None:
        self.broadcast({"type": "navigate", "action": "back"})

    def notify(self, message: str) -> None:
        self.broadcast({"type": "notice", "message": message})


class TypingWatches:
    """Typing pollers opened by one client, keyed by conversation. Closed with the connection."""

    def __init__(self, fetch: TypingFetcher, settings, queue: asyncio.Queue):
        self._fetch = fetch
        self._settings = settings
        self._queue = queue
        self._pollers: Dict[Tuple[Optional[str], Optional[str]], TypingStatusPoller] = {}

    async def watch(self, chat_id: Optional[str], group_id: Optional[str]) -> TypingStatusPoller:
        key = (chat_id, group_id)
        poller = self._pollers.get(key)
        if poller is None:
            poller = TypingStatusPoller.from_settings(
                self._fetch, self._settings, chat_id=chat_id, group_id=group_id, on_change=self._publish
            )
            self._pollers[key] = poller
            await poller.refresh()
            poller.start()
        return poller

    async def unwatch(self, chat_id: Optional[str], group_id: Optional[str]) -> bool:
        poller = self._pollers.pop((chat_id, group_id), None)
        if poller is None:
            return False
        await poller.stop()
        return True

    async def close(self) -> None:
        pollers = list(self._pollers.values())
        self._pollers.clear()
        for poller in pollers:
            await poller.stop()

    def _publish(self, poller: TypingStatusPoller) -> None:
        self._queue.put_nowait({
            "type": "typing",
            "chat_id": poller.chat_id,
            "group_id": poller.group_id,
            "text": poller.describe(),
            "users": poller.typing_users,
        })


ACTIONS = {
    "answer": "answer",
    "decline": "decline",
    "hangUp": "hang_up",
    "hang_up": "hang_up",
    "cancel": "cancel",
    "acknowledge": "acknowledge",
    "mute": "toggle_mute",
    "video": "toggle_video",
}

# handled per connection rather than by the store
TYPING_ACTIONS = ("watchTyping", "unwatchTyping")


@router.websocket("/ws/{client_id}")
async def websocket_endpoint(websocket: WebSocket, client_id: str):
    await websocket.accept()
    store = websocket.app.state.store
    hub: NavigationHub = websocket.app.state.hub

    queue = hub.connect()
    typing = TypingWatches(websocket.app.state.typing_fetch, websocket.app.state.settings, queue)
    logger.info(f"Presentation client {client_id} connected")

    session = store.current_session
    await websocket.send_json({
        "type": "snapshot",
        "session": session.model_dump(mode="json") if session else None,
        "is_answering_call": store.is_answering_call,
        "is_declining_call": store.is_declining_call,
    })

    async def forward():
        while True:
            message = await queue.get()
            await websocket.send_json(message)

    async def receive():
        while True:
            data = await websocket.receive_json()
            if data.get("action") in TYPING_ACTIONS:
                await websocket.send_json(await _dispatch_typing(typing, data))
            else:
                await websocket.send_json(await _dispatch_action(store, data))

    tasks = [asyncio.create_task(forward()), asyncio.create_task(receive())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error(f"Stream for {client_id} failed: {exc!r}")
    finally:
        for task in tasks:
            task.cancel()
        await typing.close()
        hub.disconnect(queue)
        logger.info(f"Presentation client {client_id} disconnected")


async def _dispatch_action(store, data: Dict[str, Any]) -> Dict[str, Any]:
    action = data.get("action")
    session_id = data.get("session_id") or data.get("sessionId")
    method = ACTIONS.get(action)
    if method is None or not session_id:
        return {"type": "error", "action": action, "detail": "unknown action or missing session_id"}
    try:
        result = await getattr(store, method)(session_id)
    except InvalidStateError as e:
        return {"type": "error", "action": action, "detail": str(e)}
    if hasattr(result, "model_dump"):
        result = result.model_dump(mode="json")
    return {"type": "result", "action": action, "result": result}


async def _dispatch_typing(typing: TypingWatches, data: Dict[str, Any]) -> Dict[str, Any]:
    action = data["action"]
    chat_id = data.get("chat_id") or data.get("chatId")
    group_id = data.get("group_id") or data.get("groupId")
    if not chat_id and not group_id:
        return {"type": "error", "action": action, "detail": "chat_id or group_id is required"}
    if action == "unwatchTyping":
        return {"type": "result", "action": action, "result": {"stopped": await typing.unwatch(chat_id, group_id)}}
    poller = await typing.watch(chat_id, group_id)
    return {"type": "result", "action": action, "result": {"text": poller.describe(), "users": poller.typing_users}}
