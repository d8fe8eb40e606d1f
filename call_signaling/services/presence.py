import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from call_signaling.services.timers import Poller

logger = logging.getLogger(__name__)

TypingFetcher = Callable[[Optional[str], Optional[str]], Awaitable[List[Dict[str, Any]]]]

MIN_REFRESH_SECONDS = 10.0


class TypingStatusPoller:
    """
    Short-interval typing indicator for one chat or group.

    Uses the same cancelable polling as the signaling feed: the poller is
    owned by whoever opened the conversation and stopped when it closes,
    so a late response cannot update a conversation that is gone.
    """

    def __init__(
        self,
        fetch: TypingFetcher,
        chat_id: Optional[str] = None,
        group_id: Optional[str] = None,
        refresh_interval: float = MIN_REFRESH_SECONDS,
        initial_delay: float = 1.0,
        min_interval: float = MIN_REFRESH_SECONDS,
        on_change: Optional[Callable[["TypingStatusPoller"], Any]] = None,
    ):
        if not chat_id and not group_id:
            raise ValueError("chat_id or group_id is required")
        self._fetch = fetch
        self._on_change = on_change
        self.chat_id = chat_id
        self.group_id = group_id
        self.typing_users: List[Dict[str, Any]] = []
        self._poller = Poller(
            self.refresh,
            max(refresh_interval, min_interval),
            initial_delay=initial_delay,
            name=f"typing-{chat_id or group_id}",
        )

    @classmethod
    def from_settings(cls, fetch: TypingFetcher, settings, chat_id: Optional[str] = None, group_id: Optional[str] = None, **kwargs) -> "TypingStatusPoller":
        return cls(fetch, chat_id=chat_id, group_id=group_id, refresh_interval=settings.TYPING_REFRESH_SECONDS, **kwargs)

    async def __aenter__(self) -> "TypingStatusPoller":
        self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    def start(self) -> None:
        self._poller.start()

    async def stop(self) -> None:
        await self._poller.stop()
        self.typing_users = []

    async def refresh(self) -> None:
        previous = self.typing_users
        try:
            self.typing_users = list(await self._fetch(self.chat_id, self.group_id))
        except httpx.HTTPError as e:
            logger.debug(f"Typing status unavailable: {e}")
            self.typing_users = []
        except Exception as e:
            logger.warning(f"Typing status fetch failed: {e}")
            self.typing_users = []
        if self._on_change is not None and self.typing_users != previous:
            self._on_change(self)

    def describe(self) -> Optional[str]:
        names = [_display_name(entry) for entry in self.typing_users]
        if not names:
            return None
        if len(names) == 1:
            return f"{names[0]} is typing"
        if len(names) == 2:
            return f"{names[0]} and {names[1]} are typing"
        return f"{len(names)} people are typing"


def _display_name(entry: Dict[str, Any]) -> str:
    user = entry.get("user", entry)
    return user.get("display_name") or user.get("username") or "Someone"


def http_typing_fetcher(client: httpx.AsyncClient) -> TypingFetcher:
    """Fetcher reading GET /typing?chatId=..&groupId=.. from the signaling backend."""

    async def fetch(chat_id: Optional[str], group_id: Optional[str]) -> List[Dict[str, Any]]:
        params = {k: v for k, v in (("chatId", chat_id), ("groupId", group_id)) if v}
        response = await client.get("/typing", params=params)
        response.raise_for_status()
        return response.json().get("typingUsers", [])

    return fetch
