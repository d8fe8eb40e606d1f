import logging
from typing import Iterable, List, Optional

import httpx
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from call_signaling.models.session import Intent, SendResult
from call_signaling.services.channel import SignalingChannel
from call_signaling.services.timers import Poller

logger = logging.getLogger(__name__)


class HttpSignalingChannel(SignalingChannel):
    """
    Signaling channel backed by the HTTP signaling backend.

    Inbound events either arrive via deliver() (webhook push) or are pulled
    from the cursor-based events feed when polling is enabled. Outbound
    intents are POSTed once and never retried: retrying an "answer" whose
    first attempt may have landed is ambiguous.

    Feed reads retry transport errors with exponential backoff. The first
    successful read after a failure counts as a reconnect and triggers
    reconciliation against the backend's active sessions.
    """

    def __init__(
        self,
        base_url: str,
        device_identity: str,
        *,
        poll: bool = False,
        poll_interval: float = 2.0,
        max_attempts: int = 5,
        backoff_min: float = 1.0,
        backoff_max: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__()
        self.device_identity = device_identity
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=10.0)
        self._owns_client = client is None
        self._cursor: Optional[str] = None
        self._disconnected = False
        self._poller = Poller(self.poll_once, poll_interval, name="signaling-feed") if poll else None

    @classmethod
    def from_settings(cls, settings, client: Optional[httpx.AsyncClient] = None) -> "HttpSignalingChannel":
        return cls(
            settings.SIGNALING_BASE_URL,
            settings.DEVICE_IDENTITY,
            poll=settings.SIGNALING_TRANSPORT == "polling",
            poll_interval=settings.POLL_INTERVAL_SECONDS,
            max_attempts=settings.RECONNECT_MAX_ATTEMPTS,
            backoff_min=settings.RECONNECT_BACKOFF_MIN,
            backoff_max=settings.RECONNECT_BACKOFF_MAX,
            client=client,
        )

    @property
    def connected(self) -> bool:
        return not self._disconnected

    async def start(self) -> None:
        if self._poller is not None:
            self._poller.start()

    async def stop(self) -> None:
        if self._poller is not None:
            await self._poller.stop()
        if self._owns_client:
            await self._client.aclose()

    async def send(self, intent: Intent) -> SendResult:
        payload = intent.model_dump(mode="json", by_alias=True, exclude_none=True)
        payload["device"] = self.device_identity
        try:
            response = await self._client.post("/signaling/intents", json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Intent {intent.kind.value} for {intent.session_id} not delivered: {e}")
            self._disconnected = True
            return SendResult(accepted=False, reason=f"transport error: {e.__class__.__name__}")

        if response.is_success:
            return SendResult(accepted=True)
        reason = _error_reason(response)
        logger.warning(f"Intent {intent.kind.value} for {intent.session_id} rejected ({response.status_code}): {reason}")
        return SendResult(accepted=False, reason=reason)

    async def poll_once(self) -> int:
        """Pull one page of the events feed and deliver it. Returns the number of events."""
        params = {"device": self.device_identity}
        if self._cursor is not None:
            params["since"] = self._cursor
        try:
            response = await self._get_with_backoff("/signaling/events", params)
        except httpx.HTTPError:
            self._disconnected = True
            raise

        if self._disconnected:
            self._disconnected = False
            await self.reconcile_with(await self.active_session_ids())

        body = response.json()
        events = body.get("events", [])
        self._cursor = body.get("cursor", self._cursor)
        for event in events:
            await self.deliver(event)
        return len(events)

    async def active_session_ids(self) -> List[str]:
        response = await self._get_with_backoff("/signaling/sessions/active", {"device": self.device_identity})
        return _session_ids(response.json())

    async def reconnect(self) -> None:
        """Force a reconciliation, e.g. when the app returns to the foreground."""
        await self.reconcile_with(await self.active_session_ids())

    async def _get_with_backoff(self, path: str, params: dict) -> httpx.Response:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.backoff_min, max=self.backoff_max),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self._client.get(path, params=params)
                response.raise_for_status()
        return response


def _error_reason(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or response.reason_phrase)
    return response.reason_phrase


def _session_ids(body) -> List[str]:
    sessions: Iterable = body.get("sessions", []) if isinstance(body, dict) else body
    ids = []
    for item in sessions:
        if isinstance(item, str):
            ids.append(item)
        elif isinstance(item, dict) and item.get("id"):
            ids.append(str(item["id"]))
    return ids
