import logging
from typing import Dict, Protocol

from call_signaling.models.session import CallSession

logger = logging.getLogger(__name__)


class MediaController(Protocol):
    """Audio/video transport capability started only while a call is active."""

    def start(self, session: CallSession) -> None: ...

    def stop(self, session: CallSession) -> None: ...

    def set_muted(self, session: CallSession, muted: bool) -> None: ...

    def set_video_enabled(self, session: CallSession, enabled: bool) -> None: ...


class LoggingMediaController:
    """Stand-in transport for deployments without a media stack; records what it was asked to do."""

    def __init__(self):
        self.running: Dict[str, CallSession] = {}

    def start(self, session: CallSession) -> None:
        logger.info(f"Starting {session.call_type.value} media for {session.id}")
        self.running[session.id] = session

    def stop(self, session: CallSession) -> None:
        if self.running.pop(session.id, None) is not None:
            logger.info(f"Stopping media for {session.id}")

    def set_muted(self, session: CallSession, muted: bool) -> None:
        logger.info(f"Microphone {'muted' if muted else 'unmuted'} for {session.id}")

    def set_video_enabled(self, session: CallSession, enabled: bool) -> None:
        logger.info(f"Camera {'enabled' if enabled else 'disabled'} for {session.id}")
