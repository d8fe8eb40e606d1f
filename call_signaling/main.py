import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from call_signaling.core.config import Settings, settings as default_settings
from call_signaling.core.exceptions import InvalidStateError
from call_signaling.core.logging import setup_logging
from call_signaling.websocket import supervisor
from call_signaling.api import calls, signaling
from call_signaling.db.base import Base
from call_signaling.db.session import create_engine, create_session_factory
from call_signaling.services.channel import InMemorySignalingChannel
from call_signaling.services.history import CallHistoryRecorder
from call_signaling.services.http_channel import HttpSignalingChannel
from call_signaling.services.media import LoggingMediaController
from call_signaling.services.navigation import NavigationBridge
from call_signaling.services.presence import http_typing_fetcher
from call_signaling.services.store import CallSessionStore

logger = logging.getLogger(__name__)


def build_channel(settings: Settings):
    if settings.SIGNALING_TRANSPORT == "memory":
        return InMemorySignalingChannel()
    return HttpSignalingChannel.from_settings(settings)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: history tables, then the call stack wired explicitly
        engine = create_engine(settings.DATABASE_URL)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        channel = build_channel(settings)
        store = CallSessionStore.from_settings(channel, settings, media=LoggingMediaController())
        history = CallHistoryRecorder(create_session_factory(engine))
        hub = supervisor.NavigationHub()
        typing_client = httpx.AsyncClient(base_url=settings.SIGNALING_BASE_URL, timeout=5.0)
        bridge = NavigationBridge(store, hub)

        store.subscribe(history.on_transition)
        store.subscribe(hub.on_transition)
        bridge.attach()

        app.state.channel = channel
        app.state.store = store
        app.state.history = history
        app.state.hub = hub
        app.state.bridge = bridge
        app.state.settings = settings
        app.state.typing_fetch = http_typing_fetcher(typing_client)

        await channel.start()
        logger.info(f"{settings.PROJECT_NAME} ready for {settings.DEVICE_IDENTITY} ({settings.SIGNALING_TRANSPORT} transport)")
        yield
        # Shutdown
        bridge.detach()
        await channel.stop()
        await store.close()
        await history.drain()
        await typing_client.aclose()
        await engine.dispose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        lifespan=lifespan
    )

    @app.exception_handler(InvalidStateError)
    async def invalid_state_handler(request: Request, exc: InvalidStateError):
        logger.warning(f"Rejected {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": str(exc), "action": exc.action, "session_id": exc.session_id, "status": exc.status},
        )

    app.include_router(supervisor.router, prefix="/stream", tags=["websocket_stream"])
    app.include_router(calls.router, prefix=settings.API_V1_STR, tags=["calls"])
    app.include_router(signaling.router, prefix=settings.API_V1_STR, tags=["signaling"])

    @app.get("/")
    async def root():
        return {"message": f"{settings.PROJECT_NAME} is running"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("call_signaling.main:app", host="0.0.0.0", port=8000, log_level="info")
