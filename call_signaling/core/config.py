from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "Call Signaling Service"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/v1"

    # Identity of the user signed in on this device
    DEVICE_IDENTITY: str = "local-device"

    # Call lifecycle timing
    RING_TIMEOUT_SECONDS: float = 30.0
    ANSWER_TIMEOUT_SECONDS: float = 10.0
    TERMINAL_GRACE_SECONDS: float = 5.0
    STALE_SESSION_MEMORY: int = 128

    # Signaling transport: "webhook" (events pushed to /v1/signaling/events),
    # "polling" (events pulled from the backend feed) or "memory" (loopback)
    SIGNALING_TRANSPORT: str = "webhook"
    SIGNALING_BASE_URL: str = "http://127.0.0.1:3002"
    POLL_INTERVAL_SECONDS: float = 2.0

    # Reconnect backoff (2^n between min and max)
    RECONNECT_MAX_ATTEMPTS: int = 5
    RECONNECT_BACKOFF_MIN: float = 1.0
    RECONNECT_BACKOFF_MAX: float = 30.0

    TYPING_REFRESH_SECONDS: float = 10.0

    # Call history. SQLite by default for local development
    DATABASE_URL: str = "sqlite+aiosqlite:///./call_signaling.db"

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @model_validator(mode="after")
    def check_timing(self) -> "Settings":
        for name in ("RING_TIMEOUT_SECONDS", "ANSWER_TIMEOUT_SECONDS", "TERMINAL_GRACE_SECONDS", "POLL_INTERVAL_SECONDS"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be greater than zero")
        if self.RECONNECT_BACKOFF_MIN > self.RECONNECT_BACKOFF_MAX:
            raise ValueError("RECONNECT_BACKOFF_MIN must not exceed RECONNECT_BACKOFF_MAX")
        if self.SIGNALING_TRANSPORT not in ("webhook", "polling", "memory"):
            raise ValueError(f"Unknown SIGNALING_TRANSPORT '{self.SIGNALING_TRANSPORT}'")
        return self


settings = Settings()
