# app/config.py
from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    # App
    APP_HOST: str = Field("0.0.0.0", description="Host to bind the app")
    APP_PORT: int = Field(8000, description="Port to run the app")
    ENV: str = Field("dev", description="Environment (dev|prod)")

    # Persistence (both optional: in-memory when unset)
    DB_URL: Optional[str] = Field(None, description="Database URL for flows and routes, e.g. sqlite:///./data/ivr.db")
    REDIS_URL: Optional[str] = Field(None, description="Redis URL for the shared session store")

    # Carrier / webhooks
    WEBHOOK_SECRET: Optional[str] = Field(None, description="Shared secret expected in X-Webhook-Secret")
    TWILIO_AUTH_TOKEN: Optional[str] = Field(None, description="Auth token used to validate X-Twilio-Signature")
    PUBLIC_BASE_URL: Optional[str] = Field(None, description="Public base URL used for TwiML callback actions")
    DEFAULT_VOICE: str = Field("alice", description="Voice tag used when neither node nor route sets one")
    DEFAULT_LANGUAGE: str = Field("en-US", description="Language used for speech and recognition")
    WEBHOOK_TIMEOUT_SECONDS: float = Field(8.0, description="Upper bound for answering one carrier callback")
    MAX_STEPS_PER_TURN: int = Field(25, description="Nodes evaluated in one turn before giving up")

    # Sessions
    SESSION_IDLE_TIMEOUT: int = Field(3600, description="Seconds without activity before a session is reclaimed")
    SESSION_SWEEP_INTERVAL: int = Field(60, description="Seconds between idle sweeps")
    SESSION_LOCK_TIMEOUT: float = Field(5.0, description="Seconds to wait for a distributed session lock")

    # Realtime events
    EVENTS_URL: Optional[str] = Field(None, description="WebSocket URL of the monitoring hub (ws://...)")
    EVENTS_BUFFER_SIZE: int = Field(100, description="Recent events kept for late subscribers")
    EVENTS_HEARTBEAT_INTERVAL: float = Field(30.0, description="Seconds between liveness pings")
    EVENTS_PING_TIMEOUT: float = Field(10.0, description="Seconds to wait for a pong")
    EVENTS_RECONNECT_BASE: float = Field(1.0, description="First reconnect delay in seconds")
    EVENTS_RECONNECT_MAX_DELAY: float = Field(30.0, description="Reconnect delay cap in seconds")
    EVENTS_MAX_RECONNECT_ATTEMPTS: int = Field(5, description="Consecutive reconnect attempts before giving up")

    # Demo bootstrap
    SAMPLE_FLOW_PATH: Optional[str] = Field(None, description="Flow JSON deployed at startup")
    SAMPLE_FLOW_NUMBER: Optional[str] = Field(None, description="Number routed to the sample flow")

    # Logging / misc
    LOG_LEVEL: str = Field("info", description="Logging level")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Singleton settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Return a singleton Settings instance (loads from .env automatically).
    Use `get_settings()` instead of importing Settings() directly so other modules
    share the same instance.
    """
    global _settings
    if _settings is None:
        _settings = Settings()  # loads from environment / .env
    return _settings
