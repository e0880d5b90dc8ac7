from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    heartbeat_interval: float = 30.0
    watch_interval: float = 0.5
    buffer_size: int = 1000
    cors_origins: list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "WORKFLOW_FEED_"
        extra = "ignore"


class ConnectionSettings(BaseSettings):
    """Timing and retry policy for the client connection state machine."""

    base_url: str = "http://localhost:8000"
    sse_enabled: bool = True
    connect_timeout: float = 5.0
    silence_timeout: float = 60.0
    poll_interval: float = 2.0
    poll_timeout: float = 10.0
    backoff_delays: list[float] = [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]
    max_reconnect_attempts: int = 10

    class Config:
        env_file = ".env"
        env_prefix = "WORKFLOW_FEED_CLIENT_"
        extra = "ignore"
