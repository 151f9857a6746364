"""Relay configuration."""

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class RelayConfig:
    """
    Configuration for the CDP relay.

    All settings can be overridden via environment variables.
    """

    # WebSocket feed
    host: str = field(default_factory=lambda: os.getenv("RELAY_HOST", "localhost"))
    port: int = field(default_factory=lambda: int(os.getenv("WS_PORT", "8080")))

    # HTTP side channel (/health)
    http_port: int = field(default_factory=lambda: int(os.getenv("HTTP_PORT", "8081")))

    # Chrome/CDP
    cdp_host: str = field(default_factory=lambda: os.getenv("CDP_HOST", "localhost"))
    cdp_port: int = field(default_factory=lambda: int(os.getenv("CDP_PORT", "9222")))
    network_buffer_bytes: int = field(
        default_factory=lambda: int(os.getenv("NETWORK_BUFFER_BYTES", "65536"))
    )
    metrics_interval_ms: int = field(
        default_factory=lambda: int(os.getenv("METRICS_INTERVAL_MS", "1000"))
    )

    # Upgrade authorization (empty = check disabled)
    allowed_origin: str = field(default_factory=lambda: os.getenv("ALLOWED_ORIGIN", ""))
    shared_secret: str = field(default_factory=lambda: os.getenv("SHARED_SECRET", ""))

    # Attach retry
    retry_interval_ms: int = field(
        default_factory=lambda: int(os.getenv("RETRY_INTERVAL_MS", "1000"))
    )
    max_retry_delay_ms: int = field(
        default_factory=lambda: int(os.getenv("MAX_RETRY_DELAY_MS", "0"))
    )
    max_retry_attempts: int = field(
        default_factory=lambda: int(os.getenv("MAX_RETRY_ATTEMPTS", "5"))
    )

    # Subscribers
    heartbeat_ms: int = field(default_factory=lambda: int(os.getenv("HEARTBEAT_MS", "15000")))
    subscriber_queue_size: int = field(
        default_factory=lambda: int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "256"))
    )

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())
    log_json: bool = field(default_factory=lambda: _env_bool("LOG_JSON"))

    def validate(self) -> None:
        """
        Reject settings the relay cannot run with.

        Raises:
            ValueError: on the first invalid setting
        """
        for name in ("port", "http_port", "cdp_port"):
            value = getattr(self, name)
            if not 0 <= value <= 65535:
                raise ValueError(f"{name} out of range: {value}")
        for name in (
            "retry_interval_ms",
            "max_retry_attempts",
            "heartbeat_ms",
            "metrics_interval_ms",
            "network_buffer_bytes",
            "subscriber_queue_size",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.max_retry_delay_ms < 0:
            raise ValueError(f"max_retry_delay_ms must be >= 0, got {self.max_retry_delay_ms}")

    @property
    def base_delay(self) -> float:
        """Backoff delay after the first failed attach (seconds)."""
        return self.retry_interval_ms / 1000

    @property
    def max_delay(self) -> float | None:
        """Backoff cap in seconds, None when uncapped."""
        return self.max_retry_delay_ms / 1000 if self.max_retry_delay_ms else None

    @property
    def heartbeat_interval(self) -> float:
        return self.heartbeat_ms / 1000

    @property
    def metrics_interval(self) -> float:
        return self.metrics_interval_ms / 1000

    @property
    def ws_url(self) -> str:
        """WebSocket feed URL."""
        return f"ws://{self.host}:{self.port}"

    @property
    def health_url(self) -> str:
        return f"http://{self.host}:{self.http_port}/health"
