"""Relay error taxonomy."""


class RelayError(Exception):
    """Base class for all relay errors."""


class AttachError(RelayError):
    """Target discovery, attach, or domain activation failed. Retryable."""


class TransportDisconnect(RelayError):
    """The upstream CDP transport dropped mid-session."""


class SubscriberSendError(RelayError):
    """Delivery to one subscriber failed. Never leaves the hub."""

    def __init__(self, message: str = "send failed", subscriber_id: str | None = None):
        super().__init__(f"{subscriber_id}: {message}" if subscriber_id else message)
        self.subscriber_id = subscriber_id


class AuthorizationError(RelayError):
    """A WebSocket upgrade carried a bad origin or token."""

    status = 401


class FatalStartupError(RelayError):
    """Unrecoverable condition; the relay shuts down with a non-zero exit code."""
