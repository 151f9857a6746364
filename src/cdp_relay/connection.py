"""Upstream connection state machine."""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any


class ConnectionStatus(Enum):
    """Connection status states."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    ATTACHED = "ATTACHED"


@dataclass
class ConnectionState:
    """
    Tracks the single upstream CDP connection.

    State machine:
        DISCONNECTED -> CONNECTING(1) -> ATTACHED
                        CONNECTING(n) -> CONNECTING(n+1)   (attach failed)
        ATTACHED     -> DISCONNECTED                       (transport dropped)

    ``attempt`` is the retry bookkeeping for the current failure sequence
    and is only changed by these transitions.
    """

    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    attempt: int = 0
    handle: Any = None
    target_title: str | None = None
    target_url: str | None = None
    error_message: str | None = None
    attached_at: float | None = None
    generation: int = 0

    @property
    def is_attached(self) -> bool:
        return self.status == ConnectionStatus.ATTACHED

    def set_connecting(self, attempt: int) -> None:
        """Transition to CONNECTING(attempt)."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        self.status = ConnectionStatus.CONNECTING
        self.attempt = attempt
        self.handle = None
        self.attached_at = None

    def set_attached(self, handle: Any, title: str | None = None, url: str | None = None) -> int:
        """
        Transition to ATTACHED.

        Resets the attempt counter and starts a new generation; events
        tagged with an older generation belong to a superseded handle.

        Returns:
            The new generation number
        """
        self.status = ConnectionStatus.ATTACHED
        self.attempt = 0
        self.handle = handle
        self.target_title = title
        self.target_url = url
        self.error_message = None
        self.attached_at = time.time()
        self.generation += 1
        return self.generation

    def set_failed(self, message: str) -> None:
        """Record the last attach failure without leaving CONNECTING."""
        self.error_message = message

    def set_disconnected(self) -> None:
        """Transition to DISCONNECTED; the current handle is superseded."""
        self.status = ConnectionStatus.DISCONNECTED
        self.handle = None
        self.attached_at = None
        self.generation += 1

    def is_current(self, generation: int) -> bool:
        """Whether ``generation`` belongs to the currently attached handle."""
        return self.is_attached and generation == self.generation

    def to_dict(self) -> dict:
        """Serialize state to dictionary."""
        return {
            "status": self.status.value,
            "attempt": self.attempt,
            "target_title": self.target_title,
            "target_url": self.target_url,
            "error_message": self.error_message,
            "attached_at": self.attached_at,
        }
