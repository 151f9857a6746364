"""
Telemetry event model.

Immutable value objects for everything the relay pushes to viewers.
Each variant maps 1:1 onto a JSON text frame discriminated by ``kind``.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class NetworkRequestStarted:
    """A response header arrived for a network request (Network.responseReceived)."""

    kind: ClassVar[str] = "network"

    id: str | None = None
    url: str | None = None
    status: int | None = None
    resource_type: str | None = None
    protocol: str | None = None
    encoded_bytes_so_far: float | None = None
    timestamp: int = field(default_factory=now_ms)

    @classmethod
    def from_cdp(cls, params: dict) -> "NetworkRequestStarted":
        """Create from Network.responseReceived params."""
        response = params.get("response") or {}
        return cls(
            id=params.get("requestId"),
            url=response.get("url"),
            status=response.get("status"),
            resource_type=params.get("type"),
            protocol=response.get("protocol"),
            encoded_bytes_so_far=response.get("encodedDataLength"),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "NetworkRequestStarted":
        """Create from a wire frame dict."""
        return cls(
            id=data.get("id"),
            url=data.get("url"),
            status=data.get("status"),
            resource_type=data.get("type"),
            protocol=data.get("protocol"),
            encoded_bytes_so_far=data.get("encodedDataLength"),
            timestamp=data.get("ts", 0),
        )

    def to_dict(self) -> dict:
        """Serialize to dict for JSON transmission."""
        return {
            "kind": self.kind,
            "ts": self.timestamp,
            "id": self.id,
            "url": self.url,
            "status": self.status,
            "type": self.resource_type,
            "protocol": self.protocol,
            "encodedDataLength": self.encoded_bytes_so_far,
        }


@dataclass(frozen=True)
class NetworkRequestFinished:
    """A network request finished loading (Network.loadingFinished)."""

    kind: ClassVar[str] = "networkFinish"

    id: str | None = None
    encoded_bytes: float | None = None
    timestamp: int = field(default_factory=now_ms)

    @classmethod
    def from_cdp(cls, params: dict) -> "NetworkRequestFinished":
        """Create from Network.loadingFinished params."""
        return cls(
            id=params.get("requestId"),
            encoded_bytes=params.get("encodedDataLength"),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "NetworkRequestFinished":
        """Create from a wire frame dict."""
        return cls(
            id=data.get("id"),
            encoded_bytes=data.get("encodedDataLength"),
            timestamp=data.get("ts", 0),
        )

    def to_dict(self) -> dict:
        """Serialize to dict for JSON transmission."""
        return {
            "kind": self.kind,
            "ts": self.timestamp,
            "id": self.id,
            "encodedDataLength": self.encoded_bytes,
        }


@dataclass(frozen=True)
class RuntimeException:
    """An uncaught exception in the target (Runtime.exceptionThrown)."""

    kind: ClassVar[str] = "exception"

    text: str | None = None
    url: str | None = None
    line: int | None = None
    column: int | None = None
    timestamp: int = field(default_factory=now_ms)

    @classmethod
    def from_cdp(cls, params: dict) -> "RuntimeException":
        """Create from Runtime.exceptionThrown params."""
        details = (params or {}).get("exceptionDetails") or {}
        return cls(
            text=details.get("text"),
            url=details.get("url"),
            line=details.get("lineNumber"),
            column=details.get("columnNumber"),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "RuntimeException":
        """Create from a wire frame dict."""
        return cls(
            text=data.get("text"),
            url=data.get("url"),
            line=data.get("lineNumber"),
            column=data.get("columnNumber"),
            timestamp=data.get("ts", 0),
        )

    def to_dict(self) -> dict:
        """Serialize to dict for JSON transmission."""
        return {
            "kind": self.kind,
            "ts": self.timestamp,
            "text": self.text,
            "url": self.url,
            "lineNumber": self.line,
            "columnNumber": self.column,
        }


@dataclass(frozen=True)
class PerformanceSample:
    """
    One Performance.getMetrics snapshot.

    ``metrics`` keeps the order Chrome reported them in.
    """

    kind: ClassVar[str] = "performance"

    metrics: tuple[tuple[str, float], ...] = ()
    timestamp: int = field(default_factory=now_ms)

    @classmethod
    def from_cdp(cls, result: dict) -> "PerformanceSample":
        """Create from a Performance.getMetrics result."""
        return cls(metrics=_metric_pairs((result or {}).get("metrics")))

    @classmethod
    def from_dict(cls, data: dict) -> "PerformanceSample":
        """Create from a wire frame dict."""
        return cls(metrics=_metric_pairs(data.get("metrics")), timestamp=data.get("ts", 0))

    def to_dict(self) -> dict:
        """Serialize to dict for JSON transmission."""
        return {
            "kind": self.kind,
            "ts": self.timestamp,
            "metrics": [{"name": name, "value": value} for name, value in self.metrics],
        }


def _metric_pairs(metrics: list[dict] | None) -> tuple[tuple[str, float], ...]:
    return tuple((m.get("name"), m.get("value")) for m in metrics or [])


TelemetryEvent = NetworkRequestStarted | NetworkRequestFinished | RuntimeException | PerformanceSample

EVENT_TYPES: dict[str, type] = {
    cls.kind: cls
    for cls in (NetworkRequestStarted, NetworkRequestFinished, RuntimeException, PerformanceSample)
}


def serialize(event: TelemetryEvent) -> str:
    """Encode an event as one JSON text frame."""
    return json.dumps(event.to_dict(), separators=(",", ":"))


def event_from_dict(data: dict[str, Any]) -> TelemetryEvent:
    """
    Rebuild an event from its wire dict.

    Raises:
        ValueError: if ``kind`` is missing or unknown
    """
    kind = data.get("kind")
    event_cls = EVENT_TYPES.get(kind)
    if event_cls is None:
        raise ValueError(f"Unknown event kind: {kind!r}")
    return event_cls.from_dict(data)


def deserialize(text: str) -> TelemetryEvent:
    """Decode a JSON text frame produced by :func:`serialize`."""
    return event_from_dict(json.loads(text))
