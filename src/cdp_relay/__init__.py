"""CDP Relay - fan out Chrome DevTools telemetry to WebSocket viewers."""

from cdp_relay.broadcaster import WebSocketBroadcaster, WebSocketTransport
from cdp_relay.cdp import InstrumentationClient, InstrumentationHandle, PlaywrightCDPClient
from cdp_relay.config import RelayConfig
from cdp_relay.connection import ConnectionState, ConnectionStatus
from cdp_relay.errors import (
    AttachError,
    AuthorizationError,
    FatalStartupError,
    RelayError,
    SubscriberSendError,
    TransportDisconnect,
)
from cdp_relay.events import (
    NetworkRequestFinished,
    NetworkRequestStarted,
    PerformanceSample,
    RuntimeException,
    TelemetryEvent,
    deserialize,
    serialize,
)
from cdp_relay.http_server import RelayHTTPServer
from cdp_relay.hub import BroadcastHub, Subscriber
from cdp_relay.runner import RelayRunner
from cdp_relay.session import UpstreamSession
from cdp_relay.targets import TargetDescriptor, select_target

__all__ = [
    "RelayConfig",
    "ConnectionState",
    "ConnectionStatus",
    "TargetDescriptor",
    "select_target",
    "InstrumentationClient",
    "InstrumentationHandle",
    "PlaywrightCDPClient",
    "UpstreamSession",
    "BroadcastHub",
    "Subscriber",
    "WebSocketBroadcaster",
    "WebSocketTransport",
    "RelayHTTPServer",
    "RelayRunner",
    "TelemetryEvent",
    "NetworkRequestStarted",
    "NetworkRequestFinished",
    "RuntimeException",
    "PerformanceSample",
    "serialize",
    "deserialize",
    "RelayError",
    "AttachError",
    "TransportDisconnect",
    "SubscriberSendError",
    "AuthorizationError",
    "FatalStartupError",
]
