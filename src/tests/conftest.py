"""
Shared test fixtures for pytest
"""

import pytest

from cdp_relay.errors import AttachError, SubscriberSendError
from cdp_relay.logger import setup_logging
from cdp_relay.targets import TargetDescriptor


@pytest.fixture(autouse=True)
def setup_test_logging():
    """Setup logging for all tests"""
    setup_logging("DEBUG")


class FakeTransport:
    """In-memory SubscriberTransport."""

    def __init__(self, is_open: bool = True, fail_send: bool = False, accept: bool = True):
        self.is_open = is_open
        self.fail_send = fail_send
        self.accept = accept
        self.sent: list[str] = []
        self.pings = 0
        self.terminated = False
        self.closed_with: tuple[int, str] | None = None

    def send(self, payload: str) -> bool:
        if self.fail_send:
            raise SubscriberSendError("boom")
        if not self.accept:
            return False
        self.sent.append(payload)
        return True

    def ping(self) -> None:
        self.pings += 1

    def terminate(self) -> None:
        self.terminated = True
        self.is_open = False

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = (code, reason)
        self.is_open = False


class FakeHandle:
    """In-memory InstrumentationHandle."""

    def __init__(self, fail_domain: str | None = None, metrics: dict | None = None):
        self.fail_domain = fail_domain
        self.metrics = metrics if metrics is not None else {"metrics": [{"name": "Nodes", "value": 10}]}
        self.metrics_error: Exception | None = None
        self.enabled: dict[str, dict] = {}
        self.metrics_calls = 0
        self.closed = False
        self.response_callbacks = []
        self.finished_callbacks = []
        self.exception_callbacks = []
        self.disconnect_callbacks = []

    async def _enable(self, domain: str, params: dict | None = None) -> None:
        if domain == self.fail_domain:
            raise RuntimeError(f"{domain}.enable failed")
        self.enabled[domain] = params or {}

    async def enable_network(self, max_total_buffer_size: int, max_resource_buffer_size: int) -> None:
        await self._enable(
            "Network",
            {
                "maxTotalBufferSize": max_total_buffer_size,
                "maxResourceBufferSize": max_resource_buffer_size,
            },
        )

    async def enable_page(self) -> None:
        await self._enable("Page")

    async def enable_runtime(self) -> None:
        await self._enable("Runtime")

    async def enable_performance(self) -> None:
        await self._enable("Performance")

    async def get_metrics(self) -> dict:
        self.metrics_calls += 1
        if self.metrics_error is not None:
            raise self.metrics_error
        return self.metrics

    def on_network_response(self, callback) -> None:
        self.response_callbacks.append(callback)

    def on_network_finished(self, callback) -> None:
        self.finished_callbacks.append(callback)

    def on_runtime_exception(self, callback) -> None:
        self.exception_callbacks.append(callback)

    def on_disconnect(self, callback) -> None:
        self.disconnect_callbacks.append(callback)

    async def close(self) -> None:
        self.closed = True

    # Test drivers

    def emit_response(self, params: dict) -> None:
        for callback in self.response_callbacks:
            callback(params)

    def emit_finished(self, params: dict) -> None:
        for callback in self.finished_callbacks:
            callback(params)

    def emit_exception(self, params: dict) -> None:
        for callback in self.exception_callbacks:
            callback(params)

    def drop(self) -> None:
        for callback in self.disconnect_callbacks:
            callback()


class FakeClient:
    """
    In-memory InstrumentationClient.

    ``outcomes`` scripts successive attach() calls: a FakeHandle is
    returned, an Exception is raised. Once exhausted, fresh handles are
    returned.
    """

    def __init__(self, targets: list[TargetDescriptor] | None = None, outcomes: list | None = None):
        self.targets = targets if targets is not None else [
            TargetDescriptor(id="t1", title="Example", url="https://example.com", kind="page")
        ]
        self.outcomes = list(outcomes or [])
        self.list_error: Exception | None = None
        self.attach_calls: list[TargetDescriptor] = []
        self.handles: list[FakeHandle] = []

    async def list_targets(self, port: int) -> list[TargetDescriptor]:
        if self.list_error is not None:
            raise self.list_error
        return self.targets

    async def attach(self, port: int, target: TargetDescriptor) -> FakeHandle:
        self.attach_calls.append(target)
        outcome = self.outcomes.pop(0) if self.outcomes else FakeHandle()
        if isinstance(outcome, Exception):
            raise outcome
        self.handles.append(outcome)
        return outcome


class RecordingSleep:
    """Backoff sleep that records delays and returns immediately."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def failing_client():
    """Client whose attach always fails."""
    client = FakeClient()
    client.outcomes = [AttachError("connection refused") for _ in range(20)]
    return client


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
