"""
Tests for RelayRunner - wiring, fatal exit and shutdown.
"""

import asyncio

import pytest
from conftest import FakeClient

from cdp_relay.config import RelayConfig
from cdp_relay.errors import AttachError
from cdp_relay.events import RuntimeException
from cdp_relay.runner import RelayRunner


def make_config(**overrides) -> RelayConfig:
    values = {
        "host": "127.0.0.1",
        "port": 0,
        "http_port": 0,
        "retry_interval_ms": 1,
        "max_retry_attempts": 3,
        "metrics_interval_ms": 60000,
        "shared_secret": "",
        "allowed_origin": "",
    }
    values.update(overrides)
    return RelayConfig(**values)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestRunnerInit:
    def test_invalid_config_rejected(self):
        with pytest.raises(ValueError):
            RelayRunner(make_config(max_retry_attempts=0), client=FakeClient())

    def test_session_feeds_hub(self):
        runner = RelayRunner(make_config(), client=FakeClient())

        assert runner.session._sink == runner.hub.publish
        assert runner.session.max_attempts == 3


class TestRunnerLifecycle:
    """Test start -> shutdown flows."""

    @pytest.mark.asyncio
    async def test_exhausted_retries_exit_with_code_1(self):
        """Fatal upstream condition shuts the relay down with exit code 1."""
        client = FakeClient(outcomes=[AttachError("refused")] * 10)
        runner = RelayRunner(make_config(), client=client)

        exit_code = await asyncio.wait_for(runner.start(), timeout=5.0)

        assert exit_code == 1
        assert len(client.attach_calls) == 3
        assert not runner.broadcaster.is_running

    @pytest.mark.asyncio
    async def test_clean_shutdown_exit_code_0(self):
        client = FakeClient()
        runner = RelayRunner(make_config(), client=client)
        task = asyncio.create_task(runner.start())

        await wait_for(lambda: runner.session.is_attached)
        assert runner.hub.heartbeat_running
        assert runner.get_health()["attached"] is True

        runner.request_shutdown(0)
        exit_code = await asyncio.wait_for(task, timeout=5.0)

        assert exit_code == 0
        assert client.handles[0].closed is True
        assert not runner.hub.heartbeat_running
        assert not runner.broadcaster.is_running

    @pytest.mark.asyncio
    async def test_events_reach_hub(self):
        """Callbacks on the attached handle are published through the hub."""
        client = FakeClient()
        runner = RelayRunner(make_config(), client=client)
        task = asyncio.create_task(runner.start())
        await wait_for(lambda: runner.session.is_attached)

        client.handles[0].emit_exception({"exceptionDetails": {"text": "boom"}})

        assert runner.hub.get_stats()["events_published"] >= 1
        runner.request_shutdown(0)
        await asyncio.wait_for(task, timeout=5.0)

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self):
        runner = RelayRunner(make_config(), client=FakeClient())
        task = asyncio.create_task(runner.start())
        await wait_for(lambda: runner.session.is_attached)

        await runner.shutdown(0)
        await runner.shutdown(1)
        runner.request_shutdown(1)

        assert await asyncio.wait_for(task, timeout=5.0) == 0
        assert runner.exit_code == 0

    @pytest.mark.asyncio
    async def test_no_reattach_after_shutdown(self):
        """A transport drop during shutdown does not trigger reattach."""
        client = FakeClient()
        runner = RelayRunner(make_config(), client=client)
        task = asyncio.create_task(runner.start())
        await wait_for(lambda: runner.session.is_attached)

        runner.shutdown_event.set()
        client.handles[0].drop()
        await asyncio.sleep(0.05)

        assert len(client.attach_calls) == 1
        runner.shutdown_event.clear()
        runner.request_shutdown(0)
        await asyncio.wait_for(task, timeout=5.0)

    @pytest.mark.asyncio
    async def test_listener_failure_exits_with_code_1(self, monkeypatch):
        runner = RelayRunner(make_config(), client=FakeClient())

        async def refuse():
            raise OSError("address in use")

        monkeypatch.setattr(runner.broadcaster, "start", refuse)

        assert await runner.start() == 1

    @pytest.mark.asyncio
    async def test_status(self):
        runner = RelayRunner(make_config(), client=FakeClient())
        runner.hub.publish(RuntimeException(text="x", timestamp=1))

        status = runner.get_status()

        assert status["shutting_down"] is False
        assert status["hub"]["events_published"] == 1
        assert status["session"]["attached"] is False
