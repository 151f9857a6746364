"""
Tests for the telemetry event model.
"""

import json

import pytest

from cdp_relay.events import (
    EVENT_TYPES,
    NetworkRequestFinished,
    NetworkRequestStarted,
    PerformanceSample,
    RuntimeException,
    deserialize,
    event_from_dict,
    serialize,
)

# =============================================================================
# PHASE 1: Construction from CDP params
# =============================================================================


class TestFromCdp:
    """Test building events from raw CDP callback params."""

    def test_network_response_extracts_fields(self):
        """responseReceived params map onto NetworkRequestStarted."""
        params = {
            "requestId": "1000.1",
            "type": "Script",
            "response": {
                "url": "https://example.com/app.js",
                "status": 200,
                "protocol": "h2",
                "encodedDataLength": 512,
            },
        }

        event = NetworkRequestStarted.from_cdp(params)

        assert event.id == "1000.1"
        assert event.url == "https://example.com/app.js"
        assert event.status == 200
        assert event.resource_type == "Script"
        assert event.protocol == "h2"
        assert event.encoded_bytes_so_far == 512
        assert event.timestamp > 0

    def test_network_response_without_response_object(self):
        """Missing response leaves optional fields empty."""
        event = NetworkRequestStarted.from_cdp({"requestId": "7"})

        assert event.id == "7"
        assert event.url is None
        assert event.status is None

    def test_loading_finished(self):
        """loadingFinished params map onto NetworkRequestFinished."""
        event = NetworkRequestFinished.from_cdp({"requestId": "7", "encodedDataLength": 2048})

        assert event.id == "7"
        assert event.encoded_bytes == 2048

    def test_exception_thrown(self):
        """exceptionThrown details map onto RuntimeException."""
        params = {
            "exceptionDetails": {
                "text": "Uncaught TypeError",
                "url": "https://example.com/app.js",
                "lineNumber": 12,
                "columnNumber": 4,
            }
        }

        event = RuntimeException.from_cdp(params)

        assert event.text == "Uncaught TypeError"
        assert event.line == 12
        assert event.column == 4

    def test_exception_thrown_without_details(self):
        """Empty params still produce an event."""
        event = RuntimeException.from_cdp({})

        assert event.text is None
        assert event.line is None

    def test_performance_keeps_metric_order(self):
        """getMetrics order is preserved."""
        result = {
            "metrics": [
                {"name": "Timestamp", "value": 1.5},
                {"name": "Nodes", "value": 42},
                {"name": "JSHeapUsedSize", "value": 1000},
            ]
        }

        event = PerformanceSample.from_cdp(result)

        assert [name for name, _ in event.metrics] == ["Timestamp", "Nodes", "JSHeapUsedSize"]
        assert event.metrics[1] == ("Nodes", 42)

    def test_events_are_immutable(self):
        """Events cannot be mutated after creation."""
        event = NetworkRequestFinished(id="1", encoded_bytes=1)

        with pytest.raises(AttributeError):
            event.id = "2"


# =============================================================================
# PHASE 2: Wire format
# =============================================================================


class TestWireFormat:
    """Test JSON frames sent to viewers."""

    def test_network_frame_uses_viewer_field_names(self):
        """network frames carry kind, ts and the viewer's field names."""
        event = NetworkRequestStarted(
            id="1",
            url="https://a",
            status=404,
            resource_type="XHR",
            protocol="http/1.1",
            encoded_bytes_so_far=10,
            timestamp=1737200000000,
        )

        frame = json.loads(serialize(event))

        assert frame == {
            "kind": "network",
            "ts": 1737200000000,
            "id": "1",
            "url": "https://a",
            "status": 404,
            "type": "XHR",
            "protocol": "http/1.1",
            "encodedDataLength": 10,
        }

    def test_exception_frame(self):
        """exception frames use lineNumber/columnNumber."""
        frame = json.loads(serialize(RuntimeException(text="x", line=1, column=2, timestamp=5)))

        assert frame["kind"] == "exception"
        assert frame["lineNumber"] == 1
        assert frame["columnNumber"] == 2

    def test_performance_frame_lists_name_value_objects(self):
        """metrics are sent as [{name, value}]."""
        event = PerformanceSample(metrics=(("Nodes", 3),), timestamp=5)

        frame = json.loads(serialize(event))

        assert frame == {"kind": "performance", "ts": 5, "metrics": [{"name": "Nodes", "value": 3}]}

    def test_kind_discriminators_are_unique(self):
        """Each variant has its own kind."""
        assert set(EVENT_TYPES) == {"network", "networkFinish", "exception", "performance"}


# =============================================================================
# PHASE 3: Round trip
# =============================================================================


class TestRoundTrip:
    """Test serialize -> deserialize returns an equal event."""

    @pytest.mark.parametrize(
        "event",
        [
            NetworkRequestStarted(
                id="1",
                url="https://a",
                status=200,
                resource_type="Document",
                protocol="h2",
                encoded_bytes_so_far=1,
                timestamp=1,
            ),
            NetworkRequestStarted(id="2", url="https://b", timestamp=2),
            NetworkRequestFinished(id="3", encoded_bytes=99.5, timestamp=3),
            NetworkRequestFinished(timestamp=4),
            RuntimeException(text="boom", url="https://c", line=1, column=2, timestamp=5),
            RuntimeException(timestamp=6),
            PerformanceSample(metrics=(("Nodes", 1), ("LayoutCount", 2.5)), timestamp=7),
            PerformanceSample(timestamp=8),
        ],
    )
    def test_round_trip(self, event):
        """kind picks the right variant, absent fields stay absent."""
        restored = deserialize(serialize(event))

        assert type(restored) is type(event)
        assert restored == event

    def test_missing_status_serializes_as_null(self):
        """Absent optional fields are explicit nulls on the wire."""
        frame = json.loads(serialize(NetworkRequestStarted(id="1", timestamp=1)))

        assert "status" in frame
        assert frame["status"] is None

    def test_unknown_kind_raises(self):
        """Unknown kind is rejected."""
        with pytest.raises(ValueError, match="Unknown event kind"):
            event_from_dict({"kind": "bogus", "ts": 1})

    def test_missing_kind_raises(self):
        """Frames without kind are rejected."""
        with pytest.raises(ValueError):
            event_from_dict({"ts": 1})
