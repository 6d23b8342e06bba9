"""Tests for relay counters."""

from unittest import mock

from xr_osc_bridge.telemetry import UNKNOWN_ADDRESS_MEMORY, RelayTelemetry
from xr_osc_bridge.types import StreamId


def make_telemetry(clock, **kwargs):
    return RelayTelemetry(clock=clock, rng=lambda: 1.0, **kwargs)


class TestRelayTelemetry:
    def test_forwarded_counts_per_device(self, clock):
        telemetry = make_telemetry(clock)
        clock.advance(2.0)
        telemetry.record_forwarded(StreamId.HMD, "/hmd/pose", [0.0] * 6)
        telemetry.record_forwarded(StreamId.CONTROLLER0, "/controller0/pose", [0.0] * 7)

        snap = telemetry.snapshot()
        assert snap["total_messages"] == 2
        assert snap["messages_per_second"] == 1
        assert snap["devices"]["HMD"]["forwarded"] == 1
        assert telemetry.device(StreamId.HMD).last_forward_time == 2.0

    def test_errors_and_drops(self, clock):
        telemetry = make_telemetry(clock)
        telemetry.record_send_error(StreamId.CONTROLLER1, "send failed: unreachable")
        assert telemetry.record_not_ready(StreamId.CONTROLLER1) == 1
        assert telemetry.record_not_ready(StreamId.CONTROLLER1) == 2
        telemetry.record_invalid(StreamId.HMD)
        telemetry.record_oversized()
        telemetry.record_malformed()

        snap = telemetry.snapshot()
        assert snap["total_errors"] == 1
        assert snap["last_error"] == "send failed: unreachable"
        assert snap["devices"]["CONTROLLER1"]["dropped_not_ready"] == 2
        assert snap["devices"]["HMD"]["dropped_invalid"] == 1
        assert snap["oversized_payloads"] == 1
        assert snap["malformed_envelopes"] == 1

    def test_device_returns_a_copy(self, clock):
        telemetry = make_telemetry(clock)
        copy = telemetry.device(StreamId.HMD)
        copy.forwarded = 99
        assert telemetry.device(StreamId.HMD).forwarded == 0

    def test_unknown_address_first_sight(self, clock):
        telemetry = make_telemetry(clock)
        assert telemetry.record_unknown_address("/foo")
        assert not telemetry.record_unknown_address("/foo")
        for i in range(UNKNOWN_ADDRESS_MEMORY + 10):
            telemetry.record_unknown_address(f"/addr{i}")
        # Past the memory cap new addresses are always reported
        assert telemetry.record_unknown_address("/overflow")
        assert telemetry.record_unknown_address("/overflow")

    def test_button_changes_are_logged_once(self, clock):
        telemetry = make_telemetry(clock)
        pressed = [0.0] * 6 + [1.0]
        with mock.patch("xr_osc_bridge.telemetry.logger") as mock_logger:
            telemetry.record_forwarded(StreamId.CONTROLLER0, "/controller0/pose", pressed)
            telemetry.record_forwarded(StreamId.CONTROLLER0, "/controller0/pose", pressed)
            telemetry.record_forwarded(StreamId.CONTROLLER0, "/controller0/pose", [0.0] * 7)
        messages = [str(c) for c in mock_logger.debug.call_args_list]
        assert sum("button state: Pressed" in m for m in messages) == 1
        assert sum("button state: Released" in m for m in messages) == 1

    def test_every_message_logging(self, clock):
        telemetry = make_telemetry(clock, log_every_message=True)
        with mock.patch("xr_osc_bridge.telemetry.logger") as mock_logger:
            telemetry.record_forwarded(StreamId.HMD, "/hmd/pose", [0.0] * 6)
        assert any("OSC sent to HMD" in str(c) for c in mock_logger.debug.call_args_list)

    def test_connected_clients_never_negative(self, clock):
        telemetry = make_telemetry(clock)
        telemetry.set_connected_clients(-3)
        assert telemetry.snapshot()["connected_clients"] == 0

    def test_format_status(self, clock):
        telemetry = make_telemetry(clock)
        clock.advance(30.0)
        line = telemetry.format_status(
            {StreamId.HMD: (7400, True), StreamId.CONTROLLER0: (7401, False)}
        )
        assert line.startswith("Status: uptime=30s")
        assert "HMD:7400=OK" in line
        assert "CONTROLLER0:7401=FAIL" in line
