"""Tests for the operator status view."""

from xr_osc_bridge.pose_math import euler_degrees_to_quat
from xr_osc_bridge.status import (
    NOT_AVAILABLE,
    STATUS_CONNECTING,
    StatusBoard,
    format_button,
    format_position,
    format_rotation,
)
from xr_osc_bridge.types import PoseSample, StreamId


def test_formatting():
    sample = PoseSample(
        StreamId.HMD,
        position=(0.123, 1.6, -2.0),
        orientation=euler_degrees_to_quat(45.0, -10.0, 5.0),
    )
    assert format_position(sample) == "0.12, 1.60, -2.00"
    assert format_rotation(sample) == "45.0°, -10.0°, 5.0°"
    assert format_button(True) == "Pressed"
    assert format_button(False) == "Released"


class TestStatusBoard:
    def test_initial_state(self):
        board = StatusBoard()
        assert board.connection == STATUS_CONNECTING
        assert board.stream(StreamId.HMD).position == NOT_AVAILABLE

    def test_absent_controller_shows_zero_and_released(self):
        board = StatusBoard()
        board.update_samples([PoseSample.absent_marker(StreamId.CONTROLLER0)])
        display = board.stream(StreamId.CONTROLLER0)
        assert display.position == "0.00, 0.00, 0.00"
        assert display.rotation == "0.0°, 0.0°, 0.0°"
        assert display.button == "Released"

    def test_absent_hmd_shows_not_available(self):
        board = StatusBoard()
        board.update_samples([PoseSample(StreamId.HMD, position=(1.0, 2.0, 3.0))])
        board.update_samples([PoseSample.absent_marker(StreamId.HMD)])
        assert board.stream(StreamId.HMD).position == NOT_AVAILABLE

    def test_reset_poses(self):
        board = StatusBoard()
        board.update_samples([PoseSample(StreamId.CONTROLLER1, button_pressed=True)])
        assert board.stream(StreamId.CONTROLLER1).button == "Pressed"
        board.reset_poses()
        display = board.stream(StreamId.CONTROLLER1)
        assert display.position == NOT_AVAILABLE
        assert display.button == NOT_AVAILABLE

    def test_render(self):
        board = StatusBoard()
        board.set_connection("Connected")
        board.set_streaming(True)
        board.announce("OSC Streaming Enabled.")
        text = board.render()
        assert "Connection: Connected" in text
        assert "Streaming: on" in text
        assert "CONTROLLER0" in text
        assert text.endswith("Message: OSC Streaming Enabled.")
