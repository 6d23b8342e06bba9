"""Tests for the client -> relay wire format."""

import json

import pytest

from xr_osc_bridge.protocol import (
    MAX_PAYLOAD_BYTES,
    ProtocolError,
    build_pose_message,
    decode_envelope,
    decode_server_notice,
    encode_connection_status,
    encode_message,
    expected_arity,
    is_known_address,
)
from xr_osc_bridge.types import PoseSample, StreamId, WireMessage


class TestAddressGrammar:
    @pytest.mark.parametrize("address", ["/hmd/pose", "/controller0/pose", "/controller1/pose"])
    def test_known(self, address):
        assert is_known_address(address)

    @pytest.mark.parametrize("address", ["/hmd", "/controller2/pose", "/hmd/pose/x", "hmd/pose", "/unknown/pose"])
    def test_unknown(self, address):
        assert not is_known_address(address)
        assert expected_arity(address) is None

    def test_arity(self):
        assert expected_arity("/hmd/pose") == 6
        assert expected_arity("/controller0/pose") == 7
        assert expected_arity("/controller1/pose") == 7


class TestBuildPoseMessage:
    def test_hmd_has_six_args(self):
        message = build_pose_message(PoseSample(StreamId.HMD, position=(1.0, 2.0, 3.0)))
        assert message.address == "/hmd/pose"
        assert message.args == [1.0, 2.0, 3.0, 0.0, 0.0, 0.0]

    def test_controller_button_is_last(self):
        message = build_pose_message(PoseSample(StreamId.CONTROLLER1, button_pressed=True))
        assert message.address == "/controller1/pose"
        assert len(message.args) == 7
        assert message.args[6] == 1.0

    def test_non_finite_position_is_zeroed(self):
        sample = PoseSample(StreamId.HMD, position=(float("nan"), 1.0, float("inf")))
        assert build_pose_message(sample).args[:3] == [0.0, 1.0, 0.0]


class TestEnvelope:
    def test_encode_is_compact_json(self):
        payload = encode_message(WireMessage("/hmd/pose", [1.0, 2.0]))
        assert payload == b'{"address":"/hmd/pose","args":[1.0,2.0]}'

    def test_full_pose_fits_payload_limit(self):
        sample = PoseSample(
            StreamId.CONTROLLER0,
            position=(-123.456789012345, 987.654321098765, -0.000123456789),
            orientation=(0.1, 0.2, 0.3, 0.9),
            button_pressed=True,
        )
        assert len(encode_message(build_pose_message(sample))) < MAX_PAYLOAD_BYTES

    def test_decode_object(self):
        assert decode_envelope(b'{"address":"/x","args":[]}') == {"address": "/x", "args": []}

    def test_decode_rejects_oversized(self):
        with pytest.raises(ProtocolError, match="oversized"):
            decode_envelope(b" " * (MAX_PAYLOAD_BYTES + 1))

    @pytest.mark.parametrize("payload", [b"\xff\xfe", b"not json", b"[1, 2]", b'"text"'])
    def test_decode_rejects_garbage(self, payload):
        with pytest.raises(ProtocolError):
            decode_envelope(payload)


class TestServerNotices:
    def test_connection_status(self):
        payload = encode_connection_status(True, {"HMD": 7400, "CONTROLLER0": 7401})
        data = json.loads(payload)
        assert data == {
            "type": "connection",
            "status": "connected",
            "oscStatus": "ready",
            "oscPorts": {"HMD": 7400, "CONTROLLER0": 7401},
        }

    def test_connection_status_not_ready(self):
        assert json.loads(encode_connection_status(False, {}))["oscStatus"] == "connecting"

    def test_decode_notice(self):
        assert decode_server_notice(b'{"type":"connection"}') == {"type": "connection"}
        assert decode_server_notice(b"[]") is None
        assert decode_server_notice(b"\xff") is None
