"""Tests for quaternion/Euler conversion."""

import math

import pytest

from xr_osc_bridge.pose_math import (
    IDENTITY_QUAT,
    euler_degrees_to_quat,
    normalize_angle,
    quat_normalize,
    quat_to_euler_degrees,
)


def _close(a, b, tol=1e-6):
    return all(abs(x - y) <= tol for x, y in zip(a, b))


class TestNormalizeAngle:
    @pytest.mark.parametrize(
        "angle,expected",
        [(0.0, 0.0), (270.0, -90.0), (-270.0, 90.0), (180.0, 180.0), (-180.0, 180.0), (540.0, 180.0), (725.0, 5.0)],
    )
    def test_wraps_into_half_open_range(self, angle, expected):
        assert normalize_angle(angle) == pytest.approx(expected)

    def test_non_finite_becomes_zero(self):
        assert normalize_angle(float("nan")) == 0.0
        assert normalize_angle(float("inf")) == 0.0


class TestQuatToEuler:
    def test_identity_is_zero(self):
        assert _close(quat_to_euler_degrees(IDENTITY_QUAT), (0.0, 0.0, 0.0))

    def test_pure_yaw(self):
        half = math.radians(90.0) / 2
        q = (0.0, math.sin(half), 0.0, math.cos(half))
        yaw, pitch, roll = quat_to_euler_degrees(q)
        assert yaw == pytest.approx(90.0)
        assert pitch == pytest.approx(0.0, abs=1e-9)
        assert roll == pytest.approx(0.0, abs=1e-9)

    def test_pure_pitch_and_roll(self):
        half = math.radians(30.0) / 2
        assert quat_to_euler_degrees((math.sin(half), 0.0, 0.0, math.cos(half)))[1] == pytest.approx(30.0)
        assert quat_to_euler_degrees((0.0, 0.0, math.sin(half), math.cos(half)))[2] == pytest.approx(30.0)

    @pytest.mark.parametrize(
        "euler",
        [(10.0, 20.0, 30.0), (-120.0, 45.0, 170.0), (179.0, -60.0, -90.0), (0.0, 0.0, -45.0)],
    )
    def test_round_trip(self, euler):
        assert _close(quat_to_euler_degrees(euler_degrees_to_quat(*euler)), euler, tol=1e-6)

    def test_yaw_beyond_half_turn_is_wrapped(self):
        yaw, _, _ = quat_to_euler_degrees(euler_degrees_to_quat(270.0, 0.0, 0.0))
        assert yaw == pytest.approx(-90.0)

    def test_results_stay_in_range(self):
        for yaw in range(-720, 721, 37):
            for pitch in (-85, -10, 0, 33, 85):
                angles = quat_to_euler_degrees(euler_degrees_to_quat(yaw, pitch, yaw / 3))
                assert all(-180.0 < a <= 180.0 for a in angles)

    def test_unnormalised_input(self):
        q = euler_degrees_to_quat(40.0, 10.0, 5.0)
        scaled = tuple(c * 3.5 for c in q)
        assert _close(quat_to_euler_degrees(scaled), (40.0, 10.0, 5.0))

    def test_gimbal_lock_keeps_roll_zero(self):
        yaw, pitch, roll = quat_to_euler_degrees(euler_degrees_to_quat(0.0, 90.0, 0.0))
        assert pitch == pytest.approx(90.0)
        assert roll == 0.0


def test_zero_quaternion_normalises_to_identity():
    assert quat_normalize((0.0, 0.0, 0.0, 0.0)) == IDENTITY_QUAT
