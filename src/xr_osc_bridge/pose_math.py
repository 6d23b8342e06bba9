"""Rotation helpers for pose telemetry.

Quaternions are scalar-last ``(x, y, z, w)``. Euler triples are
``(yaw, pitch, roll)`` using intrinsic Y-X-Z order: yaw about world up,
then pitch, then roll. Downstream patches depend on exactly this order.
"""

from __future__ import annotations

import math

Quat = tuple[float, float, float, float]
Vec3 = tuple[float, float, float]

IDENTITY_QUAT: Quat = (0.0, 0.0, 0.0, 1.0)

# Below this |m23| the YXZ decomposition is not gimbal locked.
_GIMBAL_EPSILON = 0.9999999


def quat_normalize(q: Quat) -> Quat:
    x, y, z, w = q
    n = math.sqrt(x * x + y * y + z * z + w * w)
    if n <= 0.0 or not math.isfinite(n):
        return IDENTITY_QUAT
    return (x / n, y / n, z / n, w / n)


def quat_multiply(a: Quat, b: Quat) -> Quat:
    ax, ay, az, aw = a
    bx, by, bz, bw = b
    return (
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
        aw * bw - ax * bx - ay * by - az * bz,
    )


def normalize_angle(angle: float) -> float:
    """Wrap an angle in degrees into (-180, 180]."""
    if not math.isfinite(angle):
        return 0.0
    wrapped = math.fmod(angle, 360.0)
    if wrapped > 180.0:
        wrapped -= 360.0
    elif wrapped <= -180.0:
        wrapped += 360.0
    # Fold -0.0 into 0.0
    return wrapped + 0.0


def quat_to_euler_yxz(q: Quat) -> tuple[float, float, float]:
    """Decompose a quaternion into YXZ Euler angles in radians.

    Returns:
        (yaw, pitch, roll) = rotations about (Y, X, Z).
    """
    x, y, z, w = quat_normalize(q)

    m11 = 1.0 - 2.0 * (y * y + z * z)
    m13 = 2.0 * (x * z + w * y)
    m21 = 2.0 * (x * y + w * z)
    m22 = 1.0 - 2.0 * (x * x + z * z)
    m23 = 2.0 * (y * z - w * x)
    m31 = 2.0 * (x * z - w * y)
    m33 = 1.0 - 2.0 * (x * x + y * y)

    pitch = math.asin(-max(-1.0, min(1.0, m23)))
    if abs(m23) < _GIMBAL_EPSILON:
        yaw = math.atan2(m13, m33)
        roll = math.atan2(m21, m22)
    else:
        yaw = math.atan2(-m31, m11)
        roll = 0.0
    return yaw, pitch, roll


def quat_to_euler_degrees(q: Quat) -> tuple[float, float, float]:
    """(yaw, pitch, roll) in degrees, each normalised into (-180, 180]."""
    yaw, pitch, roll = quat_to_euler_yxz(q)
    return (
        normalize_angle(math.degrees(yaw)),
        normalize_angle(math.degrees(pitch)),
        normalize_angle(math.degrees(roll)),
    )


def _axis_angle(axis: Vec3, angle_rad: float) -> Quat:
    s = math.sin(angle_rad / 2.0)
    return (axis[0] * s, axis[1] * s, axis[2] * s, math.cos(angle_rad / 2.0))


def euler_degrees_to_quat(yaw_deg: float, pitch_deg: float, roll_deg: float) -> Quat:
    """Inverse of :func:`quat_to_euler_degrees`: q = q_yaw * q_pitch * q_roll."""
    q_yaw = _axis_angle((0.0, 1.0, 0.0), math.radians(yaw_deg))
    q_pitch = _axis_angle((1.0, 0.0, 0.0), math.radians(pitch_deg))
    q_roll = _axis_angle((0.0, 0.0, 1.0), math.radians(roll_deg))
    return quat_normalize(quat_multiply(quat_multiply(q_yaw, q_pitch), q_roll))
