"""Angle, quaternion and projection helpers for spherical capture."""
from __future__ import annotations

import math
from typing import Tuple

import numpy as np

FULL_TURN = 360.0
HALF_TURN = 180.0


def normalize_yaw(yaw_deg: float) -> float:
    """Wrap an angle in degrees into ``[0, 360)``."""
    wrapped = math.fmod(yaw_deg, FULL_TURN)
    if wrapped < 0.0:
        wrapped += FULL_TURN
    # fmod of a tiny negative value can round back up to 360.0
    if wrapped >= FULL_TURN:
        wrapped = 0.0
    return wrapped


def angle_diff(a_deg: float, b_deg: float) -> float:
    """Return the signed shortest arc ``a - b`` in ``(-180, 180]`` degrees."""
    diff = math.fmod(a_deg - b_deg, FULL_TURN)
    if diff > HALF_TURN:
        diff -= FULL_TURN
    elif diff <= -HALF_TURN:
        diff += FULL_TURN
    return diff


def ema_linear(previous: float, current: float, alpha: float) -> float:
    """Exponential moving average step."""
    return previous + alpha * (current - previous)


def ema_circular(previous_deg: float, current_deg: float, alpha: float) -> float:
    """Exponential moving average along the shortest arc, result in ``[0, 360)``."""
    return normalize_yaw(previous_deg + alpha * angle_diff(current_deg, previous_deg))


# ----------------------------------------------------------------------
# Quaternions are stored as numpy arrays in ``(x, y, z, w)`` order.


def axis_quaternion(axis: str, angle_rad: float) -> np.ndarray:
    """Quaternion for a rotation of ``angle_rad`` about the named unit axis."""
    half = 0.5 * angle_rad
    sin_half = math.sin(half)
    vector = {"x": (1.0, 0.0, 0.0), "y": (0.0, 1.0, 0.0), "z": (0.0, 0.0, 1.0)}[axis]
    return np.array(
        [vector[0] * sin_half, vector[1] * sin_half, vector[2] * sin_half, math.cos(half)],
        dtype=np.float64,
    )


def quaternion_multiply(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Hamilton product ``a * b`` (apply ``b`` first, then ``a``)."""
    ax, ay, az, aw = a
    bx, by, bz, bw = b
    return np.array(
        [
            aw * bx + ax * bw + ay * bz - az * by,
            aw * by - ax * bz + ay * bw + az * bx,
            aw * bz + ax * by - ay * bx + az * bw,
            aw * bw - ax * bx - ay * by - az * bz,
        ],
        dtype=np.float64,
    )


def quaternion_from_euler_zxy(x_rad: float, y_rad: float, z_rad: float) -> np.ndarray:
    """Build a quaternion whose rotation matrix is ``Rz(z) @ Rx(x) @ Ry(y)``."""
    q = quaternion_multiply(axis_quaternion("z", z_rad), axis_quaternion("x", x_rad))
    return quaternion_multiply(q, axis_quaternion("y", y_rad))


def rotation_matrix(q: np.ndarray) -> np.ndarray:
    """Return the 3x3 rotation matrix of a unit quaternion."""
    x, y, z, w = q / np.linalg.norm(q)
    return np.array(
        [
            [1.0 - 2.0 * (y * y + z * z), 2.0 * (x * y - w * z), 2.0 * (x * z + w * y)],
            [2.0 * (x * y + w * z), 1.0 - 2.0 * (x * x + z * z), 2.0 * (y * z - w * x)],
            [2.0 * (x * z - w * y), 2.0 * (y * z + w * x), 1.0 - 2.0 * (x * x + y * y)],
        ],
        dtype=np.float64,
    )


def euler_yxz_from_quaternion(q: np.ndarray) -> Tuple[float, float, float]:
    """Decompose a quaternion into Y-X-Z Euler angles.

    Returns ``(x, y, z)`` in radians such that the rotation equals
    ``Ry(y) @ Rx(x) @ Rz(z)``. Near gimbal lock (``|x| -> 90deg``) the z
    component is folded into y and reported as zero.
    """
    m = rotation_matrix(q)
    m23 = float(np.clip(m[1, 2], -1.0, 1.0))
    x = math.asin(-m23)
    if abs(m23) < 0.9999999:
        y = math.atan2(m[0, 2], m[2, 2])
        z = math.atan2(m[1, 0], m[1, 1])
    else:
        y = math.atan2(-m[2, 0], m[0, 0])
        z = 0.0
    return x, y, z


# ----------------------------------------------------------------------
# Gnomonic frame geometry


def projected_pitch(u: float, v: float, pitch_rad: float) -> float:
    """Spherical pitch of the tangent-plane point ``(u, v)`` of a camera at ``pitch_rad``.

    ``u`` is the horizontal and ``v`` the vertical tangent-space offset from
    the optical axis (``tan`` of the view angle).
    """
    denom = math.sqrt(u * u + v * v + 1.0)
    ratio = (v * math.cos(pitch_rad) + math.sin(pitch_rad)) / denom
    return math.asin(max(-1.0, min(1.0, ratio)))


def effective_hfov(hfov_deg: float, width: int, height: int) -> float:
    """Horizontal field of view for a frame of the given size.

    The configured field of view describes the long side of the sensor. A
    portrait frame therefore has a narrower horizontal field of view.
    """
    if width >= height or height == 0:
        return hfov_deg
    aspect = width / float(height)
    half = math.radians(hfov_deg) / 2.0
    return math.degrees(2.0 * math.atan(math.tan(half) * aspect))


def vertical_fov(hfov_deg: float, aspect: float) -> float:
    """Vertical field of view of a pinhole frame with ``aspect = width / height``."""
    half = math.radians(hfov_deg) / 2.0
    return math.degrees(2.0 * math.atan(math.tan(half) / aspect))


def yaw_pitch_to_pixel(yaw_deg: float, pitch_deg: float, width: int, height: int) -> Tuple[float, float]:
    """Map world yaw/pitch in degrees onto equirectangular pixel coordinates.

    Yaw grows to the right from the left edge; the top row is pitch +90.
    The result is not clamped so callers can place content across the seam.
    """
    x = (yaw_deg / FULL_TURN) * width
    y = ((90.0 - pitch_deg) / HALF_TURN) * height
    return x, y
