"""Orientation sensor fusion.

Raw device orientation events (W3C ``alpha``/``beta``/``gamma`` angles) are
converted into a world attitude where yaw turns about the vertical axis and a
phone held upright facing forward reads ``(0, 0, 0)``. The attitude is then
smoothed with an exponential moving average and differentiated into angular
velocity for the capture gate.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import math
import time
from typing import Callable, Optional, Protocol, Tuple

import numpy as np
from loguru import logger

from ..config import SensorFusionConfig
from ..math.geometry import (
    angle_diff,
    axis_quaternion,
    ema_circular,
    ema_linear,
    euler_yxz_from_quaternion,
    normalize_yaw,
    quaternion_from_euler_zxy,
    quaternion_multiply,
)

# Remaps "flat on a table" to "held upright": -90 degrees about X.
_UPRIGHT_COMPENSATION = axis_quaternion("x", -math.pi / 2.0)


@dataclass(slots=True, frozen=True)
class OrientationSample:
    """Raw device angles in degrees. Any component may be missing."""

    alpha: Optional[float] = None  # about the device z axis
    beta: Optional[float] = None  # about the device x axis
    gamma: Optional[float] = None  # about the device y axis
    timestamp: Optional[float] = None  # seconds

    @property
    def is_empty(self) -> bool:
        return self.alpha is None and self.beta is None and self.gamma is None


@dataclass(slots=True)
class Attitude:
    """World yaw/pitch/roll in degrees (or degrees per second for velocity)."""

    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0

    def copy(self) -> "Attitude":
        return Attitude(self.yaw, self.pitch, self.roll)


@dataclass(slots=True, frozen=True)
class MotionReading:
    """Snapshot of the motion values the capture gate consumes."""

    roll: float
    is_stable: bool
    angular_speed: float


@dataclass(slots=True)
class SensorState:
    """Mutable filter state owned by one :class:`SensorFusion`."""

    smoothed: Attitude = field(default_factory=Attitude)
    previous: Attitude = field(default_factory=Attitude)
    velocity: Attitude = field(default_factory=Attitude)
    reference_yaw: Optional[float] = None
    calibrated: bool = False
    last_update: Optional[float] = None


class OrientationSource(Protocol):
    """Anything that pushes orientation samples to a callback."""

    def subscribe(self, callback: Callable[[OrientationSample], object]) -> Callable[[], None]:
        """Register ``callback`` and return a function that unsubscribes it."""
        ...


def device_attitude(alpha_deg: float, beta_deg: float, gamma_deg: float) -> Attitude:
    """Convert raw device angles into an unsmoothed world attitude."""
    q_device = quaternion_from_euler_zxy(
        math.radians(beta_deg),
        math.radians(gamma_deg),
        math.radians(alpha_deg),
    )
    q_world = quaternion_multiply(_UPRIGHT_COMPENSATION, q_device)
    x, y, z = euler_yxz_from_quaternion(q_world)
    # Negated so turning the body right increases yaw.
    yaw = normalize_yaw(-math.degrees(y))
    return Attitude(yaw=yaw, pitch=math.degrees(x), roll=math.degrees(z))


class SensorFusion:
    """Low-lag orientation filter producing a stable attitude and angular velocity."""

    def __init__(
        self,
        config: Optional[SensorFusionConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or SensorFusionConfig()
        self._clock = clock
        self.state = SensorState()
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    def start(self, source: OrientationSource) -> None:
        """Begin consuming samples from ``source``."""
        if self._unsubscribe is not None:
            return
        self._unsubscribe = source.subscribe(self.update)
        logger.debug("Sensor fusion subscribed to orientation source")

    def stop(self) -> None:
        if self._unsubscribe is None:
            return
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        unsubscribe()
        logger.debug("Sensor fusion unsubscribed from orientation source")

    @property
    def running(self) -> bool:
        return self._unsubscribe is not None

    @property
    def has_reading(self) -> bool:
        """True once at least one usable sample has seeded the filter."""
        return self.state.calibrated

    # ------------------------------------------------------------------
    def update(self, sample: Optional[OrientationSample]) -> Attitude:
        """Fold one sample into the filter and return the smoothed attitude."""
        state = self.state
        if sample is None or sample.is_empty:
            logger.debug("Ignoring empty orientation sample")
            return state.smoothed

        now = sample.timestamp if sample.timestamp is not None else self._clock()
        raw = device_attitude(sample.alpha or 0.0, sample.beta or 0.0, sample.gamma or 0.0)

        if not state.calibrated:
            state.smoothed = raw
            state.previous = raw.copy()
            state.calibrated = True
            state.last_update = now
            return state.smoothed

        dt = now - state.last_update if state.last_update is not None else 0.0
        state.last_update = now

        alpha = self.config.alpha
        smoothed = state.smoothed
        smoothed.yaw = ema_circular(smoothed.yaw, raw.yaw, alpha)
        smoothed.pitch = ema_linear(smoothed.pitch, raw.pitch, alpha)
        smoothed.roll = ema_linear(smoothed.roll, raw.roll, alpha)

        if dt > 0.0:
            previous = state.previous
            state.velocity = Attitude(
                yaw=angle_diff(smoothed.yaw, previous.yaw) / dt,
                pitch=(smoothed.pitch - previous.pitch) / dt,
                roll=(smoothed.roll - previous.roll) / dt,
            )
        state.previous = smoothed.copy()
        return smoothed

    def calibrate(self) -> None:
        """Use the current smoothed yaw as the zero of :meth:`relative_yaw`."""
        self.state.reference_yaw = self.state.smoothed.yaw
        logger.debug("Sensor fusion calibrated at yaw {:.2f}", self.state.reference_yaw)

    def relative_yaw(self) -> float:
        """Smoothed yaw relative to the calibration reference, in ``[0, 360)``."""
        if self.state.reference_yaw is None:
            return 0.0
        return normalize_yaw(self.state.smoothed.yaw - self.state.reference_yaw)

    def pitch(self) -> float:
        return self.state.smoothed.pitch

    def roll(self) -> float:
        return self.state.smoothed.roll

    def is_stable(self, thresholds: Optional[Tuple[float, float]] = None) -> bool:
        """True when both yaw and pitch speeds are below the per-axis thresholds."""
        yaw_limit, pitch_limit = thresholds or self.config.stability_thresholds()
        velocity = self.state.velocity
        return abs(velocity.yaw) < yaw_limit and abs(velocity.pitch) < pitch_limit

    def angular_speed(self) -> float:
        """Euclidean norm of yaw and pitch angular velocity."""
        velocity = self.state.velocity
        return float(np.hypot(velocity.yaw, velocity.pitch))

    def motion_reading(self, thresholds: Optional[Tuple[float, float]] = None) -> MotionReading:
        return MotionReading(
            roll=self.roll(),
            is_stable=self.is_stable(thresholds),
            angular_speed=self.angular_speed(),
        )
