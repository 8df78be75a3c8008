"""Hysteresis state machine that gates automatic capture.

The gate walks ``IDLE -> APPROACHING -> ALIGNING -> STABLE -> CAPTURE_READY``
as the angular error to the active target shrinks and the device settles.
Each backward transition triggers at ``hysteresis`` times the threshold of the
forward transition it undoes, so an error hovering around one threshold under
sensor jitter cannot make the gate chatter. A held lock (STABLE or
CAPTURE_READY) is also dropped as soon as the fusion reports the device as
unstable.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
import time
from typing import Callable, Optional

from loguru import logger

from ..config import StateMachineConfig
from ..sensors.fusion import MotionReading
from .grid import CaptureTarget


class CaptureState(Enum):
    """Gate states in the order a successful capture visits them."""

    IDLE = "IDLE"
    APPROACHING = "APPROACHING"
    ALIGNING = "ALIGNING"
    STABLE = "STABLE"
    CAPTURE_READY = "CAPTURE_READY"
    CAPTURING = "CAPTURING"
    CAPTURED = "CAPTURED"

    def __str__(self) -> str:  # pragma: no cover - log friendly label
        return self.value


class Guidance(Enum):
    """Directional hint toward the active target."""

    TILT_TO_ZENITH = "tilt_to_zenith"
    TILT_TO_NADIR = "tilt_to_nadir"
    TILT_UP = "tilt_up"
    TILT_DOWN = "tilt_down"
    MOVE_RIGHT = "move_right"
    MOVE_LEFT = "move_left"
    HOLD_STEADY = "hold_steady"


@dataclass(slots=True, frozen=True)
class AlignmentReading:
    """Angular error between the device and the active target, in degrees."""

    target: Optional[CaptureTarget]
    yaw_diff: float
    pitch_diff: float

    @property
    def error(self) -> float:
        return math.hypot(self.yaw_diff, self.pitch_diff)


def guidance_for(
    target: CaptureTarget,
    yaw_diff: float,
    pitch_diff: float,
    *,
    pitch_tolerance: float = 15.0,
    yaw_tolerance: float = 10.0,
) -> Guidance:
    """Pick the hint that most reduces the remaining error to ``target``."""
    if target.pitch >= 90.0:
        return Guidance.TILT_TO_ZENITH
    if target.pitch <= -90.0:
        return Guidance.TILT_TO_NADIR
    if abs(pitch_diff) > pitch_tolerance:
        return Guidance.TILT_UP if pitch_diff > 0 else Guidance.TILT_DOWN
    if abs(yaw_diff) > yaw_tolerance:
        return Guidance.MOVE_RIGHT if yaw_diff > 0 else Guidance.MOVE_LEFT
    return Guidance.HOLD_STEADY


class CaptureStateMachine:
    """Decides when the active target may be captured."""

    def __init__(
        self,
        config: Optional[StateMachineConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or StateMachineConfig()
        self._clock = clock
        self.state = CaptureState.IDLE
        self.current_target: Optional[CaptureTarget] = None
        self.stable_since: Optional[float] = None
        self.last_state_change = clock()

    def update(self, alignment: AlignmentReading, motion: MotionReading) -> CaptureState:
        """Advance the gate with the latest alignment and motion readings."""
        if alignment.target is None:
            self._set_state(CaptureState.IDLE)
            self.stable_since = None
            return self.state

        self.current_target = alignment.target
        cfg = self.config
        error = alignment.error
        backoff = cfg.hysteresis
        roll = abs(motion.roll)
        speed = motion.angular_speed
        now = self._clock()

        if self.state is CaptureState.IDLE:
            if error < cfg.alignment_threshold:
                self._set_state(CaptureState.APPROACHING)

        elif self.state is CaptureState.APPROACHING:
            if error > cfg.alignment_threshold * backoff:
                self._set_state(CaptureState.IDLE)
            elif error < cfg.lock_threshold and roll < cfg.roll_tolerance:
                self._set_state(CaptureState.ALIGNING)

        elif self.state is CaptureState.ALIGNING:
            if error > cfg.lock_threshold * backoff:
                self._set_state(CaptureState.APPROACHING)
            elif motion.is_stable and speed < cfg.min_angular_speed:
                self._set_state(CaptureState.STABLE)
                self.stable_since = now

        elif self.state is CaptureState.STABLE:
            if self._lost_lock(error, motion):
                self._set_state(CaptureState.ALIGNING)
                self.stable_since = None
            elif self.stable_since is not None and now - self.stable_since >= cfg.stability_duration:
                self._set_state(CaptureState.CAPTURE_READY)

        elif self.state is CaptureState.CAPTURE_READY:
            if self._lost_lock(error, motion):
                self._set_state(CaptureState.ALIGNING)
                self.stable_since = None

        # CAPTURING and CAPTURED only move through capture()/complete()/reset().
        return self.state

    def _lost_lock(self, error: float, motion: MotionReading) -> bool:
        """True once a held lock must fall back to ALIGNING."""
        cfg = self.config
        if not motion.is_stable:
            return True
        return (
            motion.angular_speed > cfg.min_angular_speed * cfg.hysteresis
            or error > cfg.lock_threshold * cfg.hysteresis
        )

    # ------------------------------------------------------------------
    def can_capture(self) -> bool:
        return self.state is CaptureState.CAPTURE_READY

    def capture(self) -> bool:
        """Enter CAPTURING. Returns ``False`` (and does nothing) unless ready."""
        if not self.can_capture():
            return False
        self._set_state(CaptureState.CAPTURING)
        return True

    def complete(self) -> bool:
        """Mark the in-flight capture as done."""
        if self.state is not CaptureState.CAPTURING:
            return False
        self._set_state(CaptureState.CAPTURED)
        return True

    def reset(self) -> None:
        """Return to IDLE and forget the target and stability timer."""
        self._set_state(CaptureState.IDLE)
        self.current_target = None
        self.stable_since = None

    def stability_progress(self) -> float:
        """Fraction of the stability hold completed, for progress display."""
        if self.state is CaptureState.CAPTURE_READY:
            return 1.0
        if self.state is not CaptureState.STABLE or self.stable_since is None:
            return 0.0
        duration = self.config.stability_duration
        if duration <= 0.0:
            return 1.0
        elapsed = self._clock() - self.stable_since
        return max(0.0, min(1.0, elapsed / duration))

    def _set_state(self, new_state: CaptureState) -> None:
        if self.state is new_state:
            return
        logger.debug("Capture gate {} -> {}", self.state, new_state)
        self.state = new_state
        self.last_state_change = self._clock()
