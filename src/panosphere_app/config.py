"""Session configuration for capture gating and stitching."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
import json
from pathlib import Path
from typing import Any, Optional, Tuple

from loguru import logger


@dataclass(slots=True)
class SensorFusionConfig:
    """Smoothing and stability parameters for the orientation filter."""

    alpha: float = 0.6
    stable_yaw_speed: float = 4.0  # deg/s
    stable_pitch_speed: float = 4.0  # deg/s

    def stability_thresholds(self) -> Tuple[float, float]:
        return self.stable_yaw_speed, self.stable_pitch_speed


@dataclass(slots=True)
class StateMachineConfig:
    """Thresholds driving the capture gate.

    Angles are in degrees, ``stability_duration`` in seconds and
    ``min_angular_speed`` in degrees per second. Every transition that backs
    off uses ``hysteresis`` times the threshold of the matching tightening
    transition.
    """

    alignment_threshold: float = 8.0
    lock_threshold: float = 3.0
    stability_duration: float = 0.6
    roll_tolerance: float = 5.0
    min_angular_speed: float = 10.0
    hysteresis: float = 1.5


@dataclass(slots=True)
class RingConfig:
    """One latitude ring of capture targets."""

    name: str
    pitch: float
    count: int
    offset: float = 0.0


@dataclass(slots=True)
class StitchConfig:
    """Parameters for the spherical stitcher.

    ``resolution_tiers`` is tried in order; a tier that cannot be allocated
    (or exceeds ``max_canvas_pixels``) falls through to the next one.
    """

    resolution_tiers: Tuple[Tuple[int, int], ...] = ((8192, 4096), (4096, 2048))
    max_canvas_pixels: Optional[int] = None
    min_frames: int = 2
    default_hfov: float = 75.0
    slice_count: int = 1200
    slice_overlap: float = 1.5
    warp_width_factor: float = 1.5
    horizontal_feather: float = 0.30
    vertical_feather: float = 0.15
    pole_feather_pitch: float = 60.0
    max_abs_pitch: float = 89.9
    exposure_target: float = 128.0
    exposure_strength: float = 0.6
    exposure_gain_limits: Tuple[float, float] = (0.5, 2.0)
    exposure_sample_stride: int = 4
    pole_band_fraction: float = 0.20
    pole_blur_fraction: float = 0.15
    pole_blur_radius: int = 10
    valid_pixel_threshold: int = 15
    hot_spot_threshold: float = 40.0
    hot_spot_pull: float = 0.7
    seam_blur_radius: int = 1
    jpeg_quality: int = 95


def _default_rings() -> Tuple[RingConfig, ...]:
    return (
        RingConfig("zenith", 90.0, 1),
        RingConfig("sky_high", 60.0, 8, 22.5),
        RingConfig("sky", 30.0, 10),
        RingConfig("horizon", 0.0, 10, 18.0),
        RingConfig("floor", -30.0, 10),
        RingConfig("floor_low", -60.0, 8, 22.5),
        RingConfig("nadir", -90.0, 1),
    )


@dataclass(slots=True)
class SessionConfig:
    """Everything a capture session consumes from outside."""

    sensor: SensorFusionConfig = field(default_factory=SensorFusionConfig)
    state_machine: StateMachineConfig = field(default_factory=StateMachineConfig)
    rings: Tuple[RingConfig, ...] = field(default_factory=_default_rings)
    stitch: StitchConfig = field(default_factory=StitchConfig)
    hfov: float = 75.0
    capture_jpeg_quality: int = 90

    def validate(self) -> None:
        """Raise ``ValueError`` naming the first out-of-range setting."""
        sm = self.state_machine
        if not 0.0 < self.sensor.alpha <= 1.0:
            raise ValueError(f"sensor.alpha must be in (0, 1], got {self.sensor.alpha}")
        for name in ("alignment_threshold", "lock_threshold", "roll_tolerance", "min_angular_speed"):
            if getattr(sm, name) <= 0.0:
                raise ValueError(f"state_machine.{name} must be positive")
        if sm.lock_threshold > sm.alignment_threshold:
            raise ValueError("state_machine.lock_threshold must not exceed alignment_threshold")
        if sm.stability_duration < 0.0:
            raise ValueError("state_machine.stability_duration must not be negative")
        if sm.hysteresis < 1.0:
            raise ValueError("state_machine.hysteresis must be at least 1.0")
        if not self.rings:
            raise ValueError("rings must contain at least one ring")
        for ring in self.rings:
            if ring.count < 1:
                raise ValueError(f"ring {ring.name} must have at least one point")
            if not -90.0 <= ring.pitch <= 90.0:
                raise ValueError(f"ring {ring.name} pitch must be within [-90, 90]")
        st = self.stitch
        if not st.resolution_tiers:
            raise ValueError("stitch.resolution_tiers must not be empty")
        for width, height in st.resolution_tiers:
            if width <= 0 or height <= 0 or width != 2 * height:
                raise ValueError(f"stitch resolution {width}x{height} must be positive and 2:1")
        if st.min_frames < 1:
            raise ValueError("stitch.min_frames must be at least 1")
        if not 0.0 <= st.horizontal_feather < 0.5 or not 0.0 <= st.vertical_feather < 0.5:
            raise ValueError("stitch feather fractions must be within [0, 0.5)")
        if st.slice_count < 1 or st.slice_overlap < 1.0 or st.warp_width_factor < 1.0:
            raise ValueError("stitch slice settings must be at least 1")
        if not 0 < self.hfov < 180:
            raise ValueError("hfov must be within (0, 180)")


def _build(cls: type, payload: Any, prefix: str) -> Any:
    if not isinstance(payload, dict):
        raise ValueError(f"{prefix} must be an object")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ValueError(f"Unknown {prefix} settings: {', '.join(unknown)}")
    kwargs = {}
    for key, value in payload.items():
        if isinstance(value, list):
            value = tuple(tuple(item) if isinstance(item, list) else item for item in value)
        kwargs[key] = value
    return cls(**kwargs)


def session_config_from_dict(payload: dict[str, Any]) -> SessionConfig:
    """Build and validate a :class:`SessionConfig` from plain JSON data."""
    known = {"sensor", "state_machine", "rings", "stitch", "hfov", "capture_jpeg_quality"}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ValueError(f"Unknown session settings: {', '.join(unknown)}")

    config = SessionConfig()
    if "sensor" in payload:
        config.sensor = _build(SensorFusionConfig, payload["sensor"], "sensor")
    if "state_machine" in payload:
        config.state_machine = _build(StateMachineConfig, payload["state_machine"], "state_machine")
    if "stitch" in payload:
        config.stitch = _build(StitchConfig, payload["stitch"], "stitch")
    if "rings" in payload:
        rings = payload["rings"]
        if not isinstance(rings, list):
            raise ValueError("rings must be a list")
        config.rings = tuple(_build(RingConfig, ring, "ring") for ring in rings)
    if "hfov" in payload:
        config.hfov = float(payload["hfov"])
    if "capture_jpeg_quality" in payload:
        config.capture_jpeg_quality = int(payload["capture_jpeg_quality"])
    config.validate()
    return config


def load_session_config(path: Path) -> SessionConfig:
    """Read a JSON session configuration file."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"{path.name} is not valid JSON: {exc}") from exc
    config = session_config_from_dict(payload)
    logger.info("Loaded session configuration from {}", path)
    return config
