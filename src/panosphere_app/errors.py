"""Failure taxonomy for capture and stitching."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FailureCode(Enum):
    """Categories of faults the capture pipeline reports."""

    SENSOR_UNAVAILABLE = "sensor_unavailable"
    CAPTURE_DEVICE_ERROR = "capture_device_error"
    PER_FRAME_STITCH_FAILURE = "per_frame_stitch_failure"
    INSUFFICIENT_FRAMES = "insufficient_frames"
    STITCH_ALLOCATION_FAILURE = "stitch_allocation_failure"
    NO_USABLE_FRAMES = "no_usable_frames"
    ENCODE_FAILURE = "encode_failure"

    def __str__(self) -> str:  # pragma: no cover - log friendly label
        return self.value


@dataclass(slots=True, frozen=True)
class StitchFailure:
    """Explicit failure value returned instead of a panorama."""

    code: FailureCode
    message: str

    def __bool__(self) -> bool:
        return False


class CaptureDeviceError(RuntimeError):
    """Raised by camera adapters when frames cannot be grabbed."""


class PerFrameStitchError(ValueError):
    """Raised when a single frame cannot be decoded or projected."""

    def __init__(self, frame_id: str, reason: str) -> None:
        super().__init__(f"Frame {frame_id}: {reason}")
        self.frame_id = frame_id
        self.reason = reason
