"""Captured frame and manifest domain models."""
from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Any, Dict, Optional, Union
import uuid

import numpy as np

FrameImage = Union[bytes, np.ndarray]


@dataclass(slots=True, frozen=True)
class SensorReading:
    """Device pose at the moment of capture, in degrees."""

    yaw: float
    pitch: float
    roll: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {"yaw": self.yaw, "pitch": self.pitch, "roll": self.roll}


@dataclass(slots=True, frozen=True)
class CameraInfo:
    """Optics of the capturing camera."""

    hfov: float = 75.0  # degrees

    def to_dict(self) -> Dict[str, float]:
        return {"hfov": self.hfov}


@dataclass(slots=True, frozen=True)
class Frame:
    """One captured photo with the pose it was taken at.

    ``image`` holds either encoded bytes (as persisted) or a decoded BGR(A)
    array. Frames are immutable once created.
    """

    id: str
    timestamp: float
    sensors: SensorReading
    camera: CameraInfo = field(default_factory=CameraInfo)
    image: Optional[FrameImage] = None
    target_id: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        """Return the persisted manifest entry (image bytes are stored separately)."""
        record: Dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "sensors": self.sensors.to_dict(),
            "camera": self.camera.to_dict(),
        }
        if self.target_id is not None:
            record["target_id"] = self.target_id
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any], image: Optional[FrameImage] = None) -> "Frame":
        """Rebuild a frame from a manifest entry.

        Raises
        ------
        ValueError
            If required keys are missing or not numeric.
        """
        try:
            sensors = record["sensors"]
            camera = record.get("camera") or {}
            return cls(
                id=str(record["id"]),
                timestamp=float(record["timestamp"]),
                sensors=SensorReading(
                    yaw=float(sensors["yaw"]),
                    pitch=float(sensors["pitch"]),
                    roll=float(sensors.get("roll") or 0.0),
                ),
                camera=CameraInfo(hfov=float(camera.get("hfov") or CameraInfo().hfov)),
                image=image,
                target_id=record.get("target_id"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid frame record {record!r}: {exc}") from exc


def new_session_id() -> str:
    return f"tour_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


@dataclass(slots=True)
class Manifest:
    """Ordered frames of one capture session. Append-only until reset."""

    session_id: str = field(default_factory=new_session_id)
    frames: list[Frame] = field(default_factory=list)

    def append(self, frame: Frame) -> None:
        if any(existing.id == frame.id for existing in self.frames):
            raise ValueError(f"Frame id {frame.id} already recorded")
        self.frames.append(frame)

    def next_frame_id(self) -> str:
        used = {frame.id for frame in self.frames}
        index = len(self.frames)
        while f"frame_{index}.jpg" in used:
            index += 1
        return f"frame_{index}.jpg"

    def __len__(self) -> int:
        return len(self.frames)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.session_id, "frames": [frame.to_record() for frame in self.frames]}
