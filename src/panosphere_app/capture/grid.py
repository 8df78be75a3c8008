"""Capture target grid on the viewing sphere."""
from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Iterable, Optional, Sequence

from ..config import RingConfig
from ..math.geometry import angle_diff, normalize_yaw


@dataclass(slots=True)
class CaptureTarget:
    """One point on the capture grid.

    ``completed`` only ever flips from ``False`` to ``True`` during a session;
    :meth:`reset` is reserved for an explicit session reset.
    """

    id: str
    yaw: float
    pitch: float
    completed: bool = False
    thumbnail: Optional[bytes] = None

    def mark_completed(self, thumbnail: Optional[bytes] = None) -> None:
        self.completed = True
        if thumbnail is not None:
            self.thumbnail = thumbnail

    def reset(self) -> None:
        self.completed = False
        self.thumbnail = None


def build_capture_grid(rings: Iterable[RingConfig]) -> list[CaptureTarget]:
    """Expand ring definitions into targets, ring by ring, in capture order."""
    targets: list[CaptureTarget] = []
    for ring in rings:
        step = 360.0 / ring.count
        for index in range(ring.count):
            targets.append(
                CaptureTarget(
                    id=f"{ring.name}_{index}",
                    yaw=normalize_yaw(index * step + ring.offset),
                    pitch=float(ring.pitch),
                )
            )
    return targets


def compact_layout(points_per_ring: int = 8, ring_pitch: float = 45.0) -> tuple[RingConfig, ...]:
    """Three rings at ``+ring_pitch``, horizon and ``-ring_pitch`` plus both poles."""
    half_step = 180.0 / points_per_ring
    return (
        RingConfig("zenith", 90.0, 1),
        RingConfig("upper", ring_pitch, points_per_ring, half_step),
        RingConfig("horizon", 0.0, points_per_ring),
        RingConfig("lower", -ring_pitch, points_per_ring, half_step),
        RingConfig("nadir", -90.0, 1),
    )


def next_target(targets: Sequence[CaptureTarget]) -> Optional[CaptureTarget]:
    """First target in grid order that still needs a photo."""
    for target in targets:
        if not target.completed:
            return target
    return None


def match_target(
    targets: Sequence[CaptureTarget],
    yaw: float,
    pitch: float,
    *,
    tolerance: float = 15.0,
) -> Optional[CaptureTarget]:
    """Closest open target within ``tolerance`` degrees of ``(yaw, pitch)``."""
    best: Optional[CaptureTarget] = None
    best_error = tolerance
    for target in targets:
        if target.completed:
            continue
        # Yaw is meaningless at the poles.
        yaw_error = 0.0 if abs(target.pitch) >= 90.0 else angle_diff(target.yaw, yaw)
        error = math.hypot(yaw_error, target.pitch - pitch)
        if error <= best_error:
            best, best_error = target, error
    return best
