"""Equirectangular stitching of posed capture frames."""

from .engine import Panorama, StitchingEngine, StitchResult

__all__ = [
    "Panorama",
    "StitchResult",
    "StitchingEngine",
]
