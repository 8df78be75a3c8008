"""Raster buffers and compositing primitives.

Canvases are row-major ``(height, width, 4)`` BGRA ``uint8`` arrays. Working
layers (feathered frames, warp buffers) are ``float32`` BGRA arrays with every
channel, alpha included, on the 0-255 scale.
"""
from __future__ import annotations

from typing import Iterable, Optional, Tuple

import numpy as np
from loguru import logger


def allocate_canvas(
    tiers: Iterable[Tuple[int, int]],
    max_pixels: Optional[int] = None,
) -> Optional[np.ndarray]:
    """Allocate an opaque black canvas at the first resolution tier that fits.

    Tiers above ``max_pixels`` or failing with ``MemoryError`` are skipped.
    Returns ``None`` when no tier can be allocated.
    """
    for width, height in tiers:
        if max_pixels is not None and width * height > max_pixels:
            logger.warning("Canvas {}x{} exceeds pixel budget {}; trying next tier", width, height, max_pixels)
            continue
        try:
            canvas = np.zeros((height, width, 4), dtype=np.uint8)
            canvas[..., 3] = 255
        except MemoryError:
            logger.warning("Unable to allocate {}x{} canvas; trying next tier", width, height)
            continue
        return canvas
    return None


def composite_over(dst: np.ndarray, src: np.ndarray, x: int, y: int) -> bool:
    """Draw ``src`` over ``dst`` in place with its top-left corner at ``(x, y)``.

    Straight-alpha source-over; the parts of ``src`` outside ``dst`` are
    clipped. ``dst`` may be a ``uint8`` canvas or a ``float32`` layer.
    Returns ``False`` when nothing overlaps.
    """
    dst_h, dst_w = dst.shape[:2]
    src_h, src_w = src.shape[:2]
    x0, y0 = max(x, 0), max(y, 0)
    x1, y1 = min(x + src_w, dst_w), min(y + src_h, dst_h)
    if x0 >= x1 or y0 >= y1:
        return False

    patch = src[y0 - y : y1 - y, x0 - x : x1 - x].astype(np.float32, copy=False)
    src_alpha = patch[..., 3:4] / 255.0
    region = dst[y0:y1, x0:x1]
    base = region.astype(np.float32)
    dst_alpha = base[..., 3:4] / 255.0

    keep = dst_alpha * (1.0 - src_alpha)
    out_alpha = src_alpha + keep
    safe_alpha = np.where(out_alpha > 0.0, out_alpha, 1.0)
    out_color = (patch[..., :3] * src_alpha + base[..., :3] * keep) / safe_alpha

    if dst.dtype == np.uint8:
        region[..., :3] = np.clip(np.rint(out_color), 0, 255).astype(np.uint8)
        region[..., 3:4] = np.clip(np.rint(out_alpha * 255.0), 0, 255).astype(np.uint8)
    else:
        region[..., :3] = out_color
        region[..., 3:4] = out_alpha * 255.0
    return True


def valid_pixel_mask(canvas: np.ndarray, threshold: int, alpha_min: int = 250) -> np.ndarray:
    """Opaque pixels with at least one channel brighter than ``threshold``."""
    opaque = canvas[..., 3] >= alpha_min
    return opaque & (canvas[..., :3] > threshold).any(axis=2)


def exposure_gain(
    samples: np.ndarray,
    target: float,
    strength: float,
    limits: Tuple[float, float],
) -> float:
    """Gain moving the mean brightness of ``samples`` (N x 3) toward ``target``.

    ``strength`` of 1 reaches the target exactly; the gain is clamped to
    ``limits``. Returns 1.0 when there is nothing to measure.
    """
    if samples.size == 0:
        return 1.0
    brightness = float(samples.reshape(-1, 3).astype(np.float64).mean(axis=0).mean())
    if brightness < 1.0:
        return 1.0
    gain = 1.0 + strength * (target / brightness - 1.0)
    low, high = limits
    return float(min(max(gain, low), high))
