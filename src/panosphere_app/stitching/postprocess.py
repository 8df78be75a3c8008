"""Whole-canvas passes run after every frame has been composited."""
from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np
from loguru import logger

from .raster import exposure_gain, valid_pixel_mask

_CENTER_WEIGHTED = np.array([[1, 1, 1], [1, 8, 1], [1, 1, 1]], dtype=np.float32) / 16.0
_NEUTRAL_FILL = np.array([128, 128, 128, 255], dtype=np.uint8)


def _fill_from_edge(region: np.ndarray, valid: np.ndarray, band: int) -> int:
    """Fill ``region`` from row 0 inward with each column's first valid colour.

    ``region`` starts at the pole edge (row 0 is the outermost row) and may be
    a flipped view. Columns without any valid pixel borrow the colour of the
    nearest column that has one, within the first ``band`` rows only.
    Returns the number of pixels written.
    """
    rows, width = valid.shape
    has_valid = valid.any(axis=0)
    first_valid = np.argmax(valid, axis=0)
    columns = np.arange(width)

    if has_valid.any():
        colors = region[first_valid, columns].copy()
        donors = np.flatnonzero(has_valid)
        empty = np.flatnonzero(~has_valid)
        if empty.size:
            # Nearest donor column, measured around the 360 degree seam.
            distance = np.abs(empty[:, None] - donors[None, :])
            distance = np.minimum(distance, width - distance)
            colors[empty] = colors[donors[np.argmin(distance, axis=1)]]
    else:
        colors = np.tile(_NEUTRAL_FILL, (width, 1))

    depth = np.where(has_valid, first_valid, band)
    fill = np.arange(rows)[:, None] < depth[None, :]
    colors[:, 3] = 255
    region[fill] = np.broadcast_to(colors[None, :, :], region.shape)[fill]
    return int(fill.sum())


def _blur_rows_wrapped(canvas: np.ndarray, y0: int, y1: int, radius: int) -> None:
    """Horizontal box blur of rows ``[y0, y1)`` that wraps around the seam."""
    if y1 <= y0 or radius < 1:
        return
    width = canvas.shape[1]
    radius = min(radius, width // 2)
    rows = canvas[y0:y1]
    padded = np.concatenate([rows[:, -radius:], rows, rows[:, :radius]], axis=1)
    blurred = cv2.blur(padded, (2 * radius + 1, 1))
    canvas[y0:y1] = blurred[:, radius : radius + width]


def fill_poles(
    canvas: np.ndarray,
    *,
    band_fraction: float = 0.20,
    blur_fraction: float = 0.15,
    blur_radius: int = 10,
    threshold: int = 15,
) -> int:
    """Fill uncovered zenith and nadir areas and soften the fill boundary.

    For each column the first valid pixel found walking inward from the pole
    is propagated outward to the edge. Returns the number of filled pixels.
    """
    height = canvas.shape[0]
    half = height // 2
    band = max(1, min(half, int(height * band_fraction)))
    valid = valid_pixel_mask(canvas, threshold)

    filled = _fill_from_edge(canvas[:half], valid[:half], band)
    filled += _fill_from_edge(canvas[height - 1 : half - 1 : -1], valid[height - 1 : half - 1 : -1], band)

    blur_rows = max(0, min(half, int(height * blur_fraction)))
    _blur_rows_wrapped(canvas, 0, blur_rows, blur_radius)
    _blur_rows_wrapped(canvas, height - blur_rows, height, blur_radius)
    logger.debug("Pole fill wrote {} pixels", filled)
    return filled


def suppress_hot_spots(canvas: np.ndarray, threshold: float = 40.0, pull: float = 0.7) -> int:
    """Pull pixels much brighter than their 3x3 neighbourhood toward its mean.

    Removes isolated flash and glare highlights. Returns the number of pixels
    adjusted.
    """
    color = np.ascontiguousarray(canvas[..., :3])
    mean = cv2.blur(color, (3, 3))
    luma = cv2.cvtColor(color, cv2.COLOR_BGR2GRAY).astype(np.int16)
    mean_luma = cv2.cvtColor(mean, cv2.COLOR_BGR2GRAY).astype(np.int16)
    hot_rows, hot_cols = np.nonzero((luma - mean_luma) > threshold)
    if hot_rows.size == 0:
        return 0
    original = color[hot_rows, hot_cols].astype(np.float32)
    target = mean[hot_rows, hot_cols].astype(np.float32)
    adjusted = original + pull * (target - original)
    canvas[hot_rows, hot_cols, :3] = np.clip(np.rint(adjusted), 0, 255).astype(np.uint8)
    return int(hot_rows.size)


def mean_pass(canvas: np.ndarray) -> None:
    """3x3 box mean over the whole canvas; alpha is left as is."""
    canvas[..., :3] = cv2.blur(np.ascontiguousarray(canvas[..., :3]), (3, 3))


def median_pass(canvas: np.ndarray) -> None:
    """3x3 median filter that removes thin ghosting at misaligned overlaps."""
    canvas[..., :3] = cv2.medianBlur(np.ascontiguousarray(canvas[..., :3]), 3)


def seam_blur(canvas: np.ndarray, radius: int = 1) -> None:
    """Separable horizontal then vertical box blur for residual seam lines."""
    if radius < 1:
        return
    size = 2 * radius + 1
    color = np.ascontiguousarray(canvas[..., :3])
    color = cv2.blur(color, (size, 1))
    canvas[..., :3] = cv2.blur(color, (1, size))


def center_weighted_smooth(canvas: np.ndarray) -> None:
    canvas[..., :3] = cv2.filter2D(np.ascontiguousarray(canvas[..., :3]), -1, _CENTER_WEIGHTED)


def normalize_canvas_exposure(
    canvas: np.ndarray,
    target: float,
    strength: float,
    limits: Tuple[float, float],
    *,
    stride: int = 4,
    threshold: int = 15,
) -> float:
    """Rescale the whole panorama so its mean brightness nears ``target``."""
    step = max(1, int(stride))
    sample = canvas[::step, ::step]
    valid = valid_pixel_mask(sample, threshold)
    gain = exposure_gain(sample[..., :3][valid], target, strength, limits)
    if gain != 1.0:
        canvas[..., :3] = cv2.convertScaleAbs(np.ascontiguousarray(canvas[..., :3]), alpha=gain)
    logger.debug("Canvas exposure gain {:.3f}", gain)
    return gain
