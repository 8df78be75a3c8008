"""Spherical stitching engine.

Turns the frames of a capture session into one equirectangular panorama.
Frames are drawn poles first and horizon last so the horizon band, where
viewers look most, ends up on top of any polar artifacts. Each frame is
roll-corrected, feathered, exposure-normalized, warped onto the sphere slice by
slice and composited at its yaw. The finished canvas then gets its poles
filled and a series of seam, ghost and exposure clean-up passes.

The engine is all-or-nothing: a run either returns a :class:`Panorama` or a
:class:`~panosphere_app.errors.StitchFailure`. Individual frames that cannot be
decoded or projected are skipped.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import time
from typing import Optional, Sequence, Union

import cv2
import numpy as np
from loguru import logger

from ..config import StitchConfig
from ..errors import FailureCode, PerFrameStitchError, StitchFailure
from ..math.geometry import effective_hfov
from ..models.frame import Frame
from . import postprocess
from .raster import allocate_canvas
from .warp import (
    apply_feather,
    correct_roll,
    decode_frame_image,
    feather_mask,
    normalize_exposure,
    place_on_canvas,
    spherical_warp,
)


@dataclass(slots=True)
class Panorama:
    """Result of a successful stitch run."""

    encoded: bytes
    width: int
    height: int
    raster: np.ndarray  # BGRA canvas the encoded image was produced from
    used_frames: tuple[str, ...] = ()
    skipped_frames: tuple[str, ...] = ()

    @property
    def byte_size(self) -> int:
        return len(self.encoded)

    def save(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.encoded)
        logger.info("Saved {}x{} panorama to {}", self.width, self.height, path)
        return path


StitchResult = Union[Panorama, StitchFailure]


class StitchingEngine:
    """Builds equirectangular panoramas from posed frames."""

    def __init__(self, config: Optional[StitchConfig] = None) -> None:
        self.config = config or StitchConfig()

    def stitch(self, frames: Sequence[Frame]) -> StitchResult:
        cfg = self.config
        if not frames:
            return StitchFailure(FailureCode.INSUFFICIENT_FRAMES, "No frames to stitch")
        if len(frames) < cfg.min_frames:
            return StitchFailure(
                FailureCode.INSUFFICIENT_FRAMES,
                f"Need at least {cfg.min_frames} frames, got {len(frames)}",
            )

        canvas = allocate_canvas(cfg.resolution_tiers, cfg.max_canvas_pixels)
        if canvas is None:
            return StitchFailure(
                FailureCode.STITCH_ALLOCATION_FAILURE,
                "No resolution tier could be allocated",
            )
        height, width = canvas.shape[:2]
        started = time.perf_counter()
        logger.info("Stitching {} frames into {}x{} canvas", len(frames), width, height)

        ordered = sorted(frames, key=lambda frame: abs(frame.sensors.pitch), reverse=True)
        used: list[str] = []
        skipped: list[str] = []
        for frame in ordered:
            try:
                self._draw_frame(canvas, frame)
            except PerFrameStitchError as exc:
                logger.warning("Skipping frame ({}): {}", FailureCode.PER_FRAME_STITCH_FAILURE, exc)
                skipped.append(frame.id)
                continue
            except cv2.error as exc:
                logger.warning(
                    "Skipping frame {} ({}): OpenCV error {}",
                    frame.id,
                    FailureCode.PER_FRAME_STITCH_FAILURE,
                    exc,
                )
                skipped.append(frame.id)
                continue
            used.append(frame.id)

        if not used:
            return StitchFailure(FailureCode.NO_USABLE_FRAMES, "None of the frames could be stitched")

        self._finish(canvas)

        ok, buffer = cv2.imencode(
            ".jpg",
            np.ascontiguousarray(canvas[..., :3]),
            [int(cv2.IMWRITE_JPEG_QUALITY), int(cfg.jpeg_quality)],
        )
        if not ok:
            return StitchFailure(FailureCode.ENCODE_FAILURE, "Panorama could not be encoded")

        logger.info(
            "Stitched {} frames ({} skipped) in {:.2f}s",
            len(used),
            len(skipped),
            time.perf_counter() - started,
        )
        return Panorama(
            encoded=buffer.tobytes(),
            width=width,
            height=height,
            raster=canvas,
            used_frames=tuple(used),
            skipped_frames=tuple(skipped),
        )

    # ------------------------------------------------------------------
    def _draw_frame(self, canvas: np.ndarray, frame: Frame) -> None:
        cfg = self.config
        image = decode_frame_image(frame)
        img_h, img_w = image.shape[:2]

        limit = cfg.max_abs_pitch
        pitch = max(-limit, min(limit, frame.sensors.pitch))
        hfov = effective_hfov(frame.camera.hfov or cfg.default_hfov, img_w, img_h)
        if not 0.0 < hfov < 180.0:
            raise PerFrameStitchError(frame.id, f"unusable field of view {hfov}")

        rotated = correct_roll(image, frame.sensors.roll)
        mask = feather_mask(
            img_w,
            img_h,
            pitch,
            cfg.horizontal_feather,
            cfg.vertical_feather,
            cfg.pole_feather_pitch,
        )
        layer = apply_feather(rotated, mask)
        layer, gain = normalize_exposure(
            layer,
            cfg.exposure_target,
            cfg.exposure_strength,
            cfg.exposure_gain_limits,
            cfg.exposure_sample_stride,
        )
        canvas_h, canvas_w = canvas.shape[:2]
        warp = spherical_warp(
            layer,
            pitch,
            hfov,
            canvas_w,
            canvas_h,
            slice_count=cfg.slice_count,
            slice_overlap=cfg.slice_overlap,
            warp_width_factor=cfg.warp_width_factor,
        )
        place_on_canvas(canvas, warp, frame.sensors.yaw, pitch)
        logger.debug(
            "Placed {} at yaw {:.1f} pitch {:.1f} (hfov {:.1f}, gain {:.2f})",
            frame.id,
            frame.sensors.yaw,
            pitch,
            hfov,
            gain,
        )

    def _finish(self, canvas: np.ndarray) -> None:
        cfg = self.config
        postprocess.fill_poles(
            canvas,
            band_fraction=cfg.pole_band_fraction,
            blur_fraction=cfg.pole_blur_fraction,
            blur_radius=cfg.pole_blur_radius,
            threshold=cfg.valid_pixel_threshold,
        )
        postprocess.suppress_hot_spots(canvas, cfg.hot_spot_threshold, cfg.hot_spot_pull)
        postprocess.mean_pass(canvas)
        postprocess.median_pass(canvas)
        postprocess.seam_blur(canvas, cfg.seam_blur_radius)
        postprocess.center_weighted_smooth(canvas)
        postprocess.normalize_canvas_exposure(
            canvas,
            cfg.exposure_target,
            cfg.exposure_strength,
            cfg.exposure_gain_limits,
            stride=cfg.exposure_sample_stride,
            threshold=cfg.valid_pixel_threshold,
        )
