"""Per-frame stages: decode, roll correction, feathering, exposure, spherical warp."""
from __future__ import annotations

import math
from typing import Tuple

import cv2
import numpy as np

from ..errors import PerFrameStitchError
from ..math.geometry import normalize_yaw, projected_pitch, vertical_fov, yaw_pitch_to_pixel
from ..models.frame import Frame
from .raster import composite_over, exposure_gain


def decode_frame_image(frame: Frame) -> np.ndarray:
    """Return the frame image as a BGRA ``uint8`` array.

    Raises
    ------
    PerFrameStitchError
        If the image is missing, undecodable or of an unsupported layout.
    """
    image = frame.image
    if image is None:
        raise PerFrameStitchError(frame.id, "no image data")
    if isinstance(image, (bytes, bytearray, memoryview)):
        buffer = np.frombuffer(image, dtype=np.uint8)
        if buffer.size == 0:
            raise PerFrameStitchError(frame.id, "empty image data")
        decoded = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
        if decoded is None:
            raise PerFrameStitchError(frame.id, "image could not be decoded")
        image = decoded
    if not isinstance(image, np.ndarray) or image.size == 0:
        raise PerFrameStitchError(frame.id, "image is empty")
    if image.dtype != np.uint8:
        raise PerFrameStitchError(frame.id, f"unsupported pixel type {image.dtype}")

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGRA)
    channels = image.shape[2] if image.ndim == 3 else 0
    if channels == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2BGRA)
    if channels == 4:
        return np.ascontiguousarray(image)
    raise PerFrameStitchError(frame.id, f"unsupported image shape {image.shape}")


def correct_roll(image: np.ndarray, roll_deg: float) -> np.ndarray:
    """Rotate ``image`` about its centre to cancel the device roll.

    Pixels uncovered by the rotation become transparent.
    """
    if abs(roll_deg) < 1e-3:
        return image
    height, width = image.shape[:2]
    # cv2 angles turn counter-clockwise on screen, undoing a clockwise roll.
    matrix = cv2.getRotationMatrix2D((width / 2.0, height / 2.0), roll_deg, 1.0)
    return cv2.warpAffine(
        image,
        matrix,
        (width, height),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0, 0),
    )


def _ramp(length: int, fade_fraction: float, fade_start: bool, fade_end: bool) -> np.ndarray:
    ramp = np.ones(length, dtype=np.float32)
    fade = int(round(length * fade_fraction))
    if fade <= 0:
        return ramp
    edge = (np.arange(fade, dtype=np.float32) + 0.5) / fade
    if fade_start:
        ramp[:fade] = np.minimum(ramp[:fade], edge)
    if fade_end:
        ramp[-fade:] = np.minimum(ramp[-fade:], edge[::-1])
    return ramp


def feather_mask(
    width: int,
    height: int,
    pitch_deg: float,
    horizontal_fraction: float,
    vertical_fraction: float,
    pole_pitch: float = 60.0,
) -> np.ndarray:
    """2D alpha gradient fading a frame toward its edges.

    Left and right edges always fade. The top edge keeps full opacity when the
    frame looks above ``pole_pitch`` and the bottom edge when it looks below
    ``-pole_pitch``, so polar frames cover the pole without a soft hole.
    """
    horizontal = _ramp(width, horizontal_fraction, True, True)
    vertical = _ramp(
        height,
        vertical_fraction,
        fade_start=pitch_deg <= pole_pitch,
        fade_end=pitch_deg >= -pole_pitch,
    )
    return np.outer(vertical, horizontal)


def apply_feather(image: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Return a ``float32`` copy of ``image`` with its alpha multiplied by ``mask``."""
    layer = image.astype(np.float32)
    layer[..., 3] *= mask
    return layer


def normalize_exposure(
    layer: np.ndarray,
    target: float,
    strength: float,
    limits: Tuple[float, float],
    stride: int = 4,
    alpha_min: float = 250.0,
) -> Tuple[np.ndarray, float]:
    """Scale colour channels so the opaque area's mean brightness nears ``target``.

    Returns the adjusted layer and the gain applied.
    """
    step = max(1, int(stride))
    sample = layer[::step, ::step]
    opaque = sample[..., 3] >= alpha_min
    gain = exposure_gain(sample[..., :3][opaque], target, strength, limits)
    if gain != 1.0:
        np.clip(layer[..., :3] * gain, 0.0, 255.0, out=layer[..., :3])
    return layer, gain


def spherical_warp(
    layer: np.ndarray,
    pitch_deg: float,
    hfov_deg: float,
    canvas_width: int,
    canvas_height: int,
    *,
    slice_count: int = 1200,
    slice_overlap: float = 1.5,
    warp_width_factor: float = 1.5,
) -> np.ndarray:
    """Project a gnomonic frame onto equirectangular space slice by slice.

    The frame is cut into thin vertical slices across its horizontal field of
    view. Each slice is placed at its true yaw offset ``atan(u)`` and stretched
    between the spherical pitches of its top and bottom edges, shifted by the
    difference between its true mid pitch and the frame's nominal pitch.
    Slices are drawn ``slice_overlap`` times wider than their nominal width so
    rounding never leaves gaps.

    Returns a ``float32`` BGRA warp buffer centred on the frame's optical axis.
    """
    height, width = layer.shape[:2]
    aspect = width / float(height)
    vfov_deg = vertical_fov(hfov_deg, aspect)
    pitch_rad = math.radians(pitch_deg)
    tan_h = math.tan(math.radians(hfov_deg) / 2.0)
    tan_v = math.tan(math.radians(vfov_deg) / 2.0)
    px_per_rad_y = canvas_height / math.pi

    proj_w = int(math.ceil(hfov_deg * warp_width_factor / 360.0 * canvas_width))
    proj_h = int(math.ceil(2.0 * vfov_deg / 180.0 * canvas_height))
    warp = np.zeros((proj_h, proj_w, 4), dtype=np.float32)

    slices = max(1, min(int(slice_count), width))
    src_slice_w = width / float(slices)
    dest_w = max(1, int(round(canvas_width / 360.0 * (hfov_deg / slices) * slice_overlap)))

    for index in range(slices):
        u = 2.0 * tan_h * (index / float(slices) - 0.5)
        yaw_offset = math.degrees(math.atan(u))
        dest_x = proj_w / 2.0 + yaw_offset / 360.0 * canvas_width

        p_mid = projected_pitch(u, 0.0, pitch_rad)
        p_top = projected_pitch(u, tan_v, pitch_rad)
        p_bot = projected_pitch(u, -tan_v, pitch_rad)
        dy = (pitch_rad - p_mid) * px_per_rad_y
        slice_h = (p_top - p_bot) * px_per_rad_y

        sx0 = int(math.floor(index * src_slice_w))
        sx1 = min(width, sx0 + max(1, int(math.ceil(src_slice_w))))
        strip = layer[:, sx0:sx1]
        top = proj_h / 2.0 - slice_h / 2.0 + dy
        if slice_h < 0.0:
            # Past the pole the slice lands upside down.
            strip = strip[::-1]
            top += slice_h
            slice_h = -slice_h
        out_h = int(round(slice_h))
        if out_h < 1:
            continue
        resized = cv2.resize(
            np.ascontiguousarray(strip),
            (dest_w, out_h),
            interpolation=cv2.INTER_LINEAR,
        )
        composite_over(warp, resized, int(round(dest_x)), int(round(top)))
    return warp


def place_on_canvas(canvas: np.ndarray, warp: np.ndarray, yaw_deg: float, pitch_deg: float) -> None:
    """Composite a warp buffer centred on ``(yaw, pitch)``, wrapping across the seam."""
    canvas_h, canvas_w = canvas.shape[:2]
    warp_h, warp_w = warp.shape[:2]
    center_x, center_y = yaw_pitch_to_pixel(normalize_yaw(yaw_deg), pitch_deg, canvas_w, canvas_h)
    x = int(round(center_x - warp_w / 2.0))
    y = int(round(center_y - warp_h / 2.0))
    for offset in (-canvas_w, 0, canvas_w):
        composite_over(canvas, warp, x + offset, y)
