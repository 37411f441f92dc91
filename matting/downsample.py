from __future__ import annotations

import math
from typing import Tuple

from .config import (
    LIVE_ALIGN,
    LIVE_MAX_OUTPUT_WIDTH,
    LIVE_MIN_DIM,
    STILL_ALIGN,
    STILL_MIN_SIZE,
    STILL_SIZE_HIGH,
    STILL_SIZE_LOW,
    STILL_SIZE_MEDIUM,
)
from .contracts import Quality

_STILL_SIZES = {
    Quality.LOW: STILL_SIZE_LOW,
    Quality.MEDIUM: STILL_SIZE_MEDIUM,
    Quality.HIGH: STILL_SIZE_HIGH,
}


def _round_half_away(x: float, digits: int) -> float:
    scale = 10.0**digits
    return math.copysign(math.floor(abs(x) * scale + 0.5) / scale, x)


def compute_ratio(
    width: int,
    height: int,
    target_pixel_area: float,
    max_dimension: int,
    min_ratio: float = 0.1,
) -> float:
    """
    Downsample ratio that keeps roughly target_pixel_area pixels:
      sqrt(target / (w*h)), capped by max_dimension / max(w, h) and 1.0, floored at min_ratio.
    """
    if width <= 0 or height <= 0:
        return 1.0

    area = max(1.0, float(width) * float(height))
    ratio = math.sqrt(target_pixel_area / area)
    limit = min(1.0, float(max_dimension) / float(max(width, height)))
    ratio = min(ratio, limit)
    ratio = max(min_ratio, ratio)
    return _round_half_away(ratio, 3)


def align_to_multiple(value: int, multiple: int = LIVE_ALIGN) -> int:
    """Round up to a multiple (never below one multiple). Idempotent."""
    if multiple <= 1:
        return max(1, int(value))
    return max(multiple, ((int(value) + multiple - 1) // multiple) * multiple)


def aligned_dimension(original: int, ratio: float, multiple: int = LIVE_ALIGN, minimum: int = LIVE_MIN_DIM) -> int:
    scaled = align_to_multiple(int(original * ratio), multiple)
    return min(int(original), max(minimum, scaled))


def working_size(width: int, height: int, ratio: float) -> Tuple[int, int]:
    """Stride-aligned (width, height) for the streaming model."""
    return aligned_dimension(width, ratio), aligned_dimension(height, ratio)


def still_processing_size(width: int, height: int, quality: Quality) -> Tuple[int, int]:
    """
    Still-capture resize policy:
      1) scale the longer side to the quality tier (320 / 400 / 512)
      2) keep each axis >= 256
      3) round to the nearest multiple of 32 (half up)
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image size: {(width, height)}")

    target = _STILL_SIZES.get(quality, STILL_SIZE_MEDIUM)
    scale = float(target) / float(max(width, height))
    if width > height:
        w, h = target, int(height * scale)
    else:
        w, h = int(width * scale), target
    w = max(STILL_MIN_SIZE, w)
    h = max(STILL_MIN_SIZE, h)
    half = STILL_ALIGN // 2
    w = ((w + half) // STILL_ALIGN) * STILL_ALIGN
    h = ((h + half) // STILL_ALIGN) * STILL_ALIGN
    return w, h


def live_output_size(width: int, height: int, max_width: int = LIVE_MAX_OUTPUT_WIDTH) -> Tuple[int, int]:
    out_w = max(1, min(int(width), max_width))
    out_h = max(1, int(round(out_w / float(max(1, width)) * height)))
    return out_w, out_h
