from __future__ import annotations

from typing import Optional

import cv2
import numpy as np

from .config import (
    ALPHA_GAIN,
    ALPHA_GAMMA,
    ALPHA_KNEE_HIGH,
    ALPHA_KNEE_LOW,
    ALPHA_OFFSET,
    EDGE_BAND_HIGH,
    EDGE_BAND_LOW,
    FEATHER_EDGE_STRENGTH,
)

_SMOOTH_KERNEL = np.array(
    [
        [0.0625, 0.125, 0.0625],
        [0.125, 0.25, 0.125],
        [0.0625, 0.125, 0.0625],
    ],
    dtype=np.float32,
)


def _as_matte(alpha: np.ndarray) -> np.ndarray:
    if alpha.ndim != 2:
        raise ValueError(f"Expected 2D alpha, got shape={alpha.shape}")
    return alpha.astype(np.float32, copy=False)


def _smoothstep(t: np.ndarray) -> np.ndarray:
    t = np.clip(t, 0.0, 1.0)
    return t * t * (3.0 - 2.0 * t)


def remap_fast(alpha: np.ndarray) -> np.ndarray:
    """
    Live-view alpha curve:
      < 0.01 -> 0, > 0.9 -> 1, < 0.15 -> x6 (clamped),
      otherwise linear between the knees times the gain.
    """
    a = _as_matte(alpha)
    knee = (a - ALPHA_KNEE_LOW) / (ALPHA_KNEE_HIGH - ALPHA_KNEE_LOW) * ALPHA_GAIN
    mid = np.where(a > ALPHA_KNEE_HIGH, 1.0, knee)
    out = np.where(a < 0.15, a * 6.0, mid)
    out = np.where(a > 0.9, 1.0, out)
    out = np.where(a < 0.01, 0.0, out)
    return np.clip(out, 0.0, 1.0).astype(np.float32)


def remap_high_quality(alpha: np.ndarray) -> np.ndarray:
    """
    Capture alpha curve: zero at or below the low knee, boosted weak alphas, smoothstep + gamma
    between the knees, a compressed ramp above the high knee, then a soft contrast S-curve on mid-tones.
    """
    a = _as_matte(alpha)

    weak = np.minimum(1.0, np.power(np.maximum(a, 0.0) * 8.0, 0.45) * 1.8)
    t = np.power(_smoothstep((a - ALPHA_KNEE_LOW) / (ALPHA_KNEE_HIGH - ALPHA_KNEE_LOW)), ALPHA_GAMMA)
    knee = t * ALPHA_GAIN + ALPHA_OFFSET
    curved = np.where(a < 0.15, weak, knee)

    s = (curved - 0.5) * 2.0
    s = s / (1.0 + np.abs(s) * 0.2)
    contrasted = (s + 1.0) * 0.5
    curved = np.where((curved > 0.05) & (curved < 0.95), contrasted, curved)

    out = np.where(a >= ALPHA_KNEE_HIGH, 0.95 + (a - ALPHA_KNEE_HIGH) * 0.05, curved)
    out = np.where(a <= ALPHA_KNEE_LOW, 0.0, out)
    return np.clip(out, 0.0, 1.0).astype(np.float32)


def smooth_near_edges(alpha: np.ndarray, low: float = EDGE_BAND_LOW, high: float = EDGE_BAND_HIGH) -> np.ndarray:
    """
    3x3 weighted blur, written back only on interior pixels whose alpha is strictly inside (low, high).
    """
    a = _as_matte(alpha)
    h, w = a.shape
    if h < 3 or w < 3:
        return a.copy()

    blurred = cv2.filter2D(a, -1, _SMOOTH_KERNEL, borderType=cv2.BORDER_REPLICATE)
    band = (a > low) & (a < high)
    band[0, :] = False
    band[-1, :] = False
    band[:, 0] = False
    band[:, -1] = False
    return np.where(band, blurred, a).astype(np.float32)


def light_smooth(alpha: np.ndarray) -> np.ndarray:
    """
    Cheap live-view cross average on every other row and column, only where 0.1 < a < 0.9.
    """
    a = _as_matte(alpha)
    h, w = a.shape
    out = a.copy()
    if h < 3 or w < 3:
        return out

    c = a[1 : h - 1 : 2, 1 : w - 1 : 2]
    up = a[0 : h - 2 : 2, 1 : w - 1 : 2]
    down = a[2:h:2, 1 : w - 1 : 2]
    left = a[1 : h - 1 : 2, 0 : w - 2 : 2]
    right = a[1 : h - 1 : 2, 2:w:2]
    avg = (c * 2.0 + up + down + left + right) / 6.0
    out[1 : h - 1 : 2, 1 : w - 1 : 2] = np.where((c > 0.1) & (c < 0.9), avg, c)
    return out


def feather_edges(
    alpha: np.ndarray,
    reference: Optional[np.ndarray] = None,
    live: bool = False,
    strength: float = FEATHER_EDGE_STRENGTH,
) -> np.ndarray:
    """
    Soften high-variance edge pixels.

    Pixels with 0.1 <= a <= 0.9 whose mean absolute difference to the in-bounds
    8-neighbourhood of `reference` exceeds `strength` get smoothstep((a - 0.3) / 0.4).
    Live mode only snaps the tails: < 0.05 -> 0, > 0.95 -> 1.
    """
    a = _as_matte(alpha)
    if live:
        out = np.where(a < 0.05, 0.0, a)
        return np.where(out > 0.95, 1.0, out).astype(np.float32)

    ref = a if reference is None else _as_matte(reference)
    if ref.shape != a.shape:
        raise ValueError(f"Reference shape {ref.shape} does not match alpha {a.shape}")

    h, w = a.shape
    padded = np.pad(ref, 1, mode="constant")
    valid = np.pad(np.ones_like(ref, dtype=np.float32), 1, mode="constant")

    diff_sum = np.zeros_like(a)
    count = np.zeros_like(a)
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            if dx == 0 and dy == 0:
                continue
            neighbour = padded[1 + dy : 1 + dy + h, 1 + dx : 1 + dx + w]
            inside = valid[1 + dy : 1 + dy + h, 1 + dx : 1 + dx + w]
            diff_sum += np.abs(a - neighbour) * inside
            count += inside

    edge = diff_sum / np.maximum(count, 1.0)
    candidate = (a >= 0.1) & (a <= 0.9) & (count > 0) & (edge > strength)
    return np.where(candidate, _smoothstep((a - 0.3) / 0.4), a).astype(np.float32)


def refine_mask_edges(alpha: np.ndarray, level: int) -> np.ndarray:
    """
    Level-based cleanup (0-100):
      <= 5  : untouched
      <= 10 : binary threshold at 0.5
      else  : binary threshold at 0.4, then a light Gaussian blur
    """
    a = _as_matte(alpha)
    if level <= 5:
        return a.copy()
    if level <= 10:
        return (a > 0.5).astype(np.float32)
    binary = (a > 0.4).astype(np.float32)
    return cv2.GaussianBlur(binary, (0, 0), sigmaX=0.5, sigmaY=0.5)


def feather_radius(level: int) -> int:
    return max(1, (int(level) * 5) // 100)


def feather(alpha: np.ndarray, radius: int) -> np.ndarray:
    """Gaussian feathering with sigma = radius * 0.5."""
    a = _as_matte(alpha)
    if radius <= 0:
        return a.copy()
    sigma = float(radius) * 0.5
    out = cv2.GaussianBlur(a, (0, 0), sigmaX=sigma, sigmaY=sigma)
    return np.clip(out, 0.0, 1.0).astype(np.float32, copy=False)


class TemporalAlphaFilter:
    """
    Blends each live alpha map with the two previous ones (80/20, then 90/10).
    History is dropped whenever the map size changes.
    """

    def __init__(self):
        self._previous: Optional[np.ndarray] = None
        self._previous2: Optional[np.ndarray] = None

    def apply(self, alpha: np.ndarray) -> np.ndarray:
        a = _as_matte(alpha)
        if self._previous is not None and self._previous.shape != a.shape:
            self.reset()

        if self._previous is not None:
            a = a * 0.8 + self._previous * 0.2
            if self._previous2 is not None:
                a = a * 0.9 + self._previous2 * 0.1

        self._previous2 = self._previous
        self._previous = a.copy()
        return a.astype(np.float32, copy=False)

    def reset(self) -> None:
        self._previous = None
        self._previous2 = None


def refine_live_alpha(
    alpha: np.ndarray,
    invert: bool = False,
    gpu: bool = False,
    temporal: Optional[TemporalAlphaFilter] = None,
) -> np.ndarray:
    """
    Live-view refinement of a streaming matte.

    CPU: light smoothing, fast remap, tail snapping.
    GPU: adds temporal blending, the full 3x3 edge pass, variance feathering
    and a slight mid-tone compression.
    """
    a = _as_matte(alpha)
    if invert:
        a = 1.0 - a
    if gpu and temporal is not None:
        a = temporal.apply(a)

    a = light_smooth(a)
    if gpu:
        a = smooth_near_edges(a)

    out = feather_edges(remap_fast(a), reference=a, live=not gpu)
    if gpu:
        mid = (out > 0.1) & (out < 0.9)
        out = np.where(mid, 0.5 + (out - 0.5) * 0.95, out)
    return np.clip(out, 0.0, 1.0).astype(np.float32)


def refine_still_alpha(alpha: np.ndarray, edge_refinement: int) -> np.ndarray:
    """
    Capture refinement:
      1) 3x3 smoothing near edges
      2) level <= 5: high-quality remap + variance feathering against the smoothed map
         otherwise: level-based threshold on the smoothed model matte
      3) Gaussian feathering
    """
    smoothed = smooth_near_edges(alpha)
    if edge_refinement <= 5:
        out = feather_edges(remap_high_quality(smoothed), reference=smoothed)
    else:
        # thresholds apply to the model matte, never to the remapped curve
        out = refine_mask_edges(smoothed, edge_refinement)
    return feather(out, feather_radius(edge_refinement))


def refine_fallback_alpha(alpha: np.ndarray, edge_refinement: int) -> np.ndarray:
    """Live fallback path: half-strength edge cleanup (never below level 3) + feathering."""
    level = max(3, int(edge_refinement) // 2)
    out = refine_mask_edges(alpha, level)
    return feather(out, feather_radius(level))
