from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .config import (
    ANALYSIS_GRID,
    AUTO_INVERT_MEAN_MAX,
    AUTO_INVERT_PEAK_MIN,
    DEGENERATE_CENTER_MAX,
    DEGENERATE_MEAN_MAX,
    DEGENERATE_PEAK_MAX,
    INVERT_BORDER_FACTOR,
    INVERT_CENTER_MAX,
    SCALE_BOOST_DECAY,
    SCALE_BOOST_HOLD_FRAMES,
    SCALE_BOOST_MAX,
    SCALE_BOOST_STEP,
)


@dataclass(frozen=True)
class AlphaThresholds:
    invert_center_max: float = INVERT_CENTER_MAX
    invert_border_factor: float = INVERT_BORDER_FACTOR
    auto_invert_mean_max: float = AUTO_INVERT_MEAN_MAX
    auto_invert_peak_min: float = AUTO_INVERT_PEAK_MIN
    degenerate_peak_max: float = DEGENERATE_PEAK_MAX
    degenerate_mean_max: float = DEGENERATE_MEAN_MAX
    degenerate_center_max: float = DEGENERATE_CENTER_MAX


@dataclass(frozen=True)
class AlphaStatistics:
    mean: float
    min: float
    max: float
    center_mean: float
    border_mean: float
    samples: int


@dataclass(frozen=True)
class AlphaDecision:
    stats: AlphaStatistics
    possibly_inverted: bool
    auto_invert: bool
    degenerate: bool

    @property
    def invert(self) -> bool:
        return self.possibly_inverted or self.auto_invert


def sample_statistics(alpha: np.ndarray, grid: int = ANALYSIS_GRID) -> AlphaStatistics:
    """
    Coarse statistics over a strided grid (stride = dim // grid per axis).
    Center is the middle 50% of each axis with inclusive bounds; border is the rest.
    """
    if alpha.ndim != 2:
        raise ValueError(f"Expected 2D alpha, got shape={alpha.shape}")
    h, w = alpha.shape
    if h == 0 or w == 0:
        return AlphaStatistics(0.0, 0.0, 0.0, 0.0, 0.0, 0)

    step_x = max(1, w // grid)
    step_y = max(1, h // grid)
    ys = np.arange(0, h, step_y)
    xs = np.arange(0, w, step_x)
    samples = alpha[np.ix_(ys, xs)].astype(np.float32, copy=False)

    cx0, cx1 = int(w * 0.25), int(w * 0.75)
    cy0, cy1 = int(h * 0.25), int(h * 0.75)
    in_x = (xs >= cx0) & (xs <= cx1)
    in_y = (ys >= cy0) & (ys <= cy1)
    center_mask = in_y[:, None] & in_x[None, :]

    center = samples[center_mask]
    border = samples[~center_mask]
    return AlphaStatistics(
        mean=float(samples.mean()),
        min=float(samples.min()),
        max=float(samples.max()),
        center_mean=float(center.mean()) if center.size else 0.0,
        border_mean=float(border.mean()) if border.size else 0.0,
        samples=int(samples.size),
    )


def analyze(alpha: np.ndarray, thresholds: AlphaThresholds = AlphaThresholds()) -> AlphaDecision:
    stats = sample_statistics(alpha)
    t = thresholds
    possibly_inverted = stats.center_mean < t.invert_center_max and stats.border_mean > stats.center_mean * t.invert_border_factor
    auto_invert = stats.mean < t.auto_invert_mean_max and stats.max > t.auto_invert_peak_min
    degenerate = stats.max < t.degenerate_peak_max or (
        stats.mean < t.degenerate_mean_max and stats.center_mean < t.degenerate_center_max
    )
    return AlphaDecision(
        stats=stats,
        possibly_inverted=possibly_inverted,
        auto_invert=auto_invert,
        degenerate=degenerate,
    )


class ScaleBoost:
    """
    Hysteresis on the streaming max-dimension multiplier.

    Degenerate output bumps the boost and holds it for a number of frames;
    healthy output first burns the hold, then decays the boost back to 1.0.
    """

    def __init__(
        self,
        maximum: float = SCALE_BOOST_MAX,
        step: float = SCALE_BOOST_STEP,
        decay: float = SCALE_BOOST_DECAY,
        hold_frames: int = SCALE_BOOST_HOLD_FRAMES,
    ):
        self.maximum = maximum
        self.step = step
        self.decay = decay
        self.hold_frames = hold_frames
        self.value = 1.0
        self.hold = 0

    def bump(self) -> float:
        self.value = min(self.maximum, self.value * self.step)
        self.hold = self.hold_frames
        return self.value

    def relax(self) -> float:
        if self.hold > 0:
            self.hold -= 1
        else:
            self.value = max(1.0, self.value * self.decay)
        return self.value

    def update(self, degenerate: bool) -> float:
        return self.bump() if degenerate else self.relax()

    def reset(self) -> None:
        self.value = 1.0
        self.hold = 0
