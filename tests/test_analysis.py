import numpy as np
import pytest

from matting.analysis import AlphaThresholds, ScaleBoost, analyze, sample_statistics


def _person(h: int = 64, w: int = 64) -> np.ndarray:
    a = np.zeros((h, w), dtype=np.float32)
    a[h // 4 : 3 * h // 4, w // 4 : 3 * w // 4] = 1.0
    return a


def test_sampling_grid_size():
    stats = sample_statistics(np.zeros((64, 64), dtype=np.float32))
    # stride 64 // 32 = 2 on both axes
    assert stats.samples == 32 * 32


def test_center_bounds_are_inclusive():
    a = np.zeros((8, 8), dtype=np.float32)
    a[2:7, 2:7] = 1.0  # int(0.25*8)=2 .. int(0.75*8)=6 inclusive
    stats = sample_statistics(a)
    assert stats.center_mean == pytest.approx(1.0)
    assert stats.border_mean == pytest.approx(0.0)
    assert stats.samples == 64


def test_healthy_person_matte():
    decision = analyze(_person())
    assert not decision.degenerate
    assert not decision.invert
    assert decision.stats.center_mean > 0.5


def test_empty_matte_is_degenerate():
    decision = analyze(np.zeros((48, 64), dtype=np.float32))
    assert decision.degenerate
    assert decision.stats.max == 0.0


def test_faint_matte_is_degenerate():
    decision = analyze(np.full((64, 64), 0.01, dtype=np.float32))
    assert decision.degenerate


def test_inverted_matte_detected():
    decision = analyze(1.0 - _person())
    assert decision.possibly_inverted
    assert decision.invert


def test_auto_invert_on_sparse_bright_alpha():
    a = np.zeros((64, 64), dtype=np.float32)
    a[:4, :4] = 1.0
    decision = analyze(a)
    assert decision.auto_invert
    assert decision.invert


def test_thresholds_are_configurable():
    a = np.full((64, 64), 0.03, dtype=np.float32)
    assert analyze(a).degenerate
    lenient = AlphaThresholds(degenerate_peak_max=0.01, degenerate_mean_max=0.01, degenerate_center_max=0.01)
    assert not analyze(a, lenient).degenerate


def test_rejects_non_2d():
    with pytest.raises(ValueError):
        sample_statistics(np.zeros((4, 4, 3), dtype=np.float32))


def test_scale_boost_caps_and_holds():
    boost = ScaleBoost()
    values = [boost.update(True) for _ in range(5)]
    assert values[0] == pytest.approx(1.25)
    assert values[-1] == pytest.approx(2.0)
    assert boost.hold == 30

    for _ in range(30):
        assert boost.update(False) == pytest.approx(2.0)
    assert boost.hold == 0
    assert boost.update(False) == pytest.approx(1.9)


def test_scale_boost_decays_to_one():
    boost = ScaleBoost()
    boost.bump()
    for _ in range(200):
        boost.relax()
    assert boost.value == 1.0
    boost.bump()
    boost.reset()
    assert (boost.value, boost.hold) == (1.0, 0)


def _center_border(center: float, border: float, size: int = 64) -> np.ndarray:
    a = np.full((size, size), border, dtype=np.float32)
    lo, hi = int(size * 0.25), int(size * 0.75)
    a[lo : hi + 1, lo : hi + 1] = center
    return a


def test_bright_center_dim_border_is_healthy():
    decision = analyze(_center_border(0.6, 0.1))
    assert decision.stats.center_mean == pytest.approx(0.6)
    assert decision.stats.border_mean == pytest.approx(0.1)
    assert not decision.degenerate
    assert not decision.invert


def test_dim_center_bright_border_is_inverted():
    decision = analyze(_center_border(0.05, 0.5))
    assert decision.stats.center_mean == pytest.approx(0.05)
    assert decision.possibly_inverted
    assert decision.invert
    assert not decision.degenerate
