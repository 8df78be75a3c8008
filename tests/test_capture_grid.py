import pytest

from panosphere_app.capture.grid import (
    CaptureTarget,
    build_capture_grid,
    compact_layout,
    match_target,
    next_target,
)
from panosphere_app.config import RingConfig, SessionConfig


def test_default_grid_has_52_targets_in_range():
    targets = build_capture_grid(SessionConfig().rings)
    assert len(targets) == 52
    assert len({t.id for t in targets}) == 52
    for target in targets:
        assert 0.0 <= target.yaw < 360.0
        assert -90.0 <= target.pitch <= 90.0
        assert not target.completed
    assert targets[0].id == "zenith_0"
    assert targets[-1].id == "nadir_0"


def test_ring_offset_is_applied_and_wrapped():
    targets = build_capture_grid([RingConfig("ring", 10.0, 4, 300.0)])
    assert [t.yaw for t in targets] == pytest.approx([300.0, 30.0, 120.0, 210.0])
    assert [t.id for t in targets] == ["ring_0", "ring_1", "ring_2", "ring_3"]


def test_compact_layout_covers_three_rings_and_poles():
    targets = build_capture_grid(compact_layout())
    assert len(targets) == 26
    pitches = sorted({t.pitch for t in targets})
    assert pitches == [-90.0, -45.0, 0.0, 45.0, 90.0]
    upper = [t for t in targets if t.pitch == 45.0]
    assert upper[0].yaw == pytest.approx(22.5)


def test_next_target_skips_completed():
    targets = build_capture_grid(compact_layout())
    targets[0].mark_completed(b"thumb")
    assert targets[0].thumbnail == b"thumb"
    assert next_target(targets) is targets[1]

    for target in targets:
        target.mark_completed()
    assert next_target(targets) is None


def test_reset_clears_completion():
    target = CaptureTarget(id="t", yaw=0.0, pitch=0.0)
    target.mark_completed(b"x")
    target.reset()
    assert not target.completed
    assert target.thumbnail is None


def test_match_target_picks_closest_across_wraparound():
    targets = build_capture_grid(compact_layout())
    match = match_target(targets, 358.0, 2.0)
    assert match is not None
    assert match.id == "horizon_0"

    assert match_target(targets, 20.0, 20.0) is None


def test_match_target_ignores_yaw_at_poles():
    targets = build_capture_grid(compact_layout())
    match = match_target(targets, 123.0, 85.0)
    assert match is not None
    assert match.id == "zenith_0"

    targets[0].mark_completed()
    assert match_target(targets, 123.0, 85.0) is None
