import pytest

from panosphere_app.config import SensorFusionConfig
from panosphere_app.math.geometry import angle_diff
from panosphere_app.sensors.fusion import OrientationSample, SensorFusion, device_attitude


def _sample(alpha=0.0, beta=90.0, gamma=0.0, t=0.0) -> OrientationSample:
    return OrientationSample(alpha=alpha, beta=beta, gamma=gamma, timestamp=t)


class _FakeSource:
    def __init__(self) -> None:
        self.callbacks = []

    def subscribe(self, callback):
        self.callbacks.append(callback)

        def _unsubscribe():
            self.callbacks.remove(callback)

        return _unsubscribe

    def emit(self, sample: OrientationSample) -> None:
        for callback in list(self.callbacks):
            callback(sample)


def test_upright_device_reads_level_forward():
    attitude = device_attitude(0.0, 90.0, 0.0)
    assert attitude.yaw == pytest.approx(0.0, abs=1e-9)
    assert attitude.pitch == pytest.approx(0.0, abs=1e-9)
    assert attitude.roll == pytest.approx(0.0, abs=1e-9)


def test_turning_compass_heading_maps_to_inverted_yaw():
    assert device_attitude(30.0, 90.0, 0.0).yaw == pytest.approx(330.0)
    assert device_attitude(1.0, 90.0, 0.0).yaw == pytest.approx(359.0)


def test_tilting_back_raises_pitch():
    assert device_attitude(0.0, 120.0, 0.0).pitch == pytest.approx(30.0)
    assert device_attitude(0.0, 60.0, 0.0).pitch == pytest.approx(-30.0)


def test_first_sample_seeds_without_transient():
    fusion = SensorFusion()
    state = fusion.update(_sample(alpha=40.0, beta=100.0, t=0.0))
    expected = device_attitude(40.0, 100.0, 0.0)
    assert state.yaw == pytest.approx(expected.yaw)
    assert state.pitch == pytest.approx(expected.pitch)
    assert fusion.has_reading


def test_missing_components_are_zero_and_empty_samples_ignored():
    fusion = SensorFusion()
    assert fusion.update(None).yaw == 0.0
    assert fusion.update(OrientationSample()).pitch == 0.0
    assert not fusion.has_reading

    state = fusion.update(OrientationSample(beta=90.0, timestamp=0.0))
    assert state.yaw == pytest.approx(0.0, abs=1e-9)
    assert fusion.has_reading


def test_relative_yaw_is_zero_before_and_right_after_calibration():
    fusion = SensorFusion()
    fusion.update(_sample(alpha=77.0, t=0.0))
    assert fusion.relative_yaw() == 0.0
    fusion.update(_sample(alpha=70.0, t=0.1))
    fusion.calibrate()
    assert fusion.relative_yaw() == 0.0


def test_relative_yaw_stays_in_range_for_any_sequence():
    fusion = SensorFusion()
    fusion.update(_sample(alpha=10.0, t=0.0))
    fusion.calibrate()
    for step in range(1, 200):
        fusion.update(_sample(alpha=(step * 37.0) % 360.0, beta=90.0 + (step % 7), t=step * 0.05))
        assert 0.0 <= fusion.relative_yaw() < 360.0


def test_wraparound_smooths_as_short_motion():
    fusion = SensorFusion(SensorFusionConfig(alpha=0.6))
    fusion.update(_sample(alpha=1.0, t=0.0))  # yaw 359
    state = fusion.update(_sample(alpha=359.0, t=0.1))  # yaw 1
    moved = angle_diff(state.yaw, 359.0)
    assert 0.0 < moved <= 2.0
    assert fusion.state.velocity.yaw == pytest.approx(moved / 0.1)
    assert fusion.angular_speed() < 20.0


def test_velocity_and_stability():
    fusion = SensorFusion()
    fusion.update(_sample(alpha=0.0, t=0.0))
    fusion.update(_sample(alpha=0.0, t=0.1))
    assert fusion.is_stable()
    assert fusion.angular_speed() == pytest.approx(0.0, abs=1e-6)

    fusion.update(_sample(alpha=350.0, t=0.2))  # yaw jumps to 10
    assert not fusion.is_stable()
    assert fusion.angular_speed() == pytest.approx(60.0)
    assert fusion.is_stable((100.0, 100.0))

    reading = fusion.motion_reading()
    assert reading.is_stable is False
    assert reading.angular_speed == pytest.approx(60.0)


def test_non_increasing_timestamp_keeps_previous_velocity():
    fusion = SensorFusion()
    fusion.update(_sample(alpha=0.0, t=1.0))
    fusion.update(_sample(alpha=350.0, t=1.5))
    velocity = fusion.state.velocity.yaw
    fusion.update(_sample(alpha=350.0, t=1.5))
    assert fusion.state.velocity.yaw == velocity


def test_clock_used_when_sample_has_no_timestamp():
    now = [10.0]
    fusion = SensorFusion(clock=lambda: now[0])
    fusion.update(OrientationSample(alpha=0.0, beta=90.0, gamma=0.0))
    now[0] = 10.5
    fusion.update(OrientationSample(alpha=0.0, beta=100.0, gamma=0.0))
    assert fusion.state.velocity.pitch == pytest.approx(6.0 / 0.5)


def test_start_and_stop_manage_subscription():
    source = _FakeSource()
    fusion = SensorFusion()
    fusion.start(source)
    fusion.start(source)
    assert len(source.callbacks) == 1
    source.emit(_sample(alpha=0.0, beta=95.0, t=0.0))
    assert fusion.has_reading

    fusion.stop()
    assert source.callbacks == []
    assert not fusion.running
    fusion.stop()
