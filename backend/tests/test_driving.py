from __future__ import annotations

import pytest

from worktime.driving import (
    DrivingDetector,
    LocationSample,
    MotionSample,
    PushSource,
    apply_hysteresis,
    score_step,
)


T0 = 1_709_532_000_000
SHAKING = MotionSample(magnitude=1.3, sample_time_ms=T0)
STILL = MotionSample(magnitude=1.0, sample_time_ms=T0)


def fix(speed: float, accuracy: float = 10.0, at: int = T0) -> LocationSample:
    return LocationSample(speed_kmh=speed, accuracy_m=accuracy, sample_time_ms=at)


def test_fast_and_shaking_adds_two():
    assert score_step(0, fix(50), SHAKING, T0 + 500) == 2


def test_fast_without_motion_adds_one():
    assert score_step(0, fix(50), STILL, T0 + 500) == 1


def test_slow_speed_subtracts_two():
    assert score_step(0, fix(1), SHAKING, T0 + 500) == -2


def test_ambiguous_speed_without_motion_subtracts_one():
    assert score_step(0, fix(5), STILL, T0 + 500) == -1


def test_ambiguous_speed_with_motion_holds():
    assert score_step(1, fix(5), SHAKING, T0 + 500) == 1


def test_stale_speed_nudges_from_motion_only():
    stale_fix = fix(60, at=T0 - 9000)
    assert score_step(0, stale_fix, SHAKING, T0) == pytest.approx(0.2)
    assert score_step(0, stale_fix, STILL, T0) == pytest.approx(-0.2)


def test_no_fresh_signal_holds_score():
    assert score_step(2.5, fix(60, at=T0 - 9000), MotionSample(1.5, T0 - 9000), T0) == 2.5


def test_score_is_clamped():
    assert score_step(6, fix(90), SHAKING, T0) == 6
    assert score_step(-6, fix(0), STILL, T0) == -6


def test_hysteresis_dead_zone():
    assert apply_hysteresis(3, False) is True
    assert apply_hysteresis(2.9, False) is False
    assert apply_hysteresis(-2.9, True) is True
    assert apply_hysteresis(-3, True) is False


def test_motion_magnitude_from_acceleration():
    sample = MotionSample.from_acceleration(0.0, 0.6, 0.8, T0)
    assert sample.magnitude == pytest.approx(1.0)


def started_detector():
    location, motion = PushSource("location"), PushSource("motion")
    detector = DrivingDetector(location, motion)
    detector.start()
    return detector, location, motion


def test_single_sample_never_flips_driving():
    detector, location, motion = started_detector()
    location.publish(fix(80))
    motion.publish(SHAKING)
    assert detector.step(T0 + 500) is False
    assert detector.score == 2
    assert detector.step(T0 + 1000) is True


def test_inaccurate_fixes_are_discarded():
    detector, location, motion = started_detector()
    location.publish(fix(80, accuracy=61))
    motion.publish(STILL)
    detector.step(T0 + 500)
    assert detector.score == pytest.approx(-0.2)
    assert detector.is_driving is False


def test_driving_turns_off_after_stopping():
    detector, location, motion = started_detector()
    location.publish(fix(80))
    motion.publish(SHAKING)
    for offset in range(1, 5):
        detector.step(T0 + offset * 500)
    assert detector.is_driving is True
    location.publish(fix(0, at=T0 + 2500))
    motion.publish(MotionSample(1.0, T0 + 2500))
    detector.step(T0 + 3000)
    detector.step(T0 + 3500)
    assert detector.is_driving is True
    for offset in range(8, 12):
        detector.step(T0 + offset * 500)
    assert detector.is_driving is False


def test_stop_is_idempotent_and_forces_false():
    detector, location, motion = started_detector()
    detector.is_driving = True
    detector.stop()
    detector.stop()
    assert detector.is_driving is False
    assert detector.running is False
    assert location.subscriber_count == 0
    assert motion.subscriber_count == 0


def test_stopped_detector_ignores_steps():
    detector = DrivingDetector(PushSource(), PushSource())
    assert detector.step(T0) is False
    assert detector.score == 0


class DeniedSource:
    def subscribe(self, callback):
        raise PermissionError("location permission denied")


def test_denied_location_degrades_to_motion_only():
    motion = PushSource("motion")
    detector = DrivingDetector(DeniedSource(), motion)
    detector.start()
    assert detector.running is True
    motion.publish(SHAKING)
    detector.step(T0 + 500)
    assert detector.score == pytest.approx(0.2)
