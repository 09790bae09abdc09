from __future__ import annotations

import pytest

from worktime import timer
from worktime.schemas import ActivityStatus, BreakTracker, Snapshot, TimerMode


T0 = 1_709_532_000_000


def at(minutes: float = 0, seconds: float = 0) -> int:
    return T0 + int((minutes * 60 + seconds) * 1000)


def started() -> Snapshot:
    return timer.start_shift(Snapshot(), T0, session_id="42")


def run_break(snapshot: Snapshot, start: int, end: int) -> Snapshot:
    snapshot = timer.toggle_break(snapshot, start)
    return timer.toggle_break(snapshot, end)


def test_start_shift_opens_working_segment():
    snapshot = started()
    assert snapshot.status is ActivityStatus.WORKING
    assert snapshot.timer_mode is TimerMode.SIX_HOUR
    assert snapshot.shift_start_ms == T0
    assert snapshot.segment_start_ms == T0
    assert snapshot.external_session_id == "42"
    assert snapshot.totals.work == 0


def test_start_shift_requires_idle():
    with pytest.raises(timer.TransitionRejected):
        timer.start_shift(started(), at(1))


@pytest.mark.parametrize("action", [timer.toggle_break, timer.toggle_poa])
def test_toggles_rejected_while_idle(action):
    with pytest.raises(timer.TransitionRejected):
        action(Snapshot(), T0)


def test_end_shift_rejected_while_idle():
    with pytest.raises(timer.TransitionRejected):
        timer.end_shift(Snapshot(), T0)


def test_no_time_lost_across_transitions():
    snapshot = started()
    snapshot = timer.toggle_poa(snapshot, at(10, 0.4))
    snapshot = timer.toggle_break(snapshot, at(25, 0.9))
    snapshot = timer.toggle_break(snapshot, at(31, 0.2))
    snapshot = timer.toggle_poa(snapshot, at(50, 0.7))
    snapshot = timer.toggle_poa(snapshot, at(55, 0.6))
    now = at(61, 0.5)
    view = timer.live_view(snapshot, now)
    assert view.work_seconds + view.poa_seconds + view.break_seconds == view.shift_seconds
    _, finalized = timer.end_shift(snapshot, now)
    totals = finalized.totals
    assert totals.work + totals.poa + totals.break_ == (now - T0) // 1000


def test_work_rolls_into_cycle_but_poa_does_not():
    snapshot = started()
    snapshot = timer.toggle_poa(snapshot, at(60))
    snapshot = timer.toggle_poa(snapshot, at(90))
    assert snapshot.totals.work == 3600
    assert snapshot.totals.poa == 1800
    assert snapshot.work_cycle_total == 3600
    assert snapshot.status is ActivityStatus.WORKING


def test_break_of_44_59_does_not_reset_cycle():
    snapshot = started()
    snapshot = run_break(snapshot, at(120), at(120 + 44, 59))
    assert snapshot.work_cycle_total == 7200
    assert snapshot.break_tracker == BreakTracker(has_15_min_taken=True, last_break_segment_seconds=44 * 60 + 59)


def test_break_of_45_minutes_resets_cycle():
    snapshot = started()
    snapshot = run_break(snapshot, at(120), at(165))
    assert snapshot.work_cycle_total == 0
    assert snapshot.break_tracker == BreakTracker()
    assert snapshot.totals.work == 7200
    assert snapshot.totals.break_ == 45 * 60


def test_split_break_resets_once_at_second_break():
    snapshot = started()
    snapshot = run_break(snapshot, at(60), at(75))
    assert snapshot.work_cycle_total == 3600
    assert snapshot.break_tracker.has_15_min_taken

    snapshot = run_break(snapshot, at(135), at(165))
    assert snapshot.work_cycle_total == 0
    assert snapshot.break_tracker == BreakTracker()

    snapshot = run_break(snapshot, at(225), at(240))
    assert snapshot.work_cycle_total == 3600


def test_split_break_in_reverse_order_resets():
    snapshot = started()
    snapshot = run_break(snapshot, at(60), at(90))
    assert snapshot.work_cycle_total == 3600
    snapshot = run_break(snapshot, at(150), at(165))
    assert snapshot.work_cycle_total == 0


def test_two_short_breaks_do_not_reset():
    snapshot = started()
    snapshot = run_break(snapshot, at(60), at(75))
    snapshot = run_break(snapshot, at(135), at(150))
    assert snapshot.work_cycle_total == 7200


def test_fifteen_minute_break_promotes_to_nine_hours():
    snapshot = started()
    snapshot = run_break(snapshot, at(60), at(75))
    assert snapshot.timer_mode is TimerMode.NINE_HOUR
    view = timer.live_view(snapshot, at(75))
    assert view.work_time_remaining == 9 * 3600 - 3600


def test_short_break_keeps_six_hour_mode():
    snapshot = started()
    snapshot = run_break(snapshot, at(60), at(74, 59))
    assert snapshot.timer_mode is TimerMode.SIX_HOUR


def test_qualifying_break_promotion_survives_reset():
    snapshot = started()
    snapshot = run_break(snapshot, at(60), at(105))
    assert snapshot.work_cycle_total == 0
    assert snapshot.timer_mode is TimerMode.NINE_HOUR


def test_toggle_poa_during_break_is_noop():
    snapshot = run_break(started(), at(60), at(75))
    snapshot = timer.toggle_break(snapshot, at(90))
    unchanged = timer.toggle_poa(snapshot, at(100))
    assert unchanged == snapshot
    assert unchanged.status is ActivityStatus.BREAK


def test_poa_can_go_to_break_and_break_returns_to_working():
    snapshot = timer.toggle_poa(started(), at(30))
    snapshot = timer.toggle_break(snapshot, at(40))
    assert snapshot.status is ActivityStatus.BREAK
    assert snapshot.totals.poa == 600
    snapshot = timer.toggle_break(snapshot, at(50))
    assert snapshot.status is ActivityStatus.WORKING


def test_end_shift_during_break_rolls_open_break():
    snapshot = timer.toggle_break(started(), at(60))
    idle, finalized = timer.end_shift(snapshot, at(80))
    assert idle.is_idle
    assert idle.segment_start_ms is None
    assert finalized.totals.break_ == 20 * 60
    assert finalized.totals.work == 3600
    assert finalized.session_id == "42"
    assert finalized.break_minutes == 20


def test_work_remaining_counts_driving_and_non_driving_work():
    snapshot = started()
    snapshot = timer.set_driving(snapshot, True, at(60))
    view = timer.live_view(snapshot, at(120))
    assert view.work_cycle_seconds == 7200
    assert view.work_time_remaining == 6 * 3600 - 7200
    assert view.driving_seconds == 3600
    assert view.driving_time_remaining == int(4.5 * 3600) - 3600


def test_driving_stretch_closes_on_break_and_is_part_of_work():
    snapshot = timer.set_driving(started(), True, at(10))
    snapshot = timer.toggle_break(snapshot, at(70))
    assert snapshot.totals.driving == 3600
    assert snapshot.totals.work == 70 * 60
    assert snapshot.is_driving is False
    assert snapshot.driving_segment_start_ms is None


def test_driving_allowance_resets_only_on_qualifying_break():
    snapshot = timer.set_driving(started(), True, T0)
    snapshot = timer.set_driving(snapshot, False, at(120))
    snapshot = run_break(snapshot, at(120), at(140))
    assert timer.live_view(snapshot, at(140)).driving_time_remaining == int(4.5 * 3600) - 7200
    snapshot = run_break(snapshot, at(150), at(195))
    view = timer.live_view(snapshot, at(195))
    assert view.driving_time_remaining == int(4.5 * 3600)
    assert view.driving_seconds == 7200


def test_driving_not_counted_during_poa():
    snapshot = timer.toggle_poa(started(), at(10))
    snapshot = timer.set_driving(snapshot, True, at(20))
    assert snapshot.driving_segment_start_ms is None
    snapshot = timer.toggle_poa(snapshot, at(30))
    assert snapshot.driving_segment_start_ms == at(30)
    view = timer.live_view(snapshot, at(40))
    assert view.driving_seconds == 600


def test_restored_snapshot_after_suspension_derives_elapsed_time():
    snapshot = timer.toggle_poa(started(), at(30))
    snapshot = timer.toggle_poa(snapshot, at(45))
    restored = Snapshot.model_validate_json(snapshot.model_dump_json())
    view = timer.live_view(restored, at(45 + 120))
    assert view.work_seconds == 30 * 60 + 2 * 3600
    assert view.poa_seconds == 15 * 60


def test_live_view_is_idempotent_and_does_not_mutate():
    snapshot = started()
    first = timer.live_view(snapshot, at(30))
    second = timer.live_view(snapshot, at(30))
    assert first == second
    assert snapshot.totals.work == 0


def test_driving_resumes_from_segment_boundary_after_poa():
    snapshot = timer.set_driving(started(), True, T0)
    snapshot = timer.toggle_poa(snapshot, at(10, 0.4))
    snapshot = timer.toggle_poa(snapshot, at(20, 0.7))
    assert snapshot.segment_start_ms == at(20)
    assert snapshot.driving_segment_start_ms == snapshot.segment_start_ms
    view = timer.live_view(snapshot, at(30, 0.1))
    assert view.driving_seconds == view.work_seconds == 20 * 60
