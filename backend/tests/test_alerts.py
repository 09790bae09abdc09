from __future__ import annotations

from worktime import alerts


def test_work_threshold_fires_once_on_crossing():
    assert alerts.work_alerts(45 * 60 + 1, 45 * 60) == ["audioWarningWork45"]
    assert alerts.work_alerts(45 * 60, 45 * 60 - 1) == []
    assert alerts.work_alerts(31 * 60, 30 * 60 - 10) == ["audioWarningWork30"]


def test_first_observation_never_fires():
    assert alerts.work_alerts(None, 60) == []
    assert alerts.driving_alerts(None, 60) == []


def test_multiple_crossings_report_every_threshold():
    assert alerts.work_alerts(50 * 60, 4 * 60) == [
        "audioWarningWork45",
        "audioWarningWork30",
        "audioWarningWork5",
    ]
    assert alerts.driving_alerts(40 * 60, 10 * 60) == ["audioWarningDriving30", "audioWarningDriving15"]


def test_threshold_rearms_after_remaining_rises():
    previous = 5 * 60 + 1
    assert alerts.driving_alerts(previous, 5 * 60) == ["audioWarningDriving5"]
    # qualifying break puts the allowance back to full
    assert alerts.driving_alerts(5 * 60, 270 * 60) == []
    assert alerts.driving_alerts(30 * 60 + 1, 30 * 60) == ["audioWarningDriving30"]


def test_dispatch_respects_mute():
    class Sink:
        spoken = []

        def speak(self, key):
            self.spoken.append(key)

    sink = Sink()
    assert alerts.dispatch(sink, alerts.SHIFT_STARTED, muted=True) is False
    assert alerts.dispatch(sink, alerts.SHIFT_STARTED) is True
    assert sink.spoken == ["audioShiftStarted"]


def test_dispatch_survives_failing_sink():
    class Broken:
        def speak(self, key):
            raise RuntimeError("audio device busy")

    assert alerts.dispatch(Broken(), alerts.BREAK_STARTED) is False
    assert alerts.dispatch(None, alerts.BREAK_STARTED) is False
