"""Tests for EventRouter — selection matching, dimension keys, dispatch into trackers."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from anomaly.alerts.loader import load_alert
from anomaly.bucket_window import NS_PER_SEC
from anomaly.router import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    START,
    STOP,
    STOP_ALL,
    EventRouter,
    event_timestamp_ns,
)
from anomaly.tracker import DurationAnomalyTracker

_DEFINITIONS_DIR = Path(__file__).resolve().parent.parent / "alerts" / "definitions"

ScreenOff = lambda: load_alert(_DEFINITIONS_DIR / "wakelock_screen_off.yml")
AnyState = lambda: load_alert(_DEFINITIONS_DIR / "wakelock_any_state.yml")


def _wakelock(state, uid=10001, tag="sync", ts_ns=0):
    return {
        "event_type": "wakelock_state_changed",
        "timestamp_ns": ts_ns,
        "uid": uid,
        "tag": tag,
        "state": state,
    }


def _screen(state, ts_ns=0):
    return {"event_type": "screen_state_changed", "timestamp_ns": ts_ns, "state": state}


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

class TestRoute:
    def setup_method(self):
        self.router = EventRouter.for_alert(ScreenOff())

    def test_acquire_is_start(self):
        assert self.router.route(_wakelock("acquire", uid=7)) == (START, (7,))

    def test_release_is_stop(self):
        assert self.router.route(_wakelock("release", uid=7)) == (STOP, (7,))

    def test_boot_is_stop_all(self):
        assert self.router.route({"event_type": "boot_completed"}) == (STOP_ALL, None)

    @pytest.mark.parametrize("state", ["off", "doze"])
    def test_list_value_is_or(self, state):
        assert self.router.route(_screen(state)) == (CONDITION_TRUE, None)

    def test_screen_on_is_condition_false(self):
        assert self.router.route(_screen("on")) == (CONDITION_FALSE, None)

    def test_unrelated_event_is_ignored(self):
        assert self.router.route({"event_type": "battery_level_changed", "level": 40}) is None

    def test_partial_match_is_ignored(self):
        assert self.router.route(_wakelock("changed")) is None

    def test_missing_dimension_raises(self):
        event = _wakelock("acquire")
        del event["uid"]
        with pytest.raises(KeyError):
            self.router.route(event)

    def test_multi_dimension_key(self):
        router = EventRouter.for_alert(AnyState())
        assert router.route(_wakelock("acquire", uid=3, tag="gcm")) == (START, (3, "gcm"))


class TestInitialCondition:
    def test_configured_initial_condition(self):
        assert EventRouter.for_alert(ScreenOff()).initial_condition is False

    def test_no_condition_means_always_on(self):
        assert EventRouter.for_alert(AnyState()).initial_condition is True

    def test_condition_without_initial_value_starts_false(self):
        router = EventRouter({
            "start": {"a": 1}, "stop": {"a": 2}, "dimensions": [],
            "condition_true": {"c": 1}, "condition_false": {"c": 0},
        })
        assert router.initial_condition is False


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

class TestEventTimestamp:
    def test_prefers_timestamp_ns(self):
        assert event_timestamp_ns({"timestamp_ns": 5, "timestamp": 9.0}) == 5

    def test_float_seconds(self):
        assert event_timestamp_ns({"timestamp": 2.5}) == 2_500_000_000

    @patch("anomaly.router.time.time_ns", return_value=42)
    def test_falls_back_to_now(self, mock_now):
        assert event_timestamp_ns({}) == 42


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

class TestDispatch:
    def setup_method(self):
        self.tracker = MagicMock(spec=DurationAnomalyTracker)
        self.router = EventRouter.for_alert(ScreenOff())

    def test_start(self):
        self.router.dispatch(self.tracker, _wakelock("acquire", uid=1, ts_ns=10))
        self.tracker.note_start.assert_called_once_with((1,), 10)

    def test_stop(self):
        self.router.dispatch(self.tracker, _wakelock("release", uid=1, ts_ns=11))
        self.tracker.note_stop.assert_called_once_with((1,), 11)

    def test_stop_all(self):
        self.router.dispatch(self.tracker, {"event_type": "boot_completed", "timestamp_ns": 12})
        self.tracker.note_stop_all.assert_called_once_with(12)

    def test_condition(self):
        self.router.dispatch(self.tracker, _screen("off", ts_ns=13))
        self.router.dispatch(self.tracker, _screen("on", ts_ns=14))
        assert self.tracker.on_condition_changed.call_args_list[0].args == (True, 13)
        assert self.tracker.on_condition_changed.call_args_list[1].args == (False, 14)

    def test_ignored_event_touches_nothing(self):
        assert self.router.dispatch(self.tracker, {"event_type": "noise"}) == []
        assert self.tracker.method_calls == []


class TestScreenOffEndToEnd:
    """Real tracker behind the router: only screen-off time counts."""

    def setup_method(self):
        spec = ScreenOff()
        self.router = EventRouter.for_alert(spec)
        self.tracker = DurationAnomalyTracker(
            spec, condition=self.router.initial_condition,
        )

    def _feed(self, *events):
        anomalies = []
        for e in events:
            anomalies.extend(self.router.dispatch(self.tracker, e))
        return anomalies

    def test_hold_with_screen_on_never_alerts(self):
        anomalies = self._feed(
            _screen("on", ts_ns=0),
            _wakelock("acquire", ts_ns=NS_PER_SEC),
            _wakelock("release", ts_ns=200 * NS_PER_SEC),
        )
        assert anomalies == []

    def test_hold_with_screen_off_alerts_on_release(self):
        anomalies = self._feed(
            _screen("off", ts_ns=0),
            _wakelock("acquire", uid=5, ts_ns=NS_PER_SEC),
            _wakelock("release", uid=5, ts_ns=62 * NS_PER_SEC + 1),
        )
        assert len(anomalies) == 1
        assert anomalies[0].alert_id == "wakelock_screen_off"
        assert anomalies[0].key == (5,)

    def test_screen_on_interrupts_accrual(self):
        anomalies = self._feed(
            _screen("off", ts_ns=0),
            _wakelock("acquire", ts_ns=0),
            _screen("on", ts_ns=30 * NS_PER_SEC),
            _screen("off", ts_ns=100 * NS_PER_SEC),
            _wakelock("release", ts_ns=125 * NS_PER_SEC),
        )
        # 30s + 25s screen-off: under the one-minute threshold.
        assert anomalies == []
        assert self.tracker.get_sum_over_window((10001,), 125 * NS_PER_SEC) == 55 * NS_PER_SEC

    def test_boot_releases_everything(self):
        anomalies = self._feed(
            _screen("off", ts_ns=0),
            _wakelock("acquire", uid=1, ts_ns=0),
            _wakelock("acquire", uid=1, ts_ns=NS_PER_SEC),
            _wakelock("acquire", uid=2, ts_ns=0),
            {"event_type": "boot_completed", "timestamp_ns": 61 * NS_PER_SEC},
        )
        assert sorted(a.key for a in anomalies) == [(1,), (2,)]
        assert self.tracker.alarm_registry.earliest_sec() == 0
