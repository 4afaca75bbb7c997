"""Anomaly trackers — per-key refractory bookkeeping and duration alarms.

Pure business logic, no Kafka dependency.  The anomaly service (or a test)
feeds events in and gets back the anomalies each call declared.

State: dict[key, _Entity], created on first event for a key and kept until
reset().  An entity owns its bucket window, its held state, its pending
alarm and its refractory end, so events for one key never touch another.

All public methods take the tracker lock: the event path and the alarm
path may run on different threads but are applied one at a time.
"""

import threading
from dataclasses import dataclass
from typing import Hashable, Iterable

from anomaly.alarm_registry import Alarm, AlarmRegistry
from anomaly.alerts import AlertSpec
from anomaly.bucket_window import NS_PER_SEC, BucketWindow, ceil_sec
from anomaly.duration_state import DurationState


@dataclass(frozen=True)
class Anomaly:
    alert_id: str
    key: Hashable
    timestamp_ns: int
    metric_value: int
    refractory_ends_sec: int

    def to_dict(self) -> dict:
        key = list(self.key) if isinstance(self.key, tuple) else self.key
        return {
            "alert_id": self.alert_id,
            "key": key,
            "timestamp_ns": self.timestamp_ns,
            "metric_value": self.metric_value,
            "refractory_ends_sec": self.refractory_ends_sec,
        }


class _Entity:
    __slots__ = ("window", "duration", "alarm", "refractory_ends_sec")

    def __init__(self, window: BucketWindow, duration: DurationState):
        self.window = window
        self.duration = duration
        self.alarm: Alarm | None = None
        self.refractory_ends_sec = 0


class AnomalyTracker:
    """Threshold check and refractory suppression over per-key bucket sums.

    Metric-specific trackers subclass this; the duration-sum tracker below
    is the only one here.
    """

    def __init__(self, spec: AlertSpec, time_base_ns: int = 0):
        self.spec = spec
        self.time_base_ns = time_base_ns
        self._entities: dict[Hashable, _Entity] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_refractory_period_ends_sec(self, key: Hashable) -> int:
        """Second at which the key's refractory period ends, 0 if never triggered."""
        with self._lock:
            entity = self._entities.get(key)
            return entity.refractory_ends_sec if entity is not None else 0

    def is_in_refractory_period(self, timestamp_ns: int, key: Hashable) -> bool:
        with self._lock:
            entity = self._entities.get(key)
            return entity is not None and self._in_refractory(entity, timestamp_ns)

    def get_sum_over_window(self, key: Hashable, timestamp_ns: int) -> int:
        """Committed held time inside the window ending at *timestamp_ns*."""
        with self._lock:
            entity = self._entities.get(key)
            return entity.window.windowed_sum(timestamp_ns) if entity is not None else 0

    def keys(self) -> list[Hashable]:
        with self._lock:
            return list(self._entities)

    def reset(self) -> None:
        with self._lock:
            self._entities.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _entity(self, key: Hashable) -> _Entity:
        entity = self._entities.get(key)
        if entity is None:
            entity = _Entity(
                BucketWindow(self.spec.num_buckets, self.spec.bucket_size_ns, self.time_base_ns),
                DurationState(self.spec.count_nesting),
            )
            self._entities[key] = entity
        return entity

    @staticmethod
    def _in_refractory(entity: _Entity, timestamp_ns: int) -> bool:
        return timestamp_ns < entity.refractory_ends_sec * NS_PER_SEC

    def _declare_anomaly(self, key: Hashable, entity: _Entity, timestamp_ns: int,
                         metric_value: int) -> Anomaly | None:
        # An anomaly inside the refractory window is swallowed and does not
        # extend it.
        if self._in_refractory(entity, timestamp_ns):
            return None
        entity.refractory_ends_sec = ceil_sec(timestamp_ns) + self.spec.refractory_period_sec
        return Anomaly(
            alert_id=self.spec.id,
            key=key,
            timestamp_ns=timestamp_ns,
            metric_value=metric_value,
            refractory_ends_sec=entity.refractory_ends_sec,
        )

    def _detect_and_declare(self, key: Hashable, entity: _Entity,
                            timestamp_ns: int) -> Anomaly | None:
        total = entity.window.windowed_sum(timestamp_ns)
        if total > self.spec.threshold_ns:
            return self._declare_anomaly(key, entity, timestamp_ns, total)
        return None


class DurationAnomalyTracker(AnomalyTracker):
    """Sum-of-held-duration alert with predictive alarms.

    On every start the tracker predicts when the windowed sum will cross the
    threshold and parks an alarm in the registry for that second.  A stop
    commits the interval, checks the threshold immediately and cancels the
    alarm.  If the alarm fires first and the sum is over the threshold, the
    anomaly is declared at the real fire time; otherwise the alarm is
    predicted again from there.
    """

    def __init__(self, spec: AlertSpec, alarm_registry: AlarmRegistry | None = None,
                 time_base_ns: int = 0, condition: bool = True):
        super().__init__(spec, time_base_ns)
        self.alarm_registry = alarm_registry if alarm_registry is not None else AlarmRegistry()
        self._condition = condition

    @property
    def condition(self) -> bool:
        return self._condition

    # ------------------------------------------------------------------
    # Event path
    # ------------------------------------------------------------------

    def note_start(self, key: Hashable, timestamp_ns: int) -> list[Anomaly]:
        with self._lock:
            entity = self._entity(key)
            if entity.duration.on_start(timestamp_ns, self._condition):
                self._start_alarm(key, entity)
            return []

    def note_stop(self, key: Hashable, timestamp_ns: int) -> list[Anomaly]:
        with self._lock:
            entity = self._entities.get(key)
            if entity is None:
                return []  # stop for a key we never saw started
            interval = entity.duration.on_stop(timestamp_ns)
            return self._release(key, entity, interval, timestamp_ns)

    def note_stop_all(self, timestamp_ns: int) -> list[Anomaly]:
        """Release every acquired key at once (e.g. the device rebooted)."""
        with self._lock:
            anomalies = []
            for key, entity in self._entities.items():
                if not entity.duration.wants_accrual:
                    continue
                interval = entity.duration.on_stop(timestamp_ns, stop_all=True)
                anomalies.extend(self._release(key, entity, interval, timestamp_ns))
            return anomalies

    def on_condition_changed(self, condition: bool, timestamp_ns: int) -> list[Anomaly]:
        """Global condition flipped.

        False pauses every held key as if it had stopped, keeping the
        acquisition.  True resumes every key that is still acquired.
        """
        with self._lock:
            if condition == self._condition:
                return []
            self._condition = condition
            anomalies = []
            for key, entity in self._entities.items():
                if condition:
                    if entity.duration.resume(timestamp_ns):
                        self._start_alarm(key, entity)
                else:
                    interval = entity.duration.pause(timestamp_ns)
                    if interval is not None:
                        anomalies.extend(self._release(key, entity, interval, timestamp_ns))
            return anomalies

    # ------------------------------------------------------------------
    # Alarm path
    # ------------------------------------------------------------------

    def on_anomaly_alarm_fired(self, timestamp_ns: int,
                               fired_alarms: Iterable[Alarm]) -> list[Anomaly]:
        """Handle alarms popped from the registry at *timestamp_ns*.

        Alarms this tracker no longer owns (replaced, or cancelled by a stop
        that raced the pop) are ignored.  Firing does not stop accrual.
        """
        with self._lock:
            anomalies = []
            for alarm in fired_alarms:
                entity = self._entities.get(alarm.key)
                if entity is None or entity.alarm is not alarm:
                    continue
                entity.alarm = None
                if self.alarm_registry.get(alarm.key) is alarm:
                    self.alarm_registry.cancel(alarm.key)
                if not entity.duration.is_held:
                    continue
                # Shadow evaluation: what the sum is right now, without
                # committing the open interval.
                value = entity.window.projected_sum(timestamp_ns, entity.duration.held_since_ns)
                if value > self.spec.threshold_ns:
                    anomaly = self._declare_anomaly(alarm.key, entity, timestamp_ns, value)
                    if anomaly is not None:
                        anomalies.append(anomaly)
                else:
                    # Only just reached, or buckets rolled out since the
                    # prediction: look again from here.
                    self._start_alarm(alarm.key, entity, not_before_ns=timestamp_ns + 1)
            return anomalies

    def get_alarm_timestamp_sec(self, key: Hashable) -> int:
        """Second the key's pending alarm is due, 0 if none."""
        with self._lock:
            entity = self._entities.get(key)
            if entity is None or entity.alarm is None:
                return 0
            return entity.alarm.timestamp_sec

    def cancel_all_alarms(self) -> None:
        with self._lock:
            for key, entity in self._entities.items():
                if entity.alarm is not None:
                    self.alarm_registry.cancel(key)
                    entity.alarm = None

    def reset(self) -> None:
        with self._lock:
            self.cancel_all_alarms()
            super().reset()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start_alarm(self, key: Hashable, entity: _Entity, not_before_ns: int = 0) -> None:
        not_before_ns = max(entity.refractory_ends_sec * NS_PER_SEC, not_before_ns)
        alarm_ns = entity.window.predict_crossing_ns(
            entity.duration.held_since_ns, self.spec.threshold_ns, not_before_ns,
        )
        if alarm_ns is None:
            return  # threshold larger than the whole window
        entity.alarm = self.alarm_registry.schedule(key, ceil_sec(alarm_ns))

    def _stop_alarm(self, key: Hashable, entity: _Entity) -> None:
        if entity.alarm is None:
            return
        self.alarm_registry.cancel(key)
        entity.alarm = None

    def _alarm_due(self, entity: _Entity, timestamp_ns: int) -> bool:
        return (entity.alarm is not None
                and timestamp_ns >= entity.alarm.timestamp_sec * NS_PER_SEC)

    def _release(self, key: Hashable, entity: _Entity, interval: tuple[int, int] | None,
                 timestamp_ns: int) -> list[Anomaly]:
        anomalies = []
        if interval is not None:
            start_ns, end_ns = interval
            # Alarm due but not delivered yet (monitor lag): the crossing
            # counts if the sum went over at any point of the hold, even if
            # buckets rolled out before this stop.
            peak = 0
            if self._alarm_due(entity, timestamp_ns):
                peak = entity.window.peak_sum(start_ns, end_ns)
            entity.window.append(end_ns, end_ns - start_ns)
            anomaly = self._detect_and_declare(key, entity, timestamp_ns)
            if anomaly is None and peak > self.spec.threshold_ns:
                anomaly = self._declare_anomaly(key, entity, timestamp_ns, peak)
            if anomaly is not None:
                anomalies.append(anomaly)
        if not entity.duration.is_held:
            self._stop_alarm(key, entity)
        return anomalies
