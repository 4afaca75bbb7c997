"""Time-driven delivery of due anomaly alarms.

The monitor knows a set of trackers.  poll() pops every alarm due at the
given second from each tracker's registry and hands the batch to that
tracker's fire handler.  It never schedules anything itself; trackers do
that as events arrive.

Two ways to drive it:
  - inline, from a service loop that already wakes up regularly
    (anomaly.main calls poll() after every Kafka poll), or
  - run(), a blocking loop for a dedicated thread.
"""

import threading
import time

from anomaly.bucket_window import NS_PER_SEC
from anomaly.tracker import Anomaly, DurationAnomalyTracker


class AlarmMonitor:

    def __init__(self, trackers: list[DurationAnomalyTracker] | None = None,
                 clock=time.time_ns):
        self._trackers: list[DurationAnomalyTracker] = list(trackers or [])
        self._clock = clock
        self._lock = threading.Lock()

    def register(self, tracker: DurationAnomalyTracker) -> None:
        with self._lock:
            if tracker not in self._trackers:
                self._trackers.append(tracker)

    def unregister(self, tracker: DurationAnomalyTracker) -> None:
        with self._lock:
            if tracker in self._trackers:
                self._trackers.remove(tracker)

    @property
    def trackers(self) -> list[DurationAnomalyTracker]:
        with self._lock:
            return list(self._trackers)

    def poll(self, now_ns: int | None = None) -> list[Anomaly]:
        """Fire every alarm due at or before *now_ns* (default: the clock)."""
        if now_ns is None:
            now_ns = self._clock()
        now_sec = now_ns // NS_PER_SEC
        anomalies = []
        for tracker in self.trackers:
            fired = tracker.alarm_registry.pop_sooner_than(now_sec)
            if fired:
                anomalies.extend(tracker.on_anomaly_alarm_fired(now_ns, fired))
        return anomalies

    def next_alarm_sec(self) -> int:
        """Soonest pending alarm across all trackers, 0 if none."""
        pending = [t.alarm_registry.earliest_sec() for t in self.trackers]
        pending = [sec for sec in pending if sec > 0]
        return min(pending) if pending else 0

    def run(self, stop: threading.Event, on_anomaly, max_sleep_sec: float = 1.0) -> None:
        """Poll until *stop* is set, passing each anomaly to *on_anomaly*.

        Sleeps until the next pending alarm, capped at *max_sleep_sec* so
        alarms scheduled while asleep are picked up promptly.
        """
        while not stop.is_set():
            for anomaly in self.poll():
                on_anomaly(anomaly)
            wait = max_sleep_sec
            next_sec = self.next_alarm_sec()
            if next_sec:
                until_next = next_sec - self._clock() / NS_PER_SEC
                wait = min(max(until_next, 0.0), max_sleep_sec)
            stop.wait(wait)
