"""Pending anomaly alarms, keyed by tracked entity.

One registry per tracker.  Each entry is an ``Alarm`` object; the tracker
keeps a reference to the alarm it scheduled and later matches fired alarms
by identity, so an alarm that was replaced or cancelled after being popped
can never be mistaken for the live one.

Pure bookkeeping: the registry never looks at the clock.  Whoever drives
time (AlarmMonitor, a test) asks for due alarms with pop_sooner_than().
"""

import threading
from typing import Callable, Hashable


class Alarm:
    """A scheduled wake-up for one entity.  Compared by identity."""

    __slots__ = ("key", "timestamp_sec")

    def __init__(self, key: Hashable, timestamp_sec: int):
        self.key = key
        self.timestamp_sec = timestamp_sec

    def __repr__(self) -> str:
        return f"Alarm(key={self.key!r}, timestamp_sec={self.timestamp_sec})"


class AlarmRegistry:
    __slots__ = ("_alarms", "_lock", "_on_update", "_registered_sec")

    def __init__(self, on_update: Callable[[int], None] | None = None):
        self._alarms: dict[Hashable, Alarm] = {}
        self._lock = threading.Lock()
        # Called with the soonest pending second (0 = nothing pending)
        # whenever it changes.  Lets a service re-arm a real timer.
        self._on_update = on_update
        self._registered_sec = 0

    def schedule(self, key: Hashable, timestamp_sec: int) -> Alarm:
        """Insert an alarm for *key*, replacing any existing one."""
        alarm = Alarm(key, timestamp_sec)
        with self._lock:
            self._alarms[key] = alarm
            changed = self._update_locked()
        self._notify(changed)
        return alarm

    def cancel(self, key: Hashable) -> None:
        """Remove the alarm for *key*.  No-op if there is none (already fired)."""
        changed = None
        with self._lock:
            if self._alarms.pop(key, None) is not None:
                changed = self._update_locked()
        self._notify(changed)

    def pop_sooner_than(self, timestamp_sec: int) -> set[Alarm]:
        """Atomically remove and return every alarm due at or before *timestamp_sec*."""
        changed = None
        with self._lock:
            due = {a for a in self._alarms.values() if a.timestamp_sec <= timestamp_sec}
            for alarm in due:
                del self._alarms[alarm.key]
            if due:
                changed = self._update_locked()
        self._notify(changed)
        return due

    def get(self, key: Hashable) -> Alarm | None:
        with self._lock:
            return self._alarms.get(key)

    def earliest_sec(self) -> int:
        """Soonest pending second, or 0 when nothing is scheduled."""
        with self._lock:
            return self._earliest_locked()

    def clear(self) -> None:
        with self._lock:
            self._alarms.clear()
            changed = self._update_locked()
        self._notify(changed)

    def _earliest_locked(self) -> int:
        if not self._alarms:
            return 0
        return min(a.timestamp_sec for a in self._alarms.values())

    def _update_locked(self) -> int | None:
        """New soonest second if it changed, else None."""
        earliest = self._earliest_locked()
        if earliest == self._registered_sec:
            return None
        self._registered_sec = earliest
        return earliest

    def _notify(self, earliest: int | None) -> None:
        # Runs outside the lock so the hook may call back into the registry.
        if earliest is not None and self._on_update is not None:
            self._on_update(earliest)

    def __len__(self) -> int:
        return len(self._alarms)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._alarms
