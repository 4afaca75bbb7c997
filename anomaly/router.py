"""Map raw event dicts onto tracker calls.

Each alert's ``metric`` block names Sigma-style selections for the event
kinds the tracker understands.  A selection is a dict of field -> expected
value; a list value is OR, all fields must match (AND).  The first kind
whose selection matches wins, in the order of _KINDS.
"""

import time

from anomaly.alerts import AlertSpec
from anomaly.tracker import Anomaly, DurationAnomalyTracker

START = "start"
STOP = "stop"
STOP_ALL = "stop_all"
CONDITION_TRUE = "condition_true"
CONDITION_FALSE = "condition_false"

_KINDS = (START, STOP, STOP_ALL, CONDITION_TRUE, CONDITION_FALSE)


def event_timestamp_ns(event: dict) -> int:
    """Event time in ns.  Prefers timestamp_ns, then float seconds, then now."""
    if "timestamp_ns" in event:
        return int(event["timestamp_ns"])
    if "timestamp" in event:
        return int(event["timestamp"] * 1_000_000_000)
    return time.time_ns()


class EventRouter:

    def __init__(self, metric: dict):
        self._selections = [(kind, metric[kind]) for kind in _KINDS if kind in metric]
        self.dimensions = tuple(metric.get("dimensions", ()))
        # Without a condition the metric is always on.  With one, its state
        # is unknown until the first transition, which counts as false.
        has_condition = CONDITION_TRUE in metric
        self.initial_condition = bool(metric.get("initial_condition", not has_condition))

    @classmethod
    def for_alert(cls, spec: AlertSpec) -> "EventRouter":
        return cls(spec.metric)

    def route(self, event: dict) -> tuple[str, tuple | None] | None:
        """Return (kind, key) for the event, or None if it is irrelevant.

        key is the dimension tuple for start/stop, None otherwise.  Raises
        KeyError if a start/stop event lacks a dimension field.
        """
        for kind, selection in self._selections:
            if self._match(selection, event):
                if kind in (START, STOP):
                    return kind, self.dimension_key(event)
                return kind, None
        return None

    def dimension_key(self, event: dict) -> tuple:
        return tuple(event[field] for field in self.dimensions)

    def dispatch(self, tracker: DurationAnomalyTracker, event: dict) -> list[Anomaly]:
        """Route *event* and apply it to *tracker*.  Returns declared anomalies."""
        routed = self.route(event)
        if routed is None:
            return []
        kind, key = routed
        ts = event_timestamp_ns(event)
        if kind == START:
            return tracker.note_start(key, ts)
        if kind == STOP:
            return tracker.note_stop(key, ts)
        if kind == STOP_ALL:
            return tracker.note_stop_all(ts)
        return tracker.on_condition_changed(kind == CONDITION_TRUE, ts)

    @staticmethod
    def _match(selection: dict, event: dict) -> bool:
        for field, expected in selection.items():
            actual = event.get(field)
            if isinstance(expected, list):
                if actual not in expected:
                    return False
            else:
                if actual != expected:
                    return False
        return True
