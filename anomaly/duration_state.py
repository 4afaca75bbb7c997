"""Held / not-held state for one tracked entity.

Two things are tracked separately:

  wants_accrual  the entity is logically acquired (start seen, stop not yet)
  is_held        time is actually accruing (acquired AND condition true)

When the global condition goes false an acquired entity is paused: it
stops accruing but keeps its acquisition, and resume() picks it back up
when the condition returns.  With count_nesting, starts and stops are
counted and only the last stop releases.
"""


class DurationState:
    __slots__ = ("count_nesting", "nesting_count", "held_since_ns")

    def __init__(self, count_nesting: bool = False):
        self.count_nesting = count_nesting
        self.nesting_count = 0
        self.held_since_ns: int | None = None

    @property
    def wants_accrual(self) -> bool:
        return self.nesting_count > 0

    @property
    def is_held(self) -> bool:
        return self.held_since_ns is not None

    def on_start(self, timestamp_ns: int, condition: bool = True) -> bool:
        """Record a start.  Returns True if accrual began with this event."""
        first = self.nesting_count == 0
        if self.count_nesting or first:
            self.nesting_count += 1
        if first and condition:
            self.held_since_ns = timestamp_ns
            return True
        return False

    def on_stop(self, timestamp_ns: int, stop_all: bool = False) -> tuple[int, int] | None:
        """Record a stop.

        Returns the completed interval (held_since, timestamp) when accrual
        ends here, None otherwise.  A stop with nothing acquired is a no-op.
        """
        if self.nesting_count == 0:
            return None
        self.nesting_count -= 1
        if stop_all or not self.count_nesting:
            self.nesting_count = 0
        if self.nesting_count > 0:
            return None
        return self._close(timestamp_ns)

    def pause(self, timestamp_ns: int) -> tuple[int, int] | None:
        """Condition went false: stop accruing but stay acquired."""
        return self._close(timestamp_ns)

    def resume(self, timestamp_ns: int) -> bool:
        """Condition went true: restart accrual if still acquired."""
        if self.wants_accrual and not self.is_held:
            self.held_since_ns = timestamp_ns
            return True
        return False

    def _close(self, timestamp_ns: int) -> tuple[int, int] | None:
        if self.held_since_ns is None:
            return None
        interval = (self.held_since_ns, timestamp_ns)
        self.held_since_ns = None
        return interval

    def __repr__(self) -> str:
        return (f"DurationState(nesting_count={self.nesting_count}, "
                f"held_since_ns={self.held_since_ns})")
