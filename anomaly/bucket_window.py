"""Fixed-size ring of time buckets for one tracked entity.

Used by the anomaly tracker to sum held duration over the last
``num_buckets`` buckets.  Buckets sit on a grid anchored at
``time_base_ns``: bucket n covers
[time_base + n * bucket_size, time_base + (n + 1) * bucket_size).

Intervals are half-open, so a duration that ends exactly on a boundary
belongs to the bucket that is closing.  Buckets that fall out of the
window are dropped lazily, the first time a later timestamp moves the
window past them.
"""

NS_PER_SEC = 1_000_000_000


def ceil_sec(timestamp_ns: int) -> int:
    """Round a nanosecond timestamp up to whole seconds (never fire early)."""
    return (timestamp_ns + NS_PER_SEC - 1) // NS_PER_SEC


class Bucket:
    __slots__ = ("num", "start_ns", "accumulated_ns")

    def __init__(self, num: int, start_ns: int, accumulated_ns: int = 0):
        self.num = num
        self.start_ns = start_ns
        self.accumulated_ns = accumulated_ns

    def __repr__(self) -> str:
        return f"Bucket(num={self.num}, start_ns={self.start_ns}, accumulated_ns={self.accumulated_ns})"


class BucketWindow:
    __slots__ = ("num_buckets", "bucket_size_ns", "time_base_ns", "_ring", "_latest")

    def __init__(self, num_buckets: int, bucket_size_ns: int, time_base_ns: int = 0):
        self.num_buckets = num_buckets
        self.bucket_size_ns = bucket_size_ns
        self.time_base_ns = time_base_ns
        # Slot i holds the bucket whose num % num_buckets == i, or a stale one.
        self._ring: list[Bucket | None] = [None] * num_buckets
        self._latest: int | None = None  # most recent bucket number seen

    # ------------------------------------------------------------------
    # Grid
    # ------------------------------------------------------------------

    def bucket_num(self, timestamp_ns: int) -> int:
        return (timestamp_ns - self.time_base_ns) // self.bucket_size_ns

    def bucket_start_ns(self, num: int) -> int:
        return self.time_base_ns + num * self.bucket_size_ns

    def bucket_end_ns(self, num: int) -> int:
        return self.bucket_start_ns(num + 1)

    def window_start_ns(self, now_ns: int) -> int:
        """Start of the oldest bucket still counted at *now_ns*."""
        return self.bucket_start_ns(self.bucket_num(now_ns) - self.num_buckets + 1)

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------

    def append(self, timestamp_ns: int, duration_ns: int) -> None:
        """Add *duration_ns* of held time ending at *timestamp_ns*.

        The interval [timestamp - duration, timestamp) is split at every
        bucket boundary it crosses; parts older than the window are dropped.
        """
        if duration_ns <= 0:
            return
        self._advance(timestamp_ns)
        start_ns = timestamp_ns - duration_ns
        oldest = self._latest - self.num_buckets + 1
        first = max(self.bucket_num(start_ns), oldest)
        last = self.bucket_num(timestamp_ns - 1)
        for num in range(first, last + 1):
            portion = (min(timestamp_ns, self.bucket_end_ns(num))
                       - max(start_ns, self.bucket_start_ns(num)))
            if portion > 0:
                self._add(num, portion)

    def windowed_sum(self, now_ns: int) -> int:
        """Sum of every bucket inside the window ending at *now_ns*."""
        self._advance(now_ns)
        current = self.bucket_num(now_ns)
        oldest = current - self.num_buckets + 1
        return sum(
            b.accumulated_ns for b in self._ring
            if b is not None and oldest <= b.num <= current
        )

    def projected_sum(self, now_ns: int, held_since_ns: int | None = None) -> int:
        """windowed_sum() plus the part of an open interval inside the window.

        This is what the sum would be if accrual stopped at *now_ns*.
        """
        total = self.windowed_sum(now_ns)
        if held_since_ns is not None and now_ns > held_since_ns:
            total += now_ns - max(held_since_ns, self.window_start_ns(now_ns))
        return total

    def value_of(self, num: int) -> int:
        """Accumulated ns in bucket *num*, 0 if it was never filled or aged out."""
        bucket = self._ring[num % self.num_buckets]
        if bucket is None or bucket.num != num:
            return 0
        return bucket.accumulated_ns

    def clear(self) -> None:
        self._ring = [None] * self.num_buckets
        self._latest = None

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def predict_crossing_ns(self, event_ns: int, threshold_ns: int,
                            not_before_ns: int = 0) -> int | None:
        """First instant the sum reaches *threshold_ns* if accrual runs from *event_ns*.

        "Reaches" means sum >= threshold (or the start instant, if the sum
        is already over).  Anomalies need the sum to exceed the threshold;
        the tracker rounds this instant up to an alarm second and checks
        ``>`` again when the alarm fires.

        Everything before *event_ns* must already be committed.  The answer
        is never earlier than *event_ns* or *not_before_ns* (end of the
        refractory period).  Returns None if no window can ever hold
        *threshold_ns*.

        Inside one bucket the sum grows one ns per ns, so each bucket is
        solved directly; old buckets age out as the walk moves forward.
        """
        start_ns = max(event_ns, not_before_ns)
        first = self.bucket_num(start_ns)
        # From here on the committed buckets have aged out and every
        # bucket looks the same.
        last = max(first, self.bucket_num(event_ns) + self.num_buckets)
        for num in range(first, last + 1):
            window_start = self.bucket_start_ns(num - self.num_buckets + 1)
            reach = threshold_ns - self._committed_in_window(num) + max(event_ns, window_start)
            candidate = max(reach, start_ns, self.bucket_start_ns(num))
            if candidate < self.bucket_end_ns(num):
                return candidate
        return None

    def peak_sum(self, held_since_ns: int, now_ns: int) -> int:
        """Highest projected sum at any instant of the open interval [held_since, now].

        Read-only: call it before the interval is committed.  The sum only
        drops at bucket boundaries, so the peak is at *now_ns* or just
        before one of the last ``num_buckets`` boundaries crossed.
        """
        last = self.bucket_num(now_ns)
        first = max(self.bucket_num(held_since_ns), last - self.num_buckets)
        instants = [self.bucket_end_ns(num) - 1 for num in range(first, last)]
        instants.append(now_ns)
        return max(self._sum_at(t, held_since_ns) for t in instants if t >= held_since_ns)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _committed_in_window(self, num: int) -> int:
        return sum(self.value_of(k) for k in range(num - self.num_buckets + 1, num + 1))

    def _sum_at(self, timestamp_ns: int, held_since_ns: int) -> int:
        num = self.bucket_num(timestamp_ns)
        window_start = self.bucket_start_ns(num - self.num_buckets + 1)
        return (self._committed_in_window(num)
                + timestamp_ns - max(held_since_ns, window_start))

    def _advance(self, timestamp_ns: int) -> None:
        num = self.bucket_num(timestamp_ns)
        if self._latest is not None and num <= self._latest:
            return
        oldest = num - self.num_buckets + 1
        for i, bucket in enumerate(self._ring):
            if bucket is not None and bucket.num < oldest:
                self._ring[i] = None
        self._latest = num

    def _add(self, num: int, duration_ns: int) -> None:
        idx = num % self.num_buckets
        bucket = self._ring[idx]
        if bucket is None or bucket.num != num:
            bucket = Bucket(num, self.bucket_start_ns(num))
            self._ring[idx] = bucket
        bucket.accumulated_ns += duration_ns

    def __len__(self) -> int:
        return sum(1 for b in self._ring if b is not None)
