# Alerts are declared in YAML (see loader.py) and validated here, once,
# when the AlertSpec is built.  A bad alert is a configuration error: it
# must fail before a tracker exists, never while events are flowing.

from dataclasses import dataclass, field

from anomaly.bucket_window import NS_PER_SEC


@dataclass(frozen=True)
class AlertSpec:
    """Immutable alert definition shared by every entity of one tracker."""

    id: str
    num_buckets: int
    bucket_size_ns: int
    threshold_ns: int
    refractory_period_sec: int = 0
    count_nesting: bool = False
    title: str = ""
    # Raw metric block (start/stop/condition selections, dimensions).
    # Consumed by EventRouter; the tracker never reads it.
    metric: dict = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self):
        if self.num_buckets < 1:
            raise ValueError(f"alert '{self.id}': num_buckets must be >= 1, got {self.num_buckets}")
        if self.bucket_size_ns <= 0:
            raise ValueError(f"alert '{self.id}': bucket size must be positive, got {self.bucket_size_ns}")
        if self.threshold_ns <= 0:
            raise ValueError(f"alert '{self.id}': threshold must be positive, got {self.threshold_ns}")
        if self.refractory_period_sec < 0:
            raise ValueError(
                f"alert '{self.id}': refractory_period_secs must be >= 0, "
                f"got {self.refractory_period_sec}"
            )

    @property
    def window_ns(self) -> int:
        return self.num_buckets * self.bucket_size_ns

    @property
    def bucket_seconds(self) -> float:
        return self.bucket_size_ns / NS_PER_SEC
