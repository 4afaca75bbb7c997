"""Load alert definitions from YAML files in a directory."""

from pathlib import Path
import yaml

from anomaly.alerts import AlertSpec
from anomaly.bucket_window import NS_PER_SEC

_REQUIRED_FIELDS = ("title", "id", "metric", "alert")
_REQUIRED_ALERT = ("num_buckets", "trigger_if_sum_gt_ns", "refractory_period_secs")
_REQUIRED_METRIC = ("start", "stop", "dimensions")


def load_alerts(directory: str | Path) -> list[AlertSpec]:
    """Glob *.yml in *directory*, parse each, return AlertSpec instances."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Alert directory not found: {directory}")

    alerts = []
    for path in sorted(directory.glob("*.yml")):
        alerts.append(_build(path, _parse_and_validate(path)))

    ids = [a.id for a in alerts]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ValueError(f"{directory}: duplicate alert ids {duplicates}")
    return alerts


def load_alert(path: str | Path) -> AlertSpec:
    """Load a single alert file — useful for tests."""
    path = Path(path)
    return _build(path, _parse_and_validate(path))


def _parse_and_validate(path: Path) -> dict:
    with open(path) as f:
        definition = yaml.safe_load(f)

    if not isinstance(definition, dict):
        raise ValueError(f"{path.name}: expected a mapping at top level")

    for field in _REQUIRED_FIELDS:
        if field not in definition:
            raise ValueError(f"{path.name}: missing required field '{field}'")

    alert = definition["alert"]
    for field in _REQUIRED_ALERT:
        if field not in alert:
            raise ValueError(f"{path.name}: missing required alert field '{field}'")
    if "bucket_seconds" not in alert and "bucket_ns" not in alert:
        raise ValueError(f"{path.name}: alert needs 'bucket_seconds' or 'bucket_ns'")

    metric = definition["metric"]
    for field in _REQUIRED_METRIC:
        if field not in metric:
            raise ValueError(f"{path.name}: missing required metric field '{field}'")
    if ("condition_true" in metric) != ("condition_false" in metric):
        raise ValueError(
            f"{path.name}: condition_true and condition_false must be set together"
        )

    return definition


def _build(path: Path, definition: dict) -> AlertSpec:
    alert = definition["alert"]
    metric = definition["metric"]
    if "bucket_ns" in alert:
        bucket_size_ns = int(alert["bucket_ns"])
    else:
        bucket_size_ns = int(alert["bucket_seconds"] * NS_PER_SEC)
    try:
        return AlertSpec(
            id=str(definition["id"]),
            title=definition["title"],
            num_buckets=int(alert["num_buckets"]),
            bucket_size_ns=bucket_size_ns,
            threshold_ns=int(alert["trigger_if_sum_gt_ns"]),
            refractory_period_sec=int(alert["refractory_period_secs"]),
            count_nesting=bool(metric.get("count_nesting", False)),
            metric=metric,
        )
    except ValueError as e:
        raise ValueError(f"{path.name}: {e}") from e
