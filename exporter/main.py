"""Prometheus exporter for the duration-anomaly pipeline.

Reads the raw device-event stream and the anomaly stream side by side and
turns them into Prometheus series: event counts, wakelock hold durations,
screen state, and per-alert / per-key anomaly counters with the refractory
deadline of each key.  Grafana reads from Prometheus for the battery-drain
dashboard.

Usage:
    python -m exporter.main
    python -m exporter.main --bootstrap-servers kafka-1:29092 --port 9091
    python -m exporter.main --events-topic device-events --anomalies-topic anomalies
"""

import argparse
import json
import signal
import sys
import time

from confluent_kafka import Consumer, KafkaError
from prometheus_client import Counter, Gauge, Histogram, start_http_server

NS_PER_SEC = 1_000_000_000

# ---------------------------------------------------------------------------
# Device-event metrics
# ---------------------------------------------------------------------------
# All series register in the default REGISTRY at import time;
# start_http_server() serves that registry on GET /metrics.
events_total = Counter(
    "da_events_total",
    "Total device events processed",
    ["event_type", "state"],
)
wakelock_acquires_by_uid = Counter(
    "da_wakelock_acquires_total",
    "Wakelock acquires by uid and tag",
    ["uid", "tag"],
)
wakelock_hold_seconds = Histogram(
    "da_wakelock_hold_seconds",
    "Observed acquire-to-release time of a wakelock",
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 120, 300, 900],
)
screen_on = Gauge(
    "da_screen_on",
    "1 while the screen is on, 0 while off or dozing",
)

# ---------------------------------------------------------------------------
# Anomaly metrics
# ---------------------------------------------------------------------------
anomalies_total = Counter(
    "da_anomalies_total",
    "Total duration anomalies declared",
    ["alert_id"],
)
anomalies_by_key = Counter(
    "da_anomalies_by_key_total",
    "Anomalies per alert per dimension key",
    ["alert_id", "key"],
)
anomaly_held_seconds = Gauge(
    "da_anomaly_held_seconds",
    "Windowed held duration reported by the most recent anomaly",
    ["alert_id", "key"],
)
refractory_ends = Gauge(
    "da_refractory_ends_timestamp_seconds",
    "Unix second at which the key's refractory period ends",
    ["alert_id", "key"],
)
anomaly_export_lag = Histogram(
    "da_anomaly_export_lag_seconds",
    "Delay between an anomaly's timestamp and its arrival at the exporter",
    buckets=[0.01, 0.1, 0.5, 1, 2, 5, 10, 30],
)

# ---------------------------------------------------------------------------
# Exporter health
# ---------------------------------------------------------------------------
messages_per_second = Gauge(
    "da_messages_per_second",
    "Messages consumed per second, both topics",
)
export_errors_total = Counter(
    "da_export_errors_total",
    "Undecodable payloads or Kafka consumer errors in the exporter",
)

# (uid, tag) -> acquire timestamp in ns, for the hold-duration histogram
_open_holds: dict[tuple[str, str], int] = {}

running = True


def _shutdown(sig, frame):
    global running
    print("\nStopping exporter...")
    running = False


signal.signal(signal.SIGINT, _shutdown)
signal.signal(signal.SIGTERM, _shutdown)


class _RateMeter:
    """Counts ticks and publishes a per-second rate about once a second."""

    def __init__(self, gauge, clock=time.time):
        self._gauge = gauge
        self._clock = clock
        self._since = clock()
        self._ticks = 0

    def tick(self):
        self._ticks += 1
        now = self._clock()
        elapsed = now - self._since
        if elapsed >= 1.0:
            self._gauge.set(self._ticks / elapsed)
            self._since = now
            self._ticks = 0


# ---------------------------------------------------------------------------
# Metric updaters
# ---------------------------------------------------------------------------

def _process_device_event(event: dict):
    event_type = event.get("event_type", "unknown")
    state = event.get("state", "unknown")
    events_total.labels(event_type=event_type, state=state).inc()

    if event_type == "wakelock_state_changed":
        hold = (str(event.get("uid", "unknown")), event.get("tag", "unknown"))
        ts_ns = event.get("timestamp_ns")
        if state == "acquire":
            wakelock_acquires_by_uid.labels(uid=hold[0], tag=hold[1]).inc()
            if ts_ns is not None:
                _open_holds.setdefault(hold, ts_ns)
        elif state == "release":
            acquired_ns = _open_holds.pop(hold, None)
            if acquired_ns is not None and ts_ns is not None and ts_ns >= acquired_ns:
                wakelock_hold_seconds.observe((ts_ns - acquired_ns) / NS_PER_SEC)
    elif event_type == "screen_state_changed":
        screen_on.set(1 if state == "on" else 0)
    elif event_type == "boot_completed":
        _open_holds.clear()


def _key_label(key) -> str:
    """Dimension key as a label value: [10001, "sync"] -> "10001/sync"."""
    if isinstance(key, list):
        return "/".join(str(k) for k in key)
    return str(key)


def _process_anomaly(anomaly: dict, now=time.time):
    """Update Prometheus metrics for a declared anomaly."""
    alert_id = anomaly.get("alert_id", "unknown")
    key = _key_label(anomaly.get("key", "unknown"))

    anomalies_total.labels(alert_id=alert_id).inc()
    anomalies_by_key.labels(alert_id=alert_id, key=key).inc()
    anomaly_held_seconds.labels(alert_id=alert_id, key=key).set(
        anomaly.get("metric_value", 0) / NS_PER_SEC
    )
    refractory_ends.labels(alert_id=alert_id, key=key).set(
        anomaly.get("refractory_ends_sec", 0)
    )
    ts_ns = anomaly.get("timestamp_ns")
    if ts_ns:
        anomaly_export_lag.observe(max(now() - ts_ns / NS_PER_SEC, 0.0))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Duration-anomaly Prometheus exporter")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--events-topic", default="device-events")
    parser.add_argument("--anomalies-topic", default="anomalies")
    parser.add_argument("--group-id", default="anomaly-exporter")
    parser.add_argument("--port", type=int, default=9091, help="HTTP port for /metrics")
    args = parser.parse_args()

    handlers = {
        args.events_topic: _process_device_event,
        args.anomalies_topic: _process_anomaly,
    }

    start_http_server(args.port)
    print(f"Serving /metrics on :{args.port}")

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": args.group_id,
        "auto.offset.reset": "latest",
        "enable.auto.commit": True,
    })
    consumer.subscribe(list(handlers))
    meter = _RateMeter(messages_per_second)
    exported = 0

    print(f"Exporting {', '.join(handlers)} ...")

    try:
        while running:
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            err = msg.error()
            if err:
                if err.code() != KafkaError._PARTITION_EOF:
                    export_errors_total.inc()
                    print(f"Consumer error: {err}", file=sys.stderr)
                continue

            handler = handlers.get(msg.topic())
            if handler is None:
                continue
            try:
                payload = json.loads(msg.value().decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError):
                export_errors_total.inc()
                continue
            handler(payload)

            exported += 1
            meter.tick()
            if exported % 5000 == 0:
                print(f"  ... {exported} messages exported")
    finally:
        consumer.close()
        print(f"Exporter stopped after {exported} messages.")


if __name__ == "__main__":
    main()
