"""Anomaly service — reads state-change events, runs the trackers, produces anomalies.

Consumes from device-events, routes each event into every alert's
duration tracker, and publishes declared anomalies to the anomalies topic.
Alarms are polled inline after every consumer poll, so events and alarm
firings are applied from the same thread, one at a time.

Usage:
    python -m anomaly.main
    python -m anomaly.main --bootstrap-servers kafka-1:29092 --alerts-dir anomaly/alerts/definitions
"""

import argparse
import json
import signal
import sys
import time
from pathlib import Path

from confluent_kafka import Consumer, Producer, KafkaError

from anomaly.alarm_monitor import AlarmMonitor
from anomaly.alerts.loader import load_alerts
from anomaly.router import EventRouter
from anomaly.topics import ensure_topics
from anomaly.tracker import Anomaly, DurationAnomalyTracker

_DEFAULT_ALERTS_DIR = Path(__file__).resolve().parent / "alerts" / "definitions"

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down anomaly service...")
    running = False


signal.signal(signal.SIGINT, _shutdown)
signal.signal(signal.SIGTERM, _shutdown)


def _decode(msg):
    """Event dict from a polled message, or None (timeout, EOF, error, bad payload)."""
    if msg is None:
        return None
    err = msg.error()
    if err:
        if err.code() != KafkaError._PARTITION_EOF:
            print(f"Consumer error: {err}", file=sys.stderr)
        return None
    try:
        return json.loads(msg.value().decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        print(f"Skipping undecodable event: {e}", file=sys.stderr)
        return None


def build_trackers(alerts_dir, time_base_ns):
    """One (tracker, router) pair per alert definition."""
    pairs = []
    for spec in load_alerts(alerts_dir):
        router = EventRouter.for_alert(spec)
        tracker = DurationAnomalyTracker(
            spec, time_base_ns=time_base_ns, condition=router.initial_condition,
        )
        pairs.append((tracker, router))
    return pairs


def main():
    parser = argparse.ArgumentParser(description="Duration anomaly service")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--input-topic", default="device-events")
    parser.add_argument("--output-topic", default="anomalies")
    parser.add_argument("--group-id", default="anomaly-tracker")
    parser.add_argument("--alerts-dir", default=str(_DEFAULT_ALERTS_DIR))
    parser.add_argument(
        "--poll-interval", type=float, default=1.0,
        help="Seconds to block on Kafka before checking alarms",
    )
    parser.add_argument("--replication-factor", type=int, default=1)
    args = parser.parse_args()

    # Bucket grid starts when the service does.
    pairs = build_trackers(args.alerts_dir, time.time_ns())
    monitor = AlarmMonitor([tracker for tracker, _ in pairs])

    ensure_topics(args.bootstrap_servers, [args.output_topic],
                  replication_factor=args.replication_factor)

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": args.group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.input_topic])

    producer = Producer({"bootstrap.servers": args.bootstrap_servers})

    consumed = 0
    anomalies_produced = 0

    def publish(anomaly: Anomaly):
        nonlocal anomalies_produced
        producer.produce(
            args.output_topic,
            key=anomaly.alert_id,
            value=json.dumps(anomaly.to_dict()).encode("utf-8"),
        )
        anomalies_produced += 1
        print(f"ANOMALY  alert={anomaly.alert_id:<24s} key={anomaly.key}  "
              f"value_ns={anomaly.metric_value}  "
              f"refractory_until={anomaly.refractory_ends_sec}")

    print(f"Anomaly service started  input={args.input_topic}  "
          f"output={args.output_topic}  alerts={len(pairs)}")

    try:
        while running:
            event = _decode(consumer.poll(args.poll_interval))
            if event is not None:
                consumed += 1
                for tracker, router in pairs:
                    try:
                        declared = router.dispatch(tracker, event)
                    except KeyError as e:
                        print(f"Skipping event without dimension {e} "
                              f"for {tracker.spec.id}", file=sys.stderr)
                        continue
                    for anomaly in declared:
                        publish(anomaly)

                # Batch flush every 1000 events (producer buffers internally)
                if consumed % 1000 == 0:
                    producer.flush()
                if consumed % 500 == 0:
                    print(f"  ... {consumed} events consumed, "
                          f"{anomalies_produced} anomalies produced")

            # Alarms are checked on every pass, idle or not.
            for anomaly in monitor.poll():
                publish(anomaly)
    finally:
        producer.flush()
        consumer.close()
        print(f"Done. {consumed} events consumed, {anomalies_produced} anomalies produced.")


if __name__ == "__main__":
    main()
