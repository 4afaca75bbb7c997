"""Device state-change event generator.

Simulates a phone's wakelock and screen activity with configurable normal
and leaking app profiles.  Event schemas follow the wakelock_state_changed /
screen_state_changed atoms: uid, tag, acquire/release state, and a
nanosecond timestamp.

Usage:
    python producer.py
    python producer.py --normal 10 --leakers 2 --screen-period 120
    python producer.py --eps 20 --topic device-events
"""

import argparse
import heapq
import json
import random
import signal
import time
from dataclasses import dataclass

from confluent_kafka import Producer

from anomaly.topics import ensure_topics

TAGS = ["sync", "location", "gcm", "job_scheduler", "audio", "download"]

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down generator...")
    running = False


signal.signal(signal.SIGINT, _shutdown)   # Ctrl+C (local dev)
signal.signal(signal.SIGTERM, _shutdown)  # docker stop / k8s pod termination


# ---------------------------------------------------------------------------
# App profiles
# ---------------------------------------------------------------------------

@dataclass
class App:
    uid: int
    package: str
    role: str  # normal | leaker
    acquires_per_min: float
    hold_lo_sec: float
    hold_hi_sec: float


def _create_apps(n_normal, n_leakers):
    """Build the app pool. Uids start at 10001 like installed apps."""
    apps = []
    uid = 10000

    # --- Normal apps: short holds, a few per minute ---
    for i in range(n_normal):
        uid += 1
        apps.append(App(
            uid=uid, package=f"com.example.app{i:02d}", role="normal",
            acquires_per_min=random.uniform(1, 6),
            hold_lo_sec=0.05, hold_hi_sec=3.0,
        ))

    # --- Leakers: long holds, frequently re-acquired ---
    for i in range(n_leakers):
        uid += 1
        apps.append(App(
            uid=uid, package=f"com.example.leaky{i:02d}", role="leaker",
            acquires_per_min=random.uniform(4, 10),
            hold_lo_sec=20.0, hold_hi_sec=90.0,
        ))

    return apps


# ---------------------------------------------------------------------------
# Event generation
# ---------------------------------------------------------------------------

def _wakelock_event(app: App, tag: str, state: str, ts_ns: int) -> dict:
    return {
        "event_type": "wakelock_state_changed",
        "timestamp_ns": ts_ns,
        "uid": app.uid,
        "package": app.package,
        "tag": tag,
        "level": "PARTIAL_WAKE_LOCK",
        "state": state,
    }


def _screen_event(state: str, ts_ns: int) -> dict:
    return {
        "event_type": "screen_state_changed",
        "timestamp_ns": ts_ns,
        "state": state,
    }


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Device state-change event generator")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="device-events")
    parser.add_argument("--normal", type=int, default=8)
    parser.add_argument("--leakers", type=int, default=1)
    parser.add_argument(
        "--screen-period", type=float, default=300,
        help="Seconds between screen on/off toggles",
    )
    parser.add_argument("--eps", type=float, default=10, help="Target acquires/sec ceiling")
    parser.add_argument("--replication-factor", type=int, default=1)
    args = parser.parse_args()

    apps = _create_apps(args.normal, args.leakers)
    weights = [a.acquires_per_min for a in apps]

    print(f"Generating to topic '{args.topic}' at up to ~{args.eps} acquires/sec")
    print(f"Apps: {len(apps)} total")
    for a in apps:
        print(f"  uid={a.uid}  {a.role:<7s} ~{a.acquires_per_min:>4.1f} apm  {a.package}")

    ensure_topics(args.bootstrap_servers, [args.topic],
                  replication_factor=args.replication_factor)

    producer = Producer({
        "bootstrap.servers": args.bootstrap_servers,
        "acks": "all",
        "client.id": "device-event-generator",
    })

    def send(event):
        producer.produce(
            topic=args.topic,
            key=str(event.get("uid", "screen")).encode(),
            value=json.dumps(event),
        )
        producer.poll(0)

    count = 0
    reported = 0
    delay = 1.0 / args.eps
    screen_on = False
    next_screen_toggle = time.time() + args.screen_period
    pending_releases: list[tuple[float, int, int, str]] = []  # (at, seq, uid, tag)
    by_uid = {a.uid: a for a in apps}
    send(_screen_event("off", time.time_ns()))

    while running:
        now = time.time()

        if now >= next_screen_toggle:
            screen_on = not screen_on
            send(_screen_event("on" if screen_on else "off", time.time_ns()))
            next_screen_toggle = now + args.screen_period
            count += 1

        while pending_releases and pending_releases[0][0] <= now:
            _, _, uid, tag = heapq.heappop(pending_releases)
            send(_wakelock_event(by_uid[uid], tag, "release", time.time_ns()))
            count += 1

        app = random.choices(apps, weights=weights, k=1)[0]
        if random.random() < app.acquires_per_min / 60 / args.eps * len(apps):
            tag = random.choice(TAGS)
            send(_wakelock_event(app, tag, "acquire", time.time_ns()))
            hold = random.uniform(app.hold_lo_sec, app.hold_hi_sec)
            heapq.heappush(pending_releases, (now + hold, count, app.uid, tag))
            count += 1

        if count - reported >= 500:
            reported = count
            print(f"  ... {count} events produced")

        time.sleep(delay)

    # Release everything still held so downstream state is clean.
    for _, _, uid, tag in sorted(pending_releases):
        send(_wakelock_event(by_uid[uid], tag, "release", time.time_ns()))
        count += 1
    producer.flush()
    print(f"Done. {count} events produced.")


if __name__ == "__main__":
    main()
