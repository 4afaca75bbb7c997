"""Tests for AlarmRegistry — replace, cancel, pop-due, update hook."""

import threading

from anomaly.alarm_registry import AlarmRegistry


class TestSchedule:
    def test_schedule_returns_alarm_for_key(self):
        reg = AlarmRegistry()
        alarm = reg.schedule("k", 100)
        assert alarm.key == "k"
        assert alarm.timestamp_sec == 100
        assert reg.get("k") is alarm

    def test_schedule_replaces_existing_entry(self):
        reg = AlarmRegistry()
        first = reg.schedule("k", 100)
        second = reg.schedule("k", 50)
        assert len(reg) == 1
        assert reg.get("k") is second
        assert reg.get("k") is not first

    def test_alarms_compare_by_identity(self):
        reg = AlarmRegistry()
        a = reg.schedule("k", 100)
        b = reg.schedule("k", 100)
        assert a != b


class TestCancel:
    def test_cancel_removes_entry(self):
        reg = AlarmRegistry()
        reg.schedule("k", 100)
        reg.cancel("k")
        assert "k" not in reg
        assert reg.pop_sooner_than(1000) == set()

    def test_cancel_is_idempotent(self):
        reg = AlarmRegistry()
        reg.cancel("never_scheduled")
        reg.schedule("k", 100)
        reg.cancel("k")
        reg.cancel("k")
        assert len(reg) == 0

    def test_cancel_after_pop_is_noop(self):
        """A stop racing an alarm that was already popped must not fail."""
        reg = AlarmRegistry()
        reg.schedule("k", 100)
        popped = reg.pop_sooner_than(100)
        reg.cancel("k")
        assert len(popped) == 1


class TestPopSoonerThan:
    def test_boundary_is_inclusive(self):
        reg = AlarmRegistry()
        reg.schedule("a", 100)
        assert reg.pop_sooner_than(99) == set()
        popped = reg.pop_sooner_than(100)
        assert {a.key for a in popped} == {"a"}

    def test_only_due_alarms_are_removed(self):
        reg = AlarmRegistry()
        reg.schedule("a", 10)
        reg.schedule("b", 20)
        reg.schedule("c", 30)
        popped = reg.pop_sooner_than(20)
        assert {a.key for a in popped} == {"a", "b"}
        assert len(reg) == 1
        assert "c" in reg

    def test_popped_alarms_are_not_delivered_twice(self):
        reg = AlarmRegistry()
        reg.schedule("a", 10)
        assert len(reg.pop_sooner_than(10)) == 1
        assert reg.pop_sooner_than(10) == set()

    def test_empty_registry(self):
        assert AlarmRegistry().pop_sooner_than(10**9) == set()


class TestEarliestAndUpdateHook:
    def test_earliest_sec(self):
        reg = AlarmRegistry()
        assert reg.earliest_sec() == 0
        reg.schedule("a", 30)
        reg.schedule("b", 10)
        assert reg.earliest_sec() == 10
        reg.cancel("b")
        assert reg.earliest_sec() == 30

    def test_update_hook_fires_only_when_soonest_changes(self):
        seen = []
        reg = AlarmRegistry(on_update=seen.append)
        reg.schedule("a", 30)
        reg.schedule("b", 40)   # soonest still 30
        reg.schedule("c", 10)
        reg.pop_sooner_than(15)
        reg.clear()
        assert seen == [30, 10, 30, 0]

    def test_update_hook_may_read_the_registry(self):
        """The hook runs after the lock is released, so it can call back in."""
        seen = []

        def rearm(earliest_sec):
            seen.append((earliest_sec, reg.earliest_sec(), reg.get("a")))

        reg = AlarmRegistry(on_update=rearm)

        def drive():
            alarm = reg.schedule("a", 30)
            reg.pop_sooner_than(30)
            seen.append(alarm)

        worker = threading.Thread(target=drive, daemon=True)
        worker.start()
        worker.join(timeout=2)
        assert not worker.is_alive(), "update hook deadlocked on the registry lock"
        alarm = seen[-1]
        assert seen[:-1] == [(30, 30, alarm), (0, 0, None)]
