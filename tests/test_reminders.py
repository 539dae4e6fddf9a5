"""Tests for reminder lifecycle, ticks and restart reconciliation."""

from __future__ import annotations

import threading

import pytest

from camwatch.errors import ConfigurationError, PersistenceError
from camwatch.models import ReminderSchedule, ScheduleSnapshot
from camwatch.reminders import ReminderScheduler, RepeatingTimer


@pytest.fixture
def scheduler(store, snapshots, dispatcher, timers, clock) -> ReminderScheduler:
    return ReminderScheduler(store, snapshots, dispatcher, timer_factory=timers, clock=clock)


def _fail_saves(store, monkeypatch) -> None:
    def _raise(snapshot):
        raise PersistenceError("disk full")

    monkeypatch.setattr(store, "save", _raise)


def test_create_persists_and_arms_one_timer(scheduler, store, timers) -> None:
    reminder_id = scheduler.create("42", 30, "Garage")

    stored = store.load().find_reminder(reminder_id)
    assert stored.active
    assert stored.interval_minutes == 30
    timer = timers.for_reminder(reminder_id)
    assert timer.interval == 1800
    assert timer.delay == 1800
    assert scheduler.armed_ids() == {reminder_id}


def test_create_rejects_invalid_interval(scheduler, store, timers) -> None:
    with pytest.raises(ConfigurationError):
        scheduler.create("42", 0)
    assert store.load().reminders == []
    assert timers.timers == []


def test_create_does_not_arm_when_save_fails(scheduler, store, timers, monkeypatch) -> None:
    _fail_saves(store, monkeypatch)
    with pytest.raises(PersistenceError):
        scheduler.create("42", 5)
    assert timers.timers == []
    assert scheduler.armed_ids() == set()


def test_tick_sends_snapshot_and_records_last_run(scheduler, store, snapshots, dispatcher, timers, clock) -> None:
    reminder_id = scheduler.create("42", 30, "Garage")
    clock.advance(1800)

    timers.for_reminder(reminder_id).fire()

    assert snapshots.calls == ["Garage"]
    assert dispatcher.sent[0]["recipient"] == "42"
    assert dispatcher.sent[0]["text"] == "🕐 Automated snapshot from Garage"
    assert dispatcher.sent[0]["image"].startswith(b"jpeg:Garage")
    assert store.load().find_reminder(reminder_id).last_run == clock.now


def test_tick_failure_reports_error_and_stays_active(scheduler, store, snapshots, dispatcher, timers, clock) -> None:
    reminder_id = scheduler.create("42", 10, "Garage")
    snapshots.fail("Garage", "camera offline")
    clock.advance(600)

    timers.for_reminder(reminder_id).fire()

    assert dispatcher.sent[0]["text"] == "❌ Error taking automated snapshot: camera offline"
    assert dispatcher.sent[0]["image"] is None
    stored = store.load().find_reminder(reminder_id)
    assert stored.active
    assert stored.last_run == clock.now
    assert reminder_id in scheduler.armed_ids()


def test_tick_survives_dispatch_failure(scheduler, store, dispatcher, timers, clock) -> None:
    dispatcher.result = False
    reminder_id = scheduler.create("42", 10)
    clock.advance(600)
    timers.for_reminder(reminder_id).fire()
    assert store.load().find_reminder(reminder_id).last_run == clock.now


def test_tick_tolerates_failed_last_run_write(scheduler, store, dispatcher, timers, monkeypatch) -> None:
    reminder_id = scheduler.create("42", 10)
    _fail_saves(store, monkeypatch)
    timers.for_reminder(reminder_id).fire()
    assert len(dispatcher.sent) == 1


def test_tick_reports_unexpected_capture_error(store, dispatcher, timers, clock) -> None:
    class CrashingSnapshots:
        def capture(self, camera_ref):
            raise RuntimeError("driver crashed")

    scheduler = ReminderScheduler(store, CrashingSnapshots(), dispatcher, timer_factory=timers, clock=clock)
    reminder_id = scheduler.create("42", 10, "Garage")
    clock.advance(600)

    timers.for_reminder(reminder_id).fire()

    assert dispatcher.sent[0]["text"] == "❌ Error taking automated snapshot: driver crashed"
    assert store.load().find_reminder(reminder_id).last_run == clock.now
    assert reminder_id in scheduler.armed_ids()


def test_tick_records_last_run_when_dispatcher_raises(scheduler, store, dispatcher, timers, clock, monkeypatch) -> None:
    reminder_id = scheduler.create("42", 10)

    def _explode(*args, **kwargs):
        raise RuntimeError("telegram client closed")

    monkeypatch.setattr(dispatcher, "send", _explode)
    clock.advance(600)

    timers.for_reminder(reminder_id).fire()

    assert store.load().find_reminder(reminder_id).last_run == clock.now


def test_stop_is_idempotent(scheduler, store, timers) -> None:
    reminder_id = scheduler.create("42", 5)
    timer = timers.for_reminder(reminder_id)

    assert scheduler.stop(reminder_id) is True
    assert timer.cancelled
    assert store.load().find_reminder(reminder_id).active is False
    assert scheduler.stop(reminder_id) is False
    assert scheduler.stop("does-not-exist") is False


def test_stopped_reminder_never_sends_again(scheduler, dispatcher, timers) -> None:
    reminder_id = scheduler.create("42", 5)
    timer = timers.for_reminder(reminder_id)
    scheduler.stop(reminder_id)

    scheduler.run_tick(reminder_id)
    timer.callback()

    assert dispatcher.sent == []


def test_list_excludes_stopped_reminders(scheduler) -> None:
    keep = scheduler.create("42", 5)
    gone = scheduler.create("42", 10)
    other = scheduler.create("7", 15)
    scheduler.stop(gone)

    assert {r.id for r in scheduler.list_reminders()} == {keep, other}
    assert [r.id for r in scheduler.list_reminders(recipient="42")] == [keep]
    assert {r.id for r in scheduler.list_reminders(include_inactive=True)} == {keep, gone, other}


def test_stop_survives_failed_write_and_reapplies_later(scheduler, store, monkeypatch) -> None:
    reminder_id = scheduler.create("42", 5)
    working_save = store.save
    _fail_saves(store, monkeypatch)

    assert scheduler.stop(reminder_id) is True
    assert scheduler.list_reminders() == []
    assert reminder_id not in scheduler.armed_ids()

    monkeypatch.setattr(store, "save", working_save)
    scheduler.create("42", 10)
    assert store.load().find_reminder(reminder_id).active is False


def test_reconcile_arms_only_active_reminders(store, snapshots, dispatcher, timers, clock) -> None:
    store.save(
        ScheduleSnapshot(
            reminders=[
                ReminderSchedule(id="on", recipient="42", interval_minutes=5, created_at=clock.now),
                ReminderSchedule(id="off", recipient="42", interval_minutes=5, active=False, created_at=clock.now),
            ]
        )
    )
    scheduler = ReminderScheduler(store, snapshots, dispatcher, timer_factory=timers, clock=clock)

    assert scheduler.reconcile() == 1
    assert scheduler.armed_ids() == {"on"}
    assert scheduler.reconcile() == 0
    assert len(timers.live()) == 1


def test_restart_rearms_overdue_reminder(store, snapshots, dispatcher, timers, clock) -> None:
    """A 30 minute reminder created at T=0 and never run must fire right away at T=45."""
    created_at = clock.now
    first = ReminderScheduler(store, snapshots, dispatcher, timer_factory=timers, clock=clock)
    reminder_id = first.create("42", 30, "Garage")
    assert store.load().find_reminder(reminder_id).created_at == created_at

    clock.advance(45 * 60)
    restarted_timers = type(timers)()
    restarted = ReminderScheduler(store, snapshots, dispatcher, timer_factory=restarted_timers, clock=clock)

    assert restarted.reconcile() == 1
    timer = restarted_timers.for_reminder(reminder_id)
    assert timer.delay == 0
    assert timer.interval == 1800

    timer.fire()
    assert len(dispatcher.sent) == 1
    assert store.load().find_reminder(reminder_id).last_run == clock.now


def test_restart_waits_remaining_time_after_recent_run(store, snapshots, dispatcher, timers, clock) -> None:
    store.save(
        ScheduleSnapshot(
            reminders=[
                ReminderSchedule(
                    id="r", recipient="42", interval_minutes=30, last_run=clock.now - 600, created_at=clock.now - 7200
                )
            ]
        )
    )
    scheduler = ReminderScheduler(store, snapshots, dispatcher, timer_factory=timers, clock=clock)
    scheduler.reconcile()
    assert timers.for_reminder("r").delay == 1200


def test_reconcile_cancels_timers_for_reminders_deactivated_elsewhere(scheduler, store, timers) -> None:
    reminder_id = scheduler.create("42", 5)
    with store.transaction() as snapshot:
        snapshot.find_reminder(reminder_id).active = False

    scheduler.reconcile()

    assert scheduler.armed_ids() == set()
    assert timers.live() == []


def test_clear_stops_one_recipient(scheduler) -> None:
    scheduler.create("42", 5)
    scheduler.create("42", 10)
    survivor = scheduler.create("7", 5)

    assert scheduler.clear("42") == 2
    assert [r.id for r in scheduler.list_reminders()] == [survivor]


def test_purge_removes_inactive_records(scheduler, store) -> None:
    keep = scheduler.create("42", 5)
    gone = scheduler.create("42", 10)
    scheduler.stop(gone)

    assert scheduler.purge_inactive() == 1
    assert [r.id for r in store.load().reminders] == [keep]


def test_shutdown_cancels_timers_but_keeps_reminders_active(scheduler, store, timers) -> None:
    reminder_id = scheduler.create("42", 5)
    scheduler.shutdown()
    assert timers.live() == []
    assert store.load().find_reminder(reminder_id).active


def test_shutdown_joins_cancelled_timers(scheduler, timers) -> None:
    scheduler.create("42", 5)
    scheduler.shutdown()
    assert all(timer.joined for timer in timers.timers)


def test_shutdown_waits_for_running_tick(store, dispatcher) -> None:
    started, release = threading.Event(), threading.Event()

    class SlowSnapshots:
        def capture(self, camera_ref):
            started.set()
            release.wait(timeout=2)
            return b"jpeg"

    scheduler = ReminderScheduler(store, SlowSnapshots(), dispatcher, seconds_per_minute=0.05)
    reminder_id = scheduler.create("42", 1)
    assert started.wait(timeout=2)
    threading.Timer(0.1, release.set).start()

    scheduler.shutdown()

    assert len(dispatcher.sent) == 1
    assert store.load().find_reminder(reminder_id).last_run > 0


def test_repeating_timer_ticks_until_cancelled() -> None:
    ticked = threading.Event()
    count = {"ticks": 0}

    def _tick() -> None:
        count["ticks"] += 1
        ticked.set()

    timer = RepeatingTimer("test", 0.01, _tick, initial_delay_seconds=0).start()
    assert ticked.wait(timeout=2)
    timer.cancel()
    timer.join(timeout=2)
    after_cancel = count["ticks"]

    assert timer.cancelled
    assert after_cancel >= 1
    assert count["ticks"] == after_cancel
