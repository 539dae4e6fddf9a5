from __future__ import annotations

"""Recurring snapshot reminders.

Each active reminder owns one `RepeatingTimer`. The scheduler keeps the live
timer table in step with the durable `active=True` set and never lets a
camera or Telegram failure deactivate a reminder.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Protocol, Set

from camwatch.camera import SnapshotProvider
from camwatch.errors import InvariantViolation, PersistenceError, TransientExternalError
from camwatch.models import ReminderSchedule, ScheduleSnapshot, new_reminder
from camwatch.notifier import NotificationDispatcher
from camwatch.store import ScheduleStore

logger = logging.getLogger(__name__)


class ScheduledTask(Protocol):
    """Handle for a recurring job."""

    def cancel(self) -> None:
        ...

    def join(self, timeout: Optional[float] = None) -> None:
        ...

    @property
    def cancelled(self) -> bool:
        ...


TimerFactory = Callable[[str, float, Callable[[], None], float], ScheduledTask]


class RepeatingTimer:
    """Daemon thread calling `callback` every `interval_seconds`.

    `cancel()` guarantees no new tick starts afterwards; a tick already running
    is allowed to finish.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], None],
        initial_delay_seconds: Optional[float] = None,
    ) -> None:
        self.name = name
        self.interval_seconds = max(0.001, float(interval_seconds))
        self.initial_delay_seconds = (
            self.interval_seconds if initial_delay_seconds is None else max(0.0, float(initial_delay_seconds))
        )
        self._callback = callback
        self._cancel_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def start(self) -> "RepeatingTimer":
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._cancel_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        delay = self.initial_delay_seconds
        while not self._cancel_event.wait(timeout=delay):
            try:
                self._callback()
            except Exception:
                logger.exception("Timer %s tick failed", self.name)
            delay = self.interval_seconds


def start_repeating_timer(
    name: str,
    interval_seconds: float,
    callback: Callable[[], None],
    initial_delay_seconds: float,
) -> ScheduledTask:
    return RepeatingTimer(name, interval_seconds, callback, initial_delay_seconds).start()


class ReminderScheduler:
    """Owns one timer per active reminder and the reminder lifecycle."""

    def __init__(
        self,
        store: ScheduleStore,
        snapshots: SnapshotProvider,
        dispatcher: NotificationDispatcher,
        *,
        timer_factory: TimerFactory = start_repeating_timer,
        clock: Callable[[], float] = time.time,
        seconds_per_minute: float = 60.0,
    ) -> None:
        self.store = store
        self.snapshots = snapshots
        self.dispatcher = dispatcher
        self.timer_factory = timer_factory
        self.clock = clock
        self.seconds_per_minute = seconds_per_minute

        self._lock = threading.Lock()
        self._timers: Dict[str, ScheduledTask] = {}
        self._pending_deactivations: Set[str] = set()

    def armed_ids(self) -> Set[str]:
        with self._lock:
            return set(self._timers)

    def _period_seconds(self, reminder: ReminderSchedule) -> float:
        return reminder.interval_minutes * self.seconds_per_minute

    def _initial_delay(self, reminder: ReminderSchedule, now: float) -> float:
        """Delay until the next due tick; overdue reminders fire right away."""
        period = self._period_seconds(reminder)
        anchor = reminder.last_run or reminder.created_at
        if anchor <= 0:
            return period
        return max(0.0, anchor + period - now)

    def _arm(self, reminder: ReminderSchedule, now: float) -> None:
        with self._lock:
            if reminder.id in self._timers:
                raise InvariantViolation(f"Reminder {reminder.id} already has a live timer")
            self._timers[reminder.id] = self.timer_factory(
                f"reminder-{reminder.id}",
                self._period_seconds(reminder),
                lambda reminder_id=reminder.id: self.run_tick(reminder_id),
                self._initial_delay(reminder, now),
            )
        logger.info(
            "Armed reminder %s every %d min for %s (camera=%s)",
            reminder.id,
            reminder.interval_minutes,
            reminder.recipient,
            reminder.camera_ref or "default",
        )

    def _disarm(self, reminder_id: str) -> bool:
        with self._lock:
            timer = self._timers.pop(reminder_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def _apply_pending(self, snapshot: ScheduleSnapshot) -> None:
        """Re-apply deactivations whose earlier write failed."""
        with self._lock:
            pending = set(self._pending_deactivations)
        if not pending:
            return
        for reminder in snapshot.reminders:
            if reminder.id in pending:
                reminder.active = False

    def _mark_persisted(self, snapshot: ScheduleSnapshot) -> None:
        with self._lock:
            self._pending_deactivations.difference_update(r.id for r in snapshot.reminders if not r.active)
            known = {r.id for r in snapshot.reminders}
            self._pending_deactivations.intersection_update(known)

    def _commit(self, mutate: Callable[[ScheduleSnapshot], None]) -> None:
        """Run one read-modify-write cycle through the store."""
        with self.store.transaction() as snapshot:
            self._apply_pending(snapshot)
            mutate(snapshot)
        self._mark_persisted(snapshot)

    def reconcile(self) -> int:
        """Make live timers mirror the durable active set; return timers armed."""
        snapshot = self.store.load()
        with self._lock:
            pending = set(self._pending_deactivations)
        wanted = {r.id: r for r in snapshot.reminders if r.active and r.id not in pending}

        for stray in self.armed_ids() - set(wanted):
            logger.info("Cancelling timer for reminder %s (no longer active)", stray)
            self._disarm(stray)

        armed = 0
        now = self.clock()
        live = self.armed_ids()
        for reminder_id, reminder in wanted.items():
            if reminder_id in live:
                continue
            self._arm(reminder, now)
            armed += 1
        logger.info("Reminder reconciliation: %d active, %d newly armed", len(wanted), armed)
        return armed

    def create(self, recipient: str, interval_minutes: int, camera_ref: Optional[str] = None) -> str:
        """Validate, persist, then arm a new reminder and return its id."""
        now = self.clock()
        reminder = new_reminder(recipient, interval_minutes, camera_ref, now)
        self._commit(lambda snapshot: snapshot.reminders.append(reminder))
        self._arm(reminder, now)
        return reminder.id

    def stop(self, reminder_id: str) -> bool:
        """Cancel and deactivate; returns False when nothing was active."""
        had_timer = self._disarm(reminder_id)
        changed = {"value": False}

        def _deactivate(snapshot: ScheduleSnapshot) -> None:
            reminder = snapshot.find_reminder(reminder_id)
            if reminder is not None and reminder.active:
                reminder.active = False
                changed["value"] = True

        try:
            self._commit(_deactivate)
        except PersistenceError:
            logger.exception("Could not persist stop of reminder %s; will retry on next write", reminder_id)
            with self._lock:
                self._pending_deactivations.add(reminder_id)
            return True

        if changed["value"] or had_timer:
            logger.info("Stopped reminder %s", reminder_id)
        return changed["value"] or had_timer

    def clear(self, recipient: Optional[str] = None) -> int:
        """Administrative clear: stop every active reminder (optionally one recipient's)."""
        targets = [
            reminder.id
            for reminder in self.store.load().reminders
            if reminder.active and (recipient is None or reminder.recipient == str(recipient))
        ]
        if recipient is None:
            targets.extend(reminder_id for reminder_id in self.armed_ids() if reminder_id not in targets)
        return sum(1 for reminder_id in targets if self.stop(reminder_id))

    def purge_inactive(self) -> int:
        """Drop `active=False` reminders retained for audit."""
        removed = {"count": 0}

        def _purge(snapshot: ScheduleSnapshot) -> None:
            kept = [reminder for reminder in snapshot.reminders if reminder.active]
            removed["count"] = len(snapshot.reminders) - len(kept)
            snapshot.reminders[:] = kept

        self._commit(_purge)
        if removed["count"]:
            logger.info("Purged %d inactive reminders", removed["count"])
        return removed["count"]

    def list_reminders(self, recipient: Optional[str] = None, include_inactive: bool = False) -> List[ReminderSchedule]:
        snapshot = self.store.load()
        with self._lock:
            pending = set(self._pending_deactivations)
        result = []
        for reminder in snapshot.reminders:
            if reminder.id in pending:
                reminder.active = False
            if recipient is not None and reminder.recipient != str(recipient):
                continue
            if not include_inactive and not reminder.active:
                continue
            result.append(reminder)
        return result

    def shutdown(self, join_timeout: float = 5.0) -> None:
        """Cancel all timers and wait for in-flight ticks; durable state is untouched."""
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        for timer in timers:
            timer.join(timeout=join_timeout)

    def run_tick(self, reminder_id: str) -> None:
        """Capture and send one reminder snapshot, then record `last_run`."""
        with self._lock:
            if reminder_id not in self._timers:
                return

        reminder = self.store.load().find_reminder(reminder_id)
        if reminder is None or not reminder.active:
            logger.info("Reminder %s is gone or inactive; cancelling its timer", reminder_id)
            self._disarm(reminder_id)
            return

        camera_label = reminder.camera_ref or "default camera"
        try:
            image = self.snapshots.capture(reminder.camera_ref)
            caption = "🕐 Automated snapshot" + (f" from {reminder.camera_ref}" if reminder.camera_ref else "")
            if not self.dispatcher.send(reminder.recipient, caption, image=image):
                logger.error("Reminder %s snapshot from %s could not be delivered", reminder_id, camera_label)
        except TransientExternalError as exc:
            logger.warning("Reminder %s snapshot failed: %s", reminder_id, exc)
            self._send_failure_notice(reminder, exc)
        except Exception as exc:
            logger.exception("Reminder %s tick failed", reminder_id)
            self._send_failure_notice(reminder, exc)
        finally:
            self._record_run(reminder_id)

    def _send_failure_notice(self, reminder: ReminderSchedule, exc: Exception) -> None:
        try:
            self.dispatcher.send(reminder.recipient, f"❌ Error taking automated snapshot: {exc}")
        except Exception:
            logger.exception("Could not deliver failure notice for reminder %s", reminder.id)

    def _record_run(self, reminder_id: str) -> None:
        ran_at = self.clock()

        def _touch(snapshot: ScheduleSnapshot) -> None:
            stored = snapshot.find_reminder(reminder_id)
            if stored is not None:
                stored.last_run = ran_at

        try:
            self._commit(_touch)
        except PersistenceError:
            logger.exception("Could not persist last run of reminder %s", reminder_id)
