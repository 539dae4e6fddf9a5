from __future__ import annotations

"""Public entry points of the reminder and alerting engine.

`AutomationEngine` is built from injected collaborators so it can run against
the real DVR/Telegram/vision adapters or against test fakes.
"""

import logging
import time
from typing import Any, Callable, Iterable, List, Mapping, Optional

from camwatch.alerts import AlertEngine
from camwatch.camera import SnapshotProvider
from camwatch.errors import PersistenceError, VisionServiceError
from camwatch.models import AlertRule, ReminderSchedule, RequestRecord, new_id
from camwatch.motion import MotionStateTracker
from camwatch.notifier import ControlRegistry, NotificationDispatcher
from camwatch.reminders import ReminderScheduler, TimerFactory, start_repeating_timer
from camwatch.rules import RuleEvaluator
from camwatch.store import ScheduleStore
from camwatch.vision import BinClassification, VisionService

logger = logging.getLogger(__name__)


class AutomationEngine:
    def __init__(
        self,
        store: ScheduleStore,
        snapshots: SnapshotProvider,
        dispatcher: NotificationDispatcher,
        vision: Optional[VisionService] = None,
        *,
        alert_recipients: Iterable[str] = (),
        evaluator: Optional[RuleEvaluator] = None,
        tracker: Optional[MotionStateTracker] = None,
        controls: Optional[ControlRegistry] = None,
        timer_factory: TimerFactory = start_repeating_timer,
        clock: Callable[[], float] = time.time,
        seconds_per_minute: float = 60.0,
    ) -> None:
        self.store = store
        self.snapshots = snapshots
        self.vision = vision
        self.clock = clock
        self.reminders = ReminderScheduler(
            store,
            snapshots,
            dispatcher,
            timer_factory=timer_factory,
            clock=clock,
            seconds_per_minute=seconds_per_minute,
        )
        self.alerts = AlertEngine(
            store,
            snapshots,
            dispatcher,
            vision,
            recipients=alert_recipients,
            evaluator=evaluator,
            tracker=tracker,
            controls=controls,
            clock=clock,
        )

    @property
    def tracker(self) -> MotionStateTracker:
        return self.alerts.tracker

    def start(self) -> int:
        """Re-arm every active reminder found in storage."""
        return self.reminders.reconcile()

    def shutdown(self) -> None:
        self.reminders.shutdown()

    def create_reminder(self, recipient: str, interval_minutes: int, camera_ref: Optional[str] = None) -> str:
        return self.reminders.create(recipient, interval_minutes, camera_ref)

    def stop_reminder(self, reminder_id: str) -> bool:
        return self.reminders.stop(reminder_id)

    def list_reminders(self, recipient: Optional[str] = None, include_inactive: bool = False) -> List[ReminderSchedule]:
        return self.reminders.list_reminders(recipient, include_inactive=include_inactive)

    def clear_reminders(self, recipient: Optional[str] = None) -> int:
        return self.reminders.clear(recipient)

    def purge_inactive_reminders(self) -> int:
        return self.reminders.purge_inactive()

    def create_alert_rule(self, definition: Mapping[str, Any]) -> str:
        return self.alerts.create_rule(definition)

    def update_alert_rule(self, rule_id: str, partial: Mapping[str, Any]) -> AlertRule:
        return self.alerts.update_rule(rule_id, partial)

    def delete_alert_rule(self, rule_id: str) -> bool:
        return self.alerts.delete_rule(rule_id)

    def list_alert_rules(self, camera_ref: Optional[str] = None) -> List[AlertRule]:
        return self.alerts.list_rules(camera_ref)

    def mute_alert_rule(self, rule_id: str, minutes: int) -> float:
        return self.alerts.mute_rule(rule_id, minutes)

    def handle_control(self, token: str) -> str:
        return self.alerts.handle_control(token)

    def on_motion(self, camera_ref: str, timestamp: Optional[float] = None) -> List[str]:
        return self.alerts.on_motion(camera_ref, timestamp)

    def on_motion_idle(self, camera_ref: str) -> None:
        self.alerts.tracker.mark_idle(camera_ref)

    def analyze(self, camera_ref: Optional[str], question: str) -> str:
        """Answer a user question about a fresh snapshot; errors propagate."""
        if self.vision is None:
            raise VisionServiceError("No vision service configured")
        image = self.snapshots.capture(camera_ref)
        return self.vision.query(image, question)

    def check_bins(self, camera_ref: Optional[str]) -> BinClassification:
        """Classify where the garbage bins are in a fresh snapshot."""
        if self.vision is None:
            raise VisionServiceError("No vision service configured")
        image = self.snapshots.capture(camera_ref)
        return self.vision.classify_bins(image)

    def record_request(
        self,
        user_id: str,
        action: str,
        details: str,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> None:
        """Append one entry to the request history; a failed write is only logged."""
        record = RequestRecord(
            id=new_id(),
            user_id=str(user_id),
            action=action,
            details=details,
            timestamp=self.clock(),
            success=success,
            error_message=error_message,
        )
        try:
            with self.store.transaction() as snapshot:
                snapshot.add_request(record)
        except PersistenceError:
            logger.exception("Could not record %s request from %s", action, user_id)

    def request_history(self, user_id: Optional[str] = None, limit: Optional[int] = None) -> List[RequestRecord]:
        """Newest-first request history, optionally for one user."""
        history = self.store.load().request_history
        if user_id is not None:
            history = [record for record in history if record.user_id == str(user_id)]
        return history[:limit] if limit else history
