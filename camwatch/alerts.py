from __future__ import annotations

"""Motion-triggered alert rules.

Motion events update the tracker, then every enabled rule bound to the camera
is evaluated under its own lock: re-read rule, local checks, optional AI gate,
claim (`last_triggered` write). Dispatch happens after the claim so a second
event racing in behind the first already sees the cooldown.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from camwatch.camera import SnapshotProvider
from camwatch.errors import (
    ConfigurationError,
    InvariantViolation,
    PersistenceError,
    RuleNotFound,
    TransientExternalError,
)
from camwatch.models import AlertRule, ScheduleSnapshot, apply_rule_update, new_alert_rule
from camwatch.motion import MotionState, MotionStateTracker
from camwatch.notifier import ControlRegistry, InteractiveControl, NotificationDispatcher
from camwatch.rules import RuleEvaluator
from camwatch.store import ScheduleStore
from camwatch.vision import VisionService, gate_prompt, is_affirmative

logger = logging.getLogger(__name__)

MUTE_ACTION = "alert_mute"
MUTE_OPTIONS_MINUTES = ((60, "🔕 Mute for 1 hour"), (1440, "🔕 Mute for 24 hours"))


class AlertEngine:
    """Bridge motion events to rule evaluation, firing and cooldown state."""

    def __init__(
        self,
        store: ScheduleStore,
        snapshots: SnapshotProvider,
        dispatcher: NotificationDispatcher,
        vision: Optional[VisionService] = None,
        *,
        recipients: Iterable[str] = (),
        evaluator: Optional[RuleEvaluator] = None,
        tracker: Optional[MotionStateTracker] = None,
        controls: Optional[ControlRegistry] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.snapshots = snapshots
        self.dispatcher = dispatcher
        self.vision = vision
        self.recipients = tuple(recipients)
        self.evaluator = evaluator or RuleEvaluator()
        self.tracker = tracker or MotionStateTracker()
        self.controls = controls or ControlRegistry()
        self.clock = clock

        self._locks_guard = threading.Lock()
        self._rule_locks: Dict[str, threading.Lock] = {}
        # last_triggered values not yet written to disk
        self._unsaved_triggers: Dict[str, float] = {}

    def _rule_lock(self, rule_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._rule_locks.get(rule_id)
            if lock is None:
                lock = threading.Lock()
                self._rule_locks[rule_id] = lock
            return lock

    def _with_unsaved(self, rule: AlertRule) -> AlertRule:
        with self._locks_guard:
            pending = self._unsaved_triggers.get(rule.id)
        if pending is not None and (rule.last_triggered is None or pending > rule.last_triggered):
            rule.last_triggered = pending
        return rule

    def _apply_unsaved(self, snapshot: ScheduleSnapshot) -> Dict[str, float]:
        with self._locks_guard:
            pending = dict(self._unsaved_triggers)
        for rule in snapshot.alert_rules:
            value = pending.get(rule.id)
            if value is not None and (rule.last_triggered is None or value > rule.last_triggered):
                rule.last_triggered = value
        return pending

    def _commit(self, mutate: Callable[[ScheduleSnapshot], Any]) -> Any:
        with self.store.transaction() as snapshot:
            applied = self._apply_unsaved(snapshot)
            result = mutate(snapshot)
        with self._locks_guard:
            for rule_id, value in applied.items():
                if self._unsaved_triggers.get(rule_id) == value:
                    del self._unsaved_triggers[rule_id]
        return result

    def _current_rule(self, rule_id: str) -> Optional[AlertRule]:
        rule = self.store.load().find_rule(rule_id)
        return self._with_unsaved(rule) if rule is not None else None

    def on_motion(self, camera_ref: str, timestamp: Optional[float] = None) -> List[str]:
        """Handle one motion event and return the ids of rules that fired."""
        at = self.clock() if timestamp is None else float(timestamp)
        update = self.tracker.record_motion(camera_ref, at)
        if not update.accepted:
            logger.debug("Ignoring stale motion event for %s at %.3f", camera_ref, at)
            return []

        rules = [rule for rule in self.store.load().rules_for_camera(camera_ref) if rule.enabled]
        if not rules:
            return []

        fired: List[str] = []
        for rule in rules:
            try:
                if self._evaluate_and_fire(rule.id, camera_ref, at, update.previous):
                    fired.append(rule.id)
            except Exception:
                logger.exception("Alert rule %s failed for %s", rule.id, camera_ref)
        return fired

    def _evaluate_and_fire(self, rule_id: str, camera_ref: str, now: float, motion: MotionState) -> bool:
        image: Optional[bytes] = None
        commentary: Optional[str] = None

        with self._rule_lock(rule_id):
            rule = self._current_rule(rule_id)
            if rule is None:
                return False
            reason = self.evaluator.local_check_failure(rule, now, motion)
            if reason is not None:
                logger.debug("Rule %s on %s not firing: %s", rule_id, camera_ref, reason)
                return False

            ai_result: Optional[bool] = None
            if rule.requires_ai_gate:
                ai_result, image, commentary = self._run_ai_gate(rule, camera_ref)
            if not self.evaluator.should_fire(rule, now, motion, ai_result=ai_result):
                return False

            self._claim(rule, now)

        self._dispatch_alert(rule, camera_ref, now, image, commentary)
        return True

    def _run_ai_gate(self, rule: AlertRule, camera_ref: str) -> Tuple[bool, Optional[bytes], Optional[str]]:
        """Capture and ask the vision model; any failure counts as a non-fire."""
        if self.vision is None:
            logger.warning("Rule %s needs the AI gate but no vision service is configured", rule.id)
            return False, None, None
        try:
            image = self.snapshots.capture(camera_ref)
            answer = self.vision.query(image, gate_prompt(rule.ai_criteria.prompt))
        except TransientExternalError as exc:
            logger.warning("AI gate for rule %s on %s failed: %s", rule.id, camera_ref, exc)
            return False, None, None
        positive = is_affirmative(answer)
        logger.info("AI gate for rule %s on %s: %s", rule.id, camera_ref, "pass" if positive else "no match")
        return positive, image, answer

    def _claim(self, rule: AlertRule, now: float) -> None:
        """Record the firing before dispatch; keep it in memory if the write fails."""

        def _set_triggered(snapshot: ScheduleSnapshot) -> None:
            stored = snapshot.find_rule(rule.id)
            if stored is None:
                raise RuleNotFound(f"Alert rule {rule.id} disappeared while firing")
            if stored.last_triggered is not None and stored.last_triggered > now:
                raise InvariantViolation(
                    f"Rule {rule.id} already triggered at {stored.last_triggered:.3f}, after {now:.3f}"
                )
            stored.last_triggered = now

        with self._locks_guard:
            self._unsaved_triggers[rule.id] = now
        rule.last_triggered = now
        try:
            self._commit(_set_triggered)
        except PersistenceError:
            logger.exception("Could not persist trigger time for rule %s; keeping it in memory", rule.id)
        except Exception:
            with self._locks_guard:
                if self._unsaved_triggers.get(rule.id) == now:
                    del self._unsaved_triggers[rule.id]
            raise

    def _alert_controls(self, rule_id: str) -> List[InteractiveControl]:
        return [
            InteractiveControl(label, self.controls.register(MUTE_ACTION, rule_id=rule_id, minutes=minutes))
            for minutes, label in MUTE_OPTIONS_MINUTES
        ]

    def _dispatch_alert(
        self,
        rule: AlertRule,
        camera_ref: str,
        now: float,
        image: Optional[bytes],
        commentary: Optional[str],
    ) -> None:
        if image is None:
            try:
                image = self.snapshots.capture(camera_ref)
            except TransientExternalError as exc:
                logger.warning("Alert snapshot for %s failed: %s", camera_ref, exc)

        lines = [
            "🚨 Motion Alert",
            f"📹 Camera: {camera_ref}",
            f"⏰ Time: {self.evaluator.local_time(now).strftime('%Y-%m-%d %H:%M:%S')}",
            f"📋 Rule: {rule.idle_threshold_minutes}min idle threshold",
        ]
        if commentary:
            lines.append(f"🤖 AI Analysis: {commentary}")
        if image is None:
            lines.append("⚠️ Snapshot unavailable")
        text = "\n".join(lines)

        if not self.recipients:
            logger.warning("Alert rule %s fired for %s but no recipients are configured", rule.id, camera_ref)
            return

        controls = self._alert_controls(rule.id)
        delivered = 0
        for recipient in self.recipients:
            try:
                if self.dispatcher.send(recipient, text, image=image, controls=controls):
                    delivered += 1
                else:
                    logger.error("Alert for rule %s could not be delivered to %s", rule.id, recipient)
            except Exception:
                logger.exception("Dispatcher raised while sending alert %s to %s", rule.id, recipient)
        logger.info(
            "Alert triggered for %s (rule %s), delivered to %d/%d recipients",
            camera_ref,
            rule.id,
            delivered,
            len(self.recipients),
        )

    def create_rule(self, definition: Mapping[str, Any]) -> str:
        rule = new_alert_rule(definition)
        self._commit(lambda snapshot: snapshot.alert_rules.append(rule))
        logger.info("Created alert rule %s for %s", rule.id, rule.camera_ref)
        return rule.id

    def update_rule(self, rule_id: str, partial: Mapping[str, Any]) -> AlertRule:
        """Apply validated edits; raises RuleNotFound or ConfigurationError."""

        def _update(snapshot: ScheduleSnapshot) -> AlertRule:
            index = next((i for i, rule in enumerate(snapshot.alert_rules) if rule.id == rule_id), None)
            if index is None:
                raise RuleNotFound(f"Alert rule not found: {rule_id}")
            updated = apply_rule_update(snapshot.alert_rules[index], partial)
            snapshot.alert_rules[index] = updated
            return updated

        with self._rule_lock(rule_id):
            updated = self._commit(_update)
        logger.info("Updated alert rule %s", rule_id)
        return updated

    def delete_rule(self, rule_id: str) -> bool:
        removed = {"value": False}

        def _delete(snapshot: ScheduleSnapshot) -> None:
            kept = [rule for rule in snapshot.alert_rules if rule.id != rule_id]
            removed["value"] = len(kept) != len(snapshot.alert_rules)
            snapshot.alert_rules[:] = kept

        with self._rule_lock(rule_id):
            self._commit(_delete)
        with self._locks_guard:
            self._rule_locks.pop(rule_id, None)
        if removed["value"]:
            logger.info("Deleted alert rule %s", rule_id)
        return removed["value"]

    def list_rules(self, camera_ref: Optional[str] = None) -> List[AlertRule]:
        snapshot = self.store.load()
        rules = snapshot.alert_rules if camera_ref is None else snapshot.rules_for_camera(camera_ref)
        return [self._with_unsaved(rule) for rule in rules]

    def mute_rule(self, rule_id: str, minutes: int, now: Optional[float] = None) -> float:
        """Suppress a rule for `minutes`; returns the mute end timestamp."""
        if minutes <= 0:
            raise ConfigurationError("mute minutes must be positive")
        until = (self.clock() if now is None else now) + minutes * 60

        def _mute(snapshot: ScheduleSnapshot) -> None:
            rule = snapshot.find_rule(rule_id)
            if rule is None:
                raise RuleNotFound(f"Alert rule not found: {rule_id}")
            rule.muted_until = until

        with self._rule_lock(rule_id):
            self._commit(_mute)
        logger.info("Muted alert rule %s for %d minutes", rule_id, minutes)
        return until

    def handle_control(self, token: str) -> str:
        """Execute the action behind an alert button token."""
        entry = self.controls.resolve(token)
        if entry is None:
            return "This button has expired."
        action, args = entry
        if action == MUTE_ACTION:
            minutes = int(args["minutes"])
            try:
                self.mute_rule(args["rule_id"], minutes)
            except RuleNotFound:
                return "That alert rule no longer exists."
            hours = minutes / 60
            return f"🔕 Alert muted for {hours:g} hour{'s' if hours != 1 else ''}."
        return "Unknown action."

