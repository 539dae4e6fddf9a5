from __future__ import annotations

"""Pure alert-rule decision logic.

The evaluator never performs I/O. The optional AI gate is run by the caller
between `passes_local_checks` and `should_fire`.
"""

from datetime import datetime, tzinfo
from typing import Optional

from camwatch.models import AlertRule
from camwatch.motion import MotionState

DISABLED = "disabled"
MUTED = "muted"
COOLDOWN = "cooldown"
OUTSIDE_ACTIVE_HOURS = "outside_active_hours"
IDLE_UNKNOWN = "idle_unknown"
IDLE_TOO_SHORT = "idle_too_short"


class RuleEvaluator:
    """Evaluate rules in cheapest-first order and stop at the first failure."""

    def __init__(self, tz: Optional[tzinfo] = None) -> None:
        self.tz = tz

    def local_time(self, now: float) -> datetime:
        """Wall-clock time in the alert timezone (system local when unset)."""
        return datetime.fromtimestamp(now, tz=self.tz)

    def local_hour(self, now: float) -> int:
        return self.local_time(now).hour

    def local_check_failure(self, rule: AlertRule, now: float, motion: MotionState) -> Optional[str]:
        """Return the reason code of the first failing check, or None."""
        if not rule.enabled:
            return DISABLED

        if rule.muted_until is not None and now < rule.muted_until:
            return MUTED

        if rule.cooldown_minutes > 0 and rule.last_triggered is not None:
            if now - rule.last_triggered < rule.cooldown_minutes * 60:
                return COOLDOWN

        if not rule.active_hours.contains(self.local_hour(now)):
            return OUTSIDE_ACTIVE_HOURS

        if rule.idle_threshold_minutes > 0:
            idle = motion.idle_duration(now)
            if idle is None:
                return IDLE_UNKNOWN
            if idle < rule.idle_threshold_minutes * 60:
                return IDLE_TOO_SHORT

        return None

    def passes_local_checks(self, rule: AlertRule, now: float, motion: MotionState) -> bool:
        return self.local_check_failure(rule, now, motion) is None

    def should_fire(
        self,
        rule: AlertRule,
        now: float,
        motion: MotionState,
        ai_result: Optional[bool] = None,
    ) -> bool:
        """Combine local checks with the caller-supplied AI gate result."""
        if not self.passes_local_checks(rule, now, motion):
            return False
        if rule.requires_ai_gate:
            return ai_result is True
        return True
