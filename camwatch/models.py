from __future__ import annotations

"""Reminder schedules, alert rules and the durable schedule document.

Objects here are plain dataclasses. Serialisation uses the camelCase keys of
the on-disk document; every constructor that accepts operator input validates
it completely and raises `ConfigurationError` instead of returning a partially
applied object.
"""

import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional

from camwatch.errors import ConfigurationError

HISTORY_LIMIT = 1000

RULE_FIELDS = {
    "camera_ref",
    "enabled",
    "idle_threshold_minutes",
    "active_hours",
    "cooldown_minutes",
    "ai_criteria",
}


def new_id() -> str:
    """Return a short opaque identifier."""
    return uuid.uuid4().hex[:12]


def camera_key(camera_ref: Optional[str]) -> str:
    """Normalize a camera reference for comparisons."""
    return (camera_ref or "").strip().casefold()


def _require_int(name: str, value: Any, minimum: int, maximum: Optional[int] = None) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        else:
            raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ConfigurationError(f"{name} must be <= {maximum}, got {value}")
    return value


def _require_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"{name} must be true or false, got {value!r}")
    return value


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class ActiveHours:
    """Inclusive hour-of-day window; `start > end` wraps past midnight."""

    start: int = 0
    end: int = 23

    def contains(self, hour: int) -> bool:
        if self.start <= self.end:
            return self.start <= hour <= self.end
        return hour >= self.start or hour <= self.end

    def to_dict(self) -> Dict[str, int]:
        return {"start": self.start, "end": self.end}

    @classmethod
    def parse(cls, raw: Any) -> "ActiveHours":
        """Build from a mapping, a `(start, end)` pair or an `ActiveHours`."""
        if isinstance(raw, ActiveHours):
            start, end = raw.start, raw.end
        elif isinstance(raw, Mapping):
            if "start" not in raw or "end" not in raw:
                raise ConfigurationError("active_hours needs both 'start' and 'end'")
            start, end = raw["start"], raw["end"]
        elif isinstance(raw, (tuple, list)) and len(raw) == 2:
            start, end = raw
        else:
            raise ConfigurationError(f"active_hours must be {{start, end}}, got {raw!r}")
        return cls(
            start=_require_int("active_hours.start", start, 0, 23),
            end=_require_int("active_hours.end", end, 0, 23),
        )


@dataclass(frozen=True)
class AiCriteria:
    """Optional vision-model gate evaluated before an alert fires."""

    enabled: bool = False
    prompt: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "prompt": self.prompt}

    @classmethod
    def parse(cls, raw: Any) -> Optional["AiCriteria"]:
        if raw is None:
            return None
        if isinstance(raw, AiCriteria):
            enabled, prompt = raw.enabled, raw.prompt
        elif isinstance(raw, Mapping):
            enabled = raw.get("enabled", False)
            prompt = raw.get("prompt", "")
        else:
            raise ConfigurationError(f"ai_criteria must be {{enabled, prompt}}, got {raw!r}")
        enabled = _require_bool("ai_criteria.enabled", enabled)
        prompt = str(prompt or "").strip()
        if enabled and not prompt:
            raise ConfigurationError("ai_criteria.prompt is required when the AI gate is enabled")
        return cls(enabled=enabled, prompt=prompt)


@dataclass
class ReminderSchedule:
    """Recurring snapshot reminder for one recipient."""

    id: str
    recipient: str
    interval_minutes: int
    camera_ref: Optional[str] = None
    last_run: float = 0.0
    active: bool = True
    created_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "recipient": self.recipient,
            "intervalMinutes": self.interval_minutes,
            "lastRun": self.last_run,
            "active": self.active,
            "createdAt": self.created_at,
        }
        if self.camera_ref is not None:
            data["cameraRef"] = self.camera_ref
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ReminderSchedule":
        try:
            reminder_id = str(data["id"])
            recipient = str(data["recipient"])
        except KeyError as exc:
            raise ConfigurationError(f"reminder is missing {exc.args[0]!r}") from exc
        return cls(
            id=reminder_id,
            recipient=recipient,
            interval_minutes=_require_int("intervalMinutes", data.get("intervalMinutes"), 1),
            camera_ref=_optional_text(data.get("cameraRef")),
            last_run=float(data.get("lastRun") or 0.0),
            active=_require_bool("active", data.get("active", True)),
            created_at=float(data.get("createdAt") or 0.0),
        )


def new_reminder(
    recipient: Any,
    interval_minutes: Any,
    camera_ref: Optional[str],
    now: float,
) -> ReminderSchedule:
    """Validate operator input and build a fresh active reminder."""
    target = str(recipient if recipient is not None else "").strip()
    if not target:
        raise ConfigurationError("recipient is required")
    return ReminderSchedule(
        id=new_id(),
        recipient=target,
        interval_minutes=_require_int("interval_minutes", interval_minutes, 1),
        camera_ref=_optional_text(camera_ref),
        last_run=0.0,
        active=True,
        created_at=now,
    )


@dataclass
class AlertRule:
    """Motion-triggered alert condition bound to one camera."""

    id: str
    camera_ref: str
    enabled: bool = True
    idle_threshold_minutes: int = 0
    active_hours: ActiveHours = field(default_factory=ActiveHours)
    cooldown_minutes: int = 0
    ai_criteria: Optional[AiCriteria] = None
    last_triggered: Optional[float] = None
    muted_until: Optional[float] = None

    @property
    def requires_ai_gate(self) -> bool:
        return bool(self.ai_criteria and self.ai_criteria.enabled and self.ai_criteria.prompt)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "cameraRef": self.camera_ref,
            "enabled": self.enabled,
            "idleThresholdMinutes": self.idle_threshold_minutes,
            "activeHours": self.active_hours.to_dict(),
            "cooldownMinutes": self.cooldown_minutes,
        }
        if self.ai_criteria is not None:
            data["aiCriteria"] = self.ai_criteria.to_dict()
        if self.last_triggered is not None:
            data["lastTriggered"] = self.last_triggered
        if self.muted_until is not None:
            data["mutedUntil"] = self.muted_until
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AlertRule":
        if "id" not in data:
            raise ConfigurationError("alert rule is missing 'id'")
        camera_ref = _optional_text(data.get("cameraRef"))
        if camera_ref is None:
            raise ConfigurationError("alert rule is missing 'cameraRef'")
        last_triggered = data.get("lastTriggered")
        muted_until = data.get("mutedUntil")
        return cls(
            id=str(data["id"]),
            camera_ref=camera_ref,
            enabled=_require_bool("enabled", data.get("enabled", True)),
            idle_threshold_minutes=_require_int("idleThresholdMinutes", data.get("idleThresholdMinutes", 0), 0),
            active_hours=ActiveHours.parse(data.get("activeHours", {"start": 0, "end": 23})),
            cooldown_minutes=_require_int("cooldownMinutes", data.get("cooldownMinutes", 0), 0),
            ai_criteria=AiCriteria.parse(data.get("aiCriteria")),
            last_triggered=float(last_triggered) if last_triggered is not None else None,
            muted_until=float(muted_until) if muted_until is not None else None,
        )


def _validated_rule_fields(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate operator-supplied rule fields (snake_case keys)."""
    unknown = set(values) - RULE_FIELDS
    if unknown:
        raise ConfigurationError(f"unknown alert rule field(s): {', '.join(sorted(unknown))}")

    cleaned: Dict[str, Any] = {}
    if "camera_ref" in values:
        camera_ref = _optional_text(values["camera_ref"])
        if camera_ref is None:
            raise ConfigurationError("camera_ref is required")
        cleaned["camera_ref"] = camera_ref
    if "enabled" in values:
        cleaned["enabled"] = _require_bool("enabled", values["enabled"])
    if "idle_threshold_minutes" in values:
        cleaned["idle_threshold_minutes"] = _require_int(
            "idle_threshold_minutes", values["idle_threshold_minutes"], 0
        )
    if "cooldown_minutes" in values:
        cleaned["cooldown_minutes"] = _require_int("cooldown_minutes", values["cooldown_minutes"], 0)
    if "active_hours" in values:
        cleaned["active_hours"] = ActiveHours.parse(values["active_hours"])
    if "ai_criteria" in values:
        cleaned["ai_criteria"] = AiCriteria.parse(values["ai_criteria"])
    return cleaned


def new_alert_rule(definition: Mapping[str, Any]) -> AlertRule:
    """Validate a rule definition and build a new rule with a fresh id."""
    if not isinstance(definition, Mapping):
        raise ConfigurationError("alert rule definition must be a mapping")
    if "camera_ref" not in definition:
        raise ConfigurationError("camera_ref is required")
    return AlertRule(id=new_id(), **_validated_rule_fields(definition))


def apply_rule_update(rule: AlertRule, partial: Mapping[str, Any]) -> AlertRule:
    """Return a copy of `rule` with validated operator edits applied."""
    if not isinstance(partial, Mapping):
        raise ConfigurationError("alert rule update must be a mapping")
    for reserved in ("id", "last_triggered", "muted_until"):
        if reserved in partial:
            raise ConfigurationError(f"{reserved} cannot be changed through an update")
    return replace(rule, **_validated_rule_fields(partial))


@dataclass
class RequestRecord:
    """One audited user request (snapshot, question, reminder or bin check)."""

    id: str
    user_id: str
    action: str
    details: str
    timestamp: float
    success: bool = True
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "userId": self.user_id,
            "action": self.action,
            "details": self.details,
            "timestamp": self.timestamp,
            "success": self.success,
        }
        if self.error_message:
            data["errorMessage"] = self.error_message
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RequestRecord":
        try:
            return cls(
                id=str(data["id"]),
                user_id=str(data["userId"]),
                action=str(data["action"]),
                details=str(data.get("details") or ""),
                timestamp=float(data["timestamp"]),
                success=_require_bool("success", data.get("success", True)),
                error_message=_optional_text(data.get("errorMessage")),
            )
        except KeyError as exc:
            raise ConfigurationError(f"request record is missing {exc.args[0]!r}") from exc


@dataclass
class ScheduleSnapshot:
    """Full contents of the durable schedule document."""

    reminders: List[ReminderSchedule] = field(default_factory=list)
    alert_rules: List[AlertRule] = field(default_factory=list)
    request_history: List[RequestRecord] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    def add_request(self, record: RequestRecord) -> None:
        """Prepend `record`, keeping only the newest `HISTORY_LIMIT` entries."""
        self.request_history.insert(0, record)
        del self.request_history[HISTORY_LIMIT:]

    def find_reminder(self, reminder_id: str) -> Optional[ReminderSchedule]:
        for reminder in self.reminders:
            if reminder.id == reminder_id:
                return reminder
        return None

    def find_rule(self, rule_id: str) -> Optional[AlertRule]:
        for rule in self.alert_rules:
            if rule.id == rule_id:
                return rule
        return None

    def rules_for_camera(self, camera_ref: str) -> List[AlertRule]:
        key = camera_key(camera_ref)
        return [rule for rule in self.alert_rules if camera_key(rule.camera_ref) == key]

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data["reminders"] = [reminder.to_dict() for reminder in self.reminders]
        data["alertRules"] = [rule.to_dict() for rule in self.alert_rules]
        if self.request_history:
            data["requestHistory"] = [record.to_dict() for record in self.request_history]
        return data
