from __future__ import annotations

"""Application wiring: settings to collaborators, engine, motion and Telegram.

This module coordinates:
- the reminder/alert engine and its durable schedule store
- snapshot-polling motion workers
- Telegram commands, alert buttons and status reporting
"""

import logging
import shlex
import threading
import time
from datetime import datetime
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from camwatch.camera import CameraDirectory, SnapshotProvider, build_camera_directory, build_snapshot_provider
from camwatch.config import Settings, build_camera_map
from camwatch.engine import AutomationEngine
from camwatch.errors import CamwatchError, ConfigurationError, PersistenceError, TransientExternalError
from camwatch.models import ActiveHours, AlertRule, ReminderSchedule
from camwatch.motion_source import SnapshotMotionSource
from camwatch.notifier import TelegramEvent, TelegramNotifier
from camwatch.rules import RuleEvaluator
from camwatch.store import ScheduleStore
from camwatch.vision import OpenAIVisionService

logger = logging.getLogger(__name__)

_COUNTERS = ("motion_events", "alerts_fired", "commands", "errors")

_AUDITED_COMMANDS = {"/snapshot": "snapshot", "/ask": "ask", "/remind": "remind", "/bins": "bins"}

_BIN_REPLIES = {
    "street": "🛣️ Bins are at the street",
    "driveway": "🏠 Bins are in the driveway",
    "unknown": "❓ Bin location unknown",
}

HELP_TEXT = (
    "Commands:\n"
    "/ping\n"
    "/status\n"
    "/cameras\n"
    "/snapshot [camera]\n"
    "/ask [camera |] <question>\n"
    "/bins [camera]\n"
    "/remind <minutes> [camera]\n"
    "/reminders\n"
    "/stop <reminder id>\n"
    "/alerts [camera]\n"
    "/alertadd <camera> <idle min> <cooldown min> <start>-<end> [ai prompt]\n"
    "/alerton <rule id> | /alertoff <rule id> | /alertdel <rule id>\n"
    "/mute <rule id> <minutes>\n"
    "/history [count]"
)


class RuntimeStats:
    """Thread-safe counters used for `/status` responses."""

    def __init__(self, clock=time.time) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self.started_at = clock()
        self.last_event_at = self.started_at
        self._totals = {name: 0 for name in _COUNTERS}
        self._last_report = dict(self._totals)

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self._totals[counter] += amount
            self.last_event_at = self._clock()

    def total(self, counter: str) -> int:
        with self._lock:
            return self._totals[counter]

    def status_report(self, cameras: int, reminders: int, rules: int) -> str:
        """Build status string and reset the `since last report` checkpoint."""
        with self._lock:
            now = self._clock()
            uptime = int(now - self.started_at)
            since_last = {name: self._totals[name] - self._last_report[name] for name in _COUNTERS}
            self._last_report = dict(self._totals)
            totals = dict(self._totals)
            last_event = int(now - self.last_event_at)

        return (
            "App status: running\n"
            f"Uptime: {uptime}s | Cameras: {cameras} | Last activity: {last_event}s ago\n"
            f"Active reminders: {reminders} | Alert rules: {rules}\n"
            f"Since last report: motion={since_last['motion_events']}, alerts={since_last['alerts_fired']}, "
            f"commands={since_last['commands']}, errors={since_last['errors']}\n"
            f"Totals: motion={totals['motion_events']}, alerts={totals['alerts_fired']}, "
            f"commands={totals['commands']}, errors={totals['errors']}"
        )


def _resolve_timezone(name: str):
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        logger.warning("Unknown ALERT_TIMEZONE %r; using local time", name)
        return None


def _format_time(timestamp: Optional[float]) -> str:
    if not timestamp:
        return "never"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M")


def _describe_reminder(reminder: ReminderSchedule) -> str:
    return (
        f"• {reminder.id}: every {reminder.interval_minutes} min "
        f"({reminder.camera_ref or 'default camera'}), last run {_format_time(reminder.last_run)}"
    )


def _describe_rule(rule: AlertRule) -> str:
    state = "on" if rule.enabled else "off"
    hours = f"{rule.active_hours.start:02d}-{rule.active_hours.end:02d}h"
    line = (
        f"• {rule.id} [{state}] {rule.camera_ref}: idle {rule.idle_threshold_minutes}m, "
        f"cooldown {rule.cooldown_minutes}m, {hours}"
    )
    if rule.requires_ai_gate:
        line += f", AI: {rule.ai_criteria.prompt}"
    if rule.muted_until and rule.muted_until > time.time():
        line += f", muted until {_format_time(rule.muted_until)}"
    return line


def _parse_hours(raw: str) -> ActiveHours:
    start, sep, end = raw.partition("-")
    if not sep:
        raise ConfigurationError("active hours must look like <start>-<end>, e.g. 22-6")
    try:
        bounds = (int(start), int(end))
    except ValueError:
        raise ConfigurationError(f"active hours must be whole hours, got {raw!r}") from None
    return ActiveHours.parse(bounds)


class CamwatchApp:
    """Top-level service object controlling worker lifecycle."""

    def __init__(
        self,
        settings: Settings,
        *,
        notifier: Optional[TelegramNotifier] = None,
        engine: Optional[AutomationEngine] = None,
        directory: Optional[CameraDirectory] = None,
        snapshots: Optional[SnapshotProvider] = None,
    ) -> None:
        self.settings = settings
        self.directory = directory or build_camera_directory(settings, build_camera_map(settings))
        self.snapshots = snapshots or build_snapshot_provider(settings, self.directory)
        self.vision = OpenAIVisionService(
            api_key=settings.openai_api_key,
            model=settings.vision_model,
            base_url=settings.vision_base_url,
            timeout_seconds=settings.vision_timeout_seconds,
        )
        self.notifier = notifier or TelegramNotifier(
            bot_token=settings.telegram_bot_token,
            chat_id=settings.telegram_chat_id,
            authorized_chats=settings.telegram_authorized_chats,
        )
        self.engine = engine or AutomationEngine(
            ScheduleStore(settings.schedule_store_path),
            self.snapshots,
            self.notifier,
            self.vision if self.vision.enabled else None,
            alert_recipients=settings.alert_recipients,
            evaluator=RuleEvaluator(tz=_resolve_timezone(settings.alert_timezone)),
        )
        self.stats = RuntimeStats()
        self.motion_source: Optional[SnapshotMotionSource] = None
        if settings.motion_detection_enabled:
            self.motion_source = SnapshotMotionSource(
                self.directory,
                self.snapshots,
                on_motion=self._on_motion,
                on_idle=self.engine.on_motion_idle,
                poll_seconds=settings.motion_poll_seconds,
                pixel_threshold=settings.motion_pixel_threshold,
                min_changed_ratio=settings.motion_min_changed_ratio,
            )
        self.stop_event = threading.Event()

    def _on_motion(self, camera_name: str, timestamp: float) -> None:
        self.stats.increment("motion_events")
        fired = self.engine.on_motion(camera_name, timestamp)
        if fired:
            self.stats.increment("alerts_fired", len(fired))

    def _camera_name(self, camera_ref: Optional[str]) -> str:
        return self.directory.resolve(camera_ref).name

    def _handle_telegram_event(self, event: TelegramEvent) -> Optional[str]:
        """Handle Telegram commands and alert button presses."""
        if event.callback_token:
            self.stats.increment("commands")
            return self.engine.handle_control(event.callback_token)

        text = (event.text or "").strip()
        if not text:
            return None

        parts = text.split()
        command = parts[0].lower().split("@", 1)[0]
        args = text[len(parts[0]):].strip()
        self.stats.increment("commands")

        try:
            reply = self._run_command(command, args, event.chat_id)
        except ConfigurationError as exc:
            self._audit(event.chat_id, command, text, exc)
            return f"❌ {exc}"
        except TransientExternalError as exc:
            self.stats.increment("errors")
            logger.warning("Command %s failed: %s", command, exc)
            self._audit(event.chat_id, command, text, exc)
            return f"❌ {exc}"
        except PersistenceError as exc:
            self.stats.increment("errors")
            logger.exception("Command %s could not save schedules", command)
            self._audit(event.chat_id, command, text, exc)
            return "❌ Could not save the change, please try again."
        self._audit(event.chat_id, command, text)
        return reply

    def _audit(self, chat_id: str, command: str, text: str, error: Optional[Exception] = None) -> None:
        action = _AUDITED_COMMANDS.get(command)
        if action is None:
            return
        self.engine.record_request(
            chat_id,
            action,
            text,
            success=error is None,
            error_message=str(error) if error is not None else None,
        )

    def _run_command(self, command: str, args: str, chat_id: str) -> Optional[str]:
        if command in {"ping", "/ping"}:
            return "pong"
        if command in {"help", "/help", "/start", "?"}:
            return HELP_TEXT
        if command in {"status", "/status"}:
            return self.stats.status_report(
                cameras=len(self.directory.names()),
                reminders=len(self.engine.list_reminders()),
                rules=len(self.engine.list_alert_rules()),
            )
        if command == "/cameras":
            return "Cameras:\n" + "\n".join(f"• {name}" for name in self.directory.names())
        if command == "/snapshot":
            return self._send_snapshot(chat_id, args or None)
        if command == "/ask":
            return self._ask(chat_id, args)
        if command == "/bins":
            return self._bins(args or None)
        if command == "/remind":
            return self._remind(chat_id, args)
        if command == "/reminders":
            reminders = self.engine.list_reminders(recipient=chat_id)
            if not reminders:
                return "No active reminders."
            return "Active reminders:\n" + "\n".join(_describe_reminder(r) for r in reminders)
        if command == "/stop":
            return self._stop_reminder(chat_id, args)
        if command == "/alerts":
            camera = self._camera_name(args) if args else None
            rules = self.engine.list_alert_rules(camera)
            if not rules:
                return "No alert rules."
            return "Alert rules:\n" + "\n".join(_describe_rule(rule) for rule in rules)
        if command == "/alertadd":
            return self._add_rule(args)
        if command in {"/alerton", "/alertoff"}:
            if not args:
                return f"Usage: {command} <rule id>"
            rule = self.engine.update_alert_rule(args, {"enabled": command == "/alerton"})
            return f"Alert rule {rule.id} {'enabled' if rule.enabled else 'disabled'}."
        if command == "/alertdel":
            if not args:
                return "Usage: /alertdel <rule id>"
            if self.engine.delete_alert_rule(args):
                return f"Alert rule {args} deleted."
            return f"No alert rule {args}."
        if command == "/mute":
            return self._mute(args)
        if command == "/history":
            return self._history(chat_id, args)
        return None

    def _send_snapshot(self, chat_id: str, camera_ref: Optional[str]) -> Optional[str]:
        camera = self._camera_name(camera_ref)
        image = self.snapshots.capture(camera)
        if not self.notifier.send(chat_id, f"📸 Snapshot from {camera}", image=image):
            return "❌ Could not deliver the snapshot."
        return None

    def _ask(self, chat_id: str, args: str) -> str:
        if not args:
            return "Usage: /ask [camera |] <question>"
        camera_ref, sep, question = args.partition("|")
        if not sep:
            camera_ref, question = "", args
        camera = self._camera_name(camera_ref.strip() or None)
        answer = self.engine.analyze(camera, question.strip())
        return f"🤖 {camera}: {answer}"

    def _bins(self, camera_ref: Optional[str]) -> str:
        camera = self._camera_name(camera_ref)
        result = self.engine.check_bins(camera)
        reply = f"{_BIN_REPLIES[result.status]} ({camera})"
        if result.reasoning:
            reply += f": {result.reasoning}"
        return reply

    def _history(self, chat_id: str, args: str) -> str:
        try:
            limit = int(args) if args else 10
        except ValueError:
            return "Usage: /history [count]"
        records = self.engine.request_history(user_id=chat_id, limit=max(1, limit))
        if not records:
            return "No requests yet."
        lines = []
        for record in records:
            mark = "✅" if record.success else "❌"
            lines.append(f"• {_format_time(record.timestamp)} {mark} {record.details}")
        return "Recent requests:\n" + "\n".join(lines)

    def _remind(self, chat_id: str, args: str) -> str:
        interval_raw, _, camera_raw = args.partition(" ")
        try:
            interval = int(interval_raw)
        except ValueError:
            return "Usage: /remind <minutes> [camera]"
        camera = self._camera_name(camera_raw.strip() or None)
        reminder_id = self.engine.create_reminder(chat_id, interval, camera)
        return f"⏰ Reminder {reminder_id}: snapshot from {camera} every {interval} min."

    def _stop_reminder(self, chat_id: str, args: str) -> str:
        if not args:
            return "Usage: /stop <reminder id>"
        owned = {r.id for r in self.engine.list_reminders(recipient=chat_id)}
        if args not in owned:
            return f"No active reminder {args}."
        self.engine.stop_reminder(args)
        return f"Reminder {args} stopped."

    def _add_rule(self, args: str) -> str:
        try:
            tokens = shlex.split(args)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        if len(tokens) < 4:
            return "Usage: /alertadd <camera> <idle min> <cooldown min> <start>-<end> [ai prompt]"
        camera_ref, idle_raw, cooldown_raw, hours_raw = tokens[:4]
        prompt = " ".join(tokens[4:]).strip()
        try:
            idle, cooldown = int(idle_raw), int(cooldown_raw)
        except ValueError:
            return "Idle and cooldown must be whole minutes."
        definition = {
            "camera_ref": self._camera_name(camera_ref),
            "idle_threshold_minutes": idle,
            "cooldown_minutes": cooldown,
            "active_hours": _parse_hours(hours_raw),
        }
        if prompt:
            definition["ai_criteria"] = {"enabled": True, "prompt": prompt}
        rule_id = self.engine.create_alert_rule(definition)
        return f"🚨 Alert rule {rule_id} created for {definition['camera_ref']}."

    def _mute(self, args: str) -> str:
        parts: List[str] = args.split()
        if len(parts) != 2:
            return "Usage: /mute <rule id> <minutes>"
        try:
            minutes = int(parts[1])
        except ValueError:
            return "Usage: /mute <rule id> <minutes>"
        until = self.engine.mute_alert_rule(parts[0], minutes)
        return f"🔕 Alert rule {parts[0]} muted until {_format_time(until)}."

    def _start_workers(self) -> Tuple[int, int]:
        armed = self.engine.start()
        self.notifier.start_command_listener(self._handle_telegram_event)
        pollers = 0
        if self.motion_source is not None:
            self.motion_source.start()
            pollers = len(self.directory.names())
        return armed, pollers

    def _stop_workers(self) -> None:
        """Stop worker threads and close external resources."""
        self.stop_event.set()
        if self.motion_source is not None:
            self.motion_source.stop()
        self.engine.shutdown()
        self.notifier.close()
        self.vision.close()
        self.snapshots.close()
        logger.info("All workers and resources stopped")

    def stop(self) -> None:
        self.stop_event.set()

    def run(self) -> None:
        """Run service until interrupted from main thread."""
        try:
            armed, pollers = self._start_workers()
        except CamwatchError:
            logger.exception("Startup failed")
            self._stop_workers()
            raise
        logger.info(
            "Starting camwatch with %d cameras in %s mode (%d reminders armed, %d motion pollers)",
            len(self.directory.names()),
            self.settings.capture_mode,
            armed,
            pollers,
        )
        try:
            while not self.stop_event.is_set():
                time.sleep(0.2)
        except KeyboardInterrupt:
            logger.info("Interrupted by user, stopping workers...")
            self.stop_event.set()
        finally:
            self._stop_workers()
