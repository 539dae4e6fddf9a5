"""Tests for the engine facade and the Telegram command surface."""

from __future__ import annotations

from datetime import timezone
from pathlib import Path

import pytest

from camwatch.app import CamwatchApp, RuntimeStats
from camwatch.config import load_settings
from camwatch.engine import AutomationEngine
from camwatch.errors import CameraUnavailable, VisionServiceError
from camwatch.notifier import TelegramEvent
from camwatch.rules import RuleEvaluator


@pytest.fixture
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    for key in (
        "DVR_USERNAME",
        "DVR_PASSWORD",
        "DVR_IP",
        "CAMERA_CHANNELS",
        "DEFAULT_CAMERA",
        "CAPTURE_MODE",
        "TELEGRAM_CHAT_ID",
        "TELEGRAM_AUTHORIZED_CHATS",
        "ALERT_RECIPIENTS",
        "OPENAI_API_KEY",
    ):
        monkeypatch.delenv(key, raising=False)
    secrets = tmp_path / ".secrets"
    secrets.write_text(
        "\n".join(
            [
                "DVR_USERNAME=admin",
                "DVR_PASSWORD=pw",
                "DVR_IP=10.0.0.2",
                "CAMERA_CHANNELS=101:Front Door;201:Garage",
                "TELEGRAM_CHAT_ID=42",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("SCHEDULE_STORE_PATH", str(tmp_path / "schedules.json"))
    monkeypatch.setenv("MOTION_DETECTION", "off")
    return load_settings(str(secrets))


@pytest.fixture
def automation(store, snapshots, dispatcher, vision, timers, clock) -> AutomationEngine:
    return AutomationEngine(
        store,
        snapshots,
        dispatcher,
        vision,
        alert_recipients=("42",),
        evaluator=RuleEvaluator(tz=timezone.utc),
        timer_factory=timers,
        clock=clock,
    )


@pytest.fixture
def app(settings, automation, snapshots, dispatcher) -> CamwatchApp:
    return CamwatchApp(settings, notifier=dispatcher, engine=automation, snapshots=snapshots)


def _say(app: CamwatchApp, text: str, chat_id: str = "42"):
    return app._handle_telegram_event(TelegramEvent(text=text, chat_id=chat_id))


def test_engine_analyze_queries_vision_with_fresh_snapshot(automation, snapshots, vision) -> None:
    vision.answer = "The garage door is closed."
    assert automation.analyze("Garage", "Is the door open?") == "The garage door is closed."
    assert snapshots.calls == ["Garage"]
    assert vision.calls[0][1] == "Is the door open?"


def test_engine_analyze_propagates_failures(store, snapshots, dispatcher, automation) -> None:
    snapshots.fail("Garage")
    with pytest.raises(CameraUnavailable):
        automation.analyze("Garage", "anything")

    without_vision = AutomationEngine(store, snapshots, dispatcher, None)
    with pytest.raises(VisionServiceError):
        without_vision.analyze(None, "anything")


def test_engine_start_rearms_persisted_reminders(store, snapshots, dispatcher, timers, clock, automation) -> None:
    reminder_id = automation.create_reminder("42", 15, "Garage")
    automation.shutdown()

    restarted = AutomationEngine(store, snapshots, dispatcher, timer_factory=timers, clock=clock)
    assert restarted.start() == 1
    assert [r.id for r in restarted.list_reminders()] == [reminder_id]


def test_engine_motion_idle_closes_window(automation, clock) -> None:
    automation.on_motion("Garage", clock.now)
    automation.on_motion_idle("Garage")
    assert automation.tracker.state("Garage").active is False


def test_ping_and_help(app) -> None:
    assert _say(app, "/ping") == "pong"
    assert "/remind <minutes> [camera]" in _say(app, "/help")
    assert _say(app, "/nonsense") is None


def test_remind_list_and_stop_flow(app, automation) -> None:
    reply = _say(app, "/remind 30 garage")
    assert "every 30 min" in reply
    reminder = automation.list_reminders()[0]
    assert reminder.camera_ref == "Garage"
    assert reminder.recipient == "42"

    assert reminder.id in _say(app, "/reminders")
    assert _say(app, f"/stop {reminder.id}", chat_id="7") == f"No active reminder {reminder.id}."
    assert _say(app, f"/stop {reminder.id}") == f"Reminder {reminder.id} stopped."
    assert _say(app, "/reminders") == "No active reminders."


def test_remind_rejects_bad_input(app) -> None:
    assert _say(app, "/remind soon") == "Usage: /remind <minutes> [camera]"
    assert _say(app, "/remind 0").startswith("❌ interval_minutes must be >= 1")
    assert _say(app, "/remind 5 Attic") == "❌ Camera not found: Attic"


def test_alert_rule_commands(app, automation) -> None:
    reply = _say(app, '/alertadd "front door" 10 60 22-6 Is someone at the door?')
    rule = automation.list_alert_rules()[0]
    assert rule.id in reply
    assert rule.camera_ref == "Front Door"
    assert rule.idle_threshold_minutes == 10
    assert rule.active_hours.start == 22 and rule.active_hours.end == 6
    assert rule.ai_criteria.prompt == "Is someone at the door?"

    assert "AI: Is someone at the door?" in _say(app, "/alerts Front Door")
    assert _say(app, f"/alertoff {rule.id}") == f"Alert rule {rule.id} disabled."
    assert automation.list_alert_rules()[0].enabled is False
    assert _say(app, f"/mute {rule.id} 30").startswith(f"🔕 Alert rule {rule.id} muted until")
    assert _say(app, f"/alertdel {rule.id}") == f"Alert rule {rule.id} deleted."
    assert _say(app, "/alerts") == "No alert rules."


def test_alertadd_validation_errors(app, automation) -> None:
    assert _say(app, "/alertadd Garage 10").startswith("Usage: /alertadd")
    assert _say(app, "/alertadd Garage ten 60 0-23") == "Idle and cooldown must be whole minutes."
    assert _say(app, "/alertadd Garage 10 60 25-3").startswith("❌ active_hours.start must be <= 23")
    assert _say(app, "/alertadd Garage 10 60 night").startswith("❌ active hours must look like")
    assert _say(app, "/alerton missing").startswith("❌ Alert rule not found")
    assert automation.list_alert_rules() == []


def test_ask_uses_requested_camera(app, vision) -> None:
    vision.answer = "Two cars are parked."
    assert _say(app, "/ask Garage | How many cars?") == "🤖 Garage: Two cars are parked."
    assert vision.calls[0][1] == "How many cars?"
    assert _say(app, "/ask What do you see?") == "🤖 Front Door: Two cars are parked."


def test_ask_reports_vision_failure(app, vision) -> None:
    vision.error = VisionServiceError("quota exceeded")
    assert _say(app, "/ask anything") == "❌ quota exceeded"
    assert app.stats.total("errors") == 1


def test_snapshot_command_sends_photo(app, dispatcher) -> None:
    assert _say(app, "/snapshot Garage") is None
    assert dispatcher.sent[0]["text"] == "📸 Snapshot from Garage"
    assert dispatcher.sent[0]["image"].startswith(b"jpeg:Garage")


def test_alert_button_press_mutes_rule(app, automation, dispatcher, clock) -> None:
    rule_id = automation.create_alert_rule({"camera_ref": "Garage"})
    app._on_motion("Garage", clock.now)
    token = dispatcher.sent[0]["controls"][0].token

    reply = app._handle_telegram_event(TelegramEvent(text="", chat_id="42", callback_token=token))

    assert reply == "🔕 Alert muted for 1 hour."
    assert automation.list_alert_rules()[0].muted_until == clock.now + 3600
    assert app.stats.total("alerts_fired") == 1
    assert app.stats.total("motion_events") == 1
    assert rule_id == automation.list_alert_rules()[0].id


def test_status_report_counts_since_last_report() -> None:
    now = {"t": 1000.0}
    stats = RuntimeStats(clock=lambda: now["t"])
    stats.increment("commands")
    stats.increment("alerts_fired", 2)
    now["t"] = 1060.0

    first = stats.status_report(cameras=2, reminders=1, rules=3)
    second = stats.status_report(cameras=2, reminders=1, rules=3)

    assert "Uptime: 60s | Cameras: 2" in first
    assert "Active reminders: 1 | Alert rules: 3" in first
    assert "Since last report: motion=0, alerts=2, commands=1, errors=0" in first
    assert "Since last report: motion=0, alerts=0, commands=0, errors=0" in second
    assert "Totals: motion=0, alerts=2, commands=1, errors=0" in second


def test_engine_clear_and_purge_reminders(automation, store) -> None:
    automation.create_reminder("42", 5)
    automation.create_reminder("42", 10)
    survivor = automation.create_reminder("7", 15)

    assert automation.clear_reminders("42") == 2
    assert automation.purge_inactive_reminders() == 2
    assert [r.id for r in store.load().reminders] == [survivor]


def test_bins_command_reports_classification(app, vision) -> None:
    assert _say(app, "/bins Garage") == "🛣️ Bins are at the street (Garage): Two bins at the curb."
    assert vision.calls[0][1] == "bins"


def test_engine_check_bins_requires_vision(store, snapshots, dispatcher) -> None:
    without_vision = AutomationEngine(store, snapshots, dispatcher, None)
    with pytest.raises(VisionServiceError):
        without_vision.check_bins("Garage")


def test_requests_are_recorded_per_chat(app, automation, vision, clock) -> None:
    _say(app, "/snapshot Garage")
    vision.error = VisionServiceError("quota exceeded")
    _say(app, "/ask Is it raining?")
    _say(app, "/remind 15 Garage", chat_id="7")
    _say(app, "/ping")

    mine = automation.request_history(user_id="42")
    assert [(r.action, r.success) for r in mine] == [("ask", False), ("snapshot", True)]
    assert mine[0].error_message == "quota exceeded"
    assert mine[0].timestamp == clock.now
    assert [r.action for r in automation.request_history()] == ["remind", "ask", "snapshot"]
    assert len(automation.request_history(limit=1)) == 1


def test_history_command_lists_recent_requests(app) -> None:
    assert _say(app, "/history") == "No requests yet."
    _say(app, "/snapshot Garage")
    reply = _say(app, "/history")
    assert reply.startswith("Recent requests:")
    assert "✅ /snapshot Garage" in reply
    assert _say(app, "/history lots") == "Usage: /history [count]"
