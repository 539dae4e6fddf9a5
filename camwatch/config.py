from __future__ import annotations

"""Settings for camwatch.

Values are looked up in the process environment, then in a `KEY=VALUE`
secrets file, then fall back to defaults. Camera channel metadata is turned
into the ISAPI snapshot and RTSP stream URLs of the DVR.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class CameraConfig:
    """One DVR channel with its snapshot and stream endpoints."""

    channel_key: int
    name: str
    rtsp_url: str
    isapi_url: str


@dataclass(frozen=True)
class Settings:
    """Immutable runtime configuration."""

    dvr_username: str
    dvr_password: str
    dvr_ip: str
    camera_channels: Dict[int, str]
    default_camera: str
    capture_mode: str
    rtsp_transport: str
    isapi_timeout_seconds: float
    isapi_auth_mode: str
    telegram_bot_token: str
    telegram_chat_id: str
    telegram_authorized_chats: Tuple[str, ...]
    alert_recipients: Tuple[str, ...]
    schedule_store_path: Path
    openai_api_key: str
    vision_model: str
    vision_base_url: str
    vision_timeout_seconds: float
    motion_detection_enabled: bool
    motion_poll_seconds: float
    motion_pixel_threshold: int
    motion_min_changed_ratio: float
    alert_timezone: str


def read_secrets_file(path: Path) -> Dict[str, str]:
    """Return the `KEY=VALUE` pairs of a secrets file (empty when absent).

    Comment lines and lines without `=` are skipped; one layer of matching
    quotes around a value is removed.
    """
    if not path.is_file():
        return {}

    pairs: Dict[str, str] = {}
    with path.open(encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if stripped.startswith("#"):
                continue
            key, sep, value = stripped.partition("=")
            if not sep or not key.strip():
                continue
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
                value = value[1:-1]
            pairs[key.strip()] = value
    return pairs


class _SettingSource:
    """Environment-over-file lookup with typed accessors."""

    def __init__(self, file_values: Dict[str, str]) -> None:
        self.file_values = file_values

    def text(self, name: str, default: str = "") -> str:
        value = os.environ.get(name)
        if value is None:
            value = self.file_values.get(name, default)
        return value.strip()

    def number(self, name: str, default: float) -> float:
        raw = self.text(name)
        return float(raw) if raw else default

    def integer(self, name: str, default: int) -> int:
        raw = self.text(name)
        return int(raw) if raw else default

    def flag(self, name: str, default: bool) -> bool:
        raw = self.text(name).lower()
        if not raw:
            return default
        return raw in {"1", "true", "yes", "on"}

    def id_list(self, name: str, default: str = "") -> Tuple[str, ...]:
        """Comma separated ids in first-seen order, without blanks or repeats."""
        ordered: Dict[str, None] = {}
        for item in self.text(name, default).split(","):
            if item.strip():
                ordered.setdefault(item.strip(), None)
        return tuple(ordered)


def parse_camera_channels(raw: str) -> Dict[int, str]:
    """Parse `101:Front Door;201:Garage` into `{101: "Front Door", 201: "Garage"}`.

    Entries with a non-numeric channel or an empty name are dropped.
    """
    channels: Dict[int, str] = {}
    for entry in raw.split(";"):
        channel, sep, name = entry.partition(":")
        channel, name = channel.strip(), name.strip()
        if sep and name and channel.isdigit():
            channels[int(channel)] = name
    return channels


def load_settings(secrets_path: str = ".secrets") -> Settings:
    """Build `Settings`; missing DVR access or channels raise `ValueError`."""
    source = _SettingSource(read_secrets_file(Path(secrets_path)))

    username = source.text("DVR_USERNAME")
    password = source.text("DVR_PASSWORD")
    dvr_ip = source.text("DVR_IP")
    if not (username and password and dvr_ip):
        raise ValueError("Missing DVR credentials: DVR_USERNAME, DVR_PASSWORD and DVR_IP are required.")

    channels = parse_camera_channels(source.text("CAMERA_CHANNELS"))
    if not channels:
        raise ValueError("Missing CAMERA_CHANNELS (expected channel_id:name;channel_id:name).")

    chat_id = source.text("TELEGRAM_CHAT_ID")
    authorized = source.id_list("TELEGRAM_AUTHORIZED_CHATS", chat_id)
    if chat_id and chat_id not in authorized:
        authorized = (chat_id,) + authorized

    return Settings(
        dvr_username=username,
        dvr_password=password,
        dvr_ip=dvr_ip,
        camera_channels=channels,
        default_camera=source.text("DEFAULT_CAMERA"),
        capture_mode=source.text("CAPTURE_MODE", "isapi").lower(),
        rtsp_transport=source.text("RTSP_TRANSPORT", "tcp").lower(),
        isapi_timeout_seconds=source.number("ISAPI_TIMEOUT_SECONDS", 4.0),
        isapi_auth_mode=source.text("ISAPI_AUTH_MODE", "auto").lower(),
        telegram_bot_token=source.text("TELEGRAM_BOT_TOKEN"),
        telegram_chat_id=chat_id,
        telegram_authorized_chats=authorized,
        alert_recipients=source.id_list("ALERT_RECIPIENTS") or authorized,
        schedule_store_path=Path(source.text("SCHEDULE_STORE_PATH", "data/schedules.json")),
        openai_api_key=source.text("OPENAI_API_KEY"),
        vision_model=source.text("VISION_MODEL", "gpt-4o"),
        vision_base_url=source.text("VISION_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
        vision_timeout_seconds=source.number("VISION_TIMEOUT_SECONDS", 45.0),
        motion_detection_enabled=source.flag("MOTION_DETECTION", True),
        motion_poll_seconds=source.number("MOTION_POLL_SECONDS", 2.0),
        motion_pixel_threshold=source.integer("MOTION_PIXEL_THRESHOLD", 25),
        motion_min_changed_ratio=source.number("MOTION_MIN_CHANGED_RATIO", 0.01),
        alert_timezone=source.text("ALERT_TIMEZONE"),
    )


def rtsp_url(settings: Settings, channel_id: int) -> str:
    return (
        f"rtsp://{settings.dvr_username}:{settings.dvr_password}@{settings.dvr_ip}:554"
        f"/Streaming/Channels/{channel_id}"
    )


def isapi_snapshot_url(settings: Settings, channel_id: int) -> str:
    return f"http://{settings.dvr_ip}/ISAPI/Streaming/channels/{channel_id}/picture"


def build_camera_map(settings: Settings) -> Dict[int, CameraConfig]:
    """Channel id -> CameraConfig for every configured channel."""
    return {
        channel_id: CameraConfig(
            channel_key=channel_id,
            name=name,
            rtsp_url=rtsp_url(settings, channel_id),
            isapi_url=isapi_snapshot_url(settings, channel_id),
        )
        for channel_id, name in settings.camera_channels.items()
    }


def default_camera_name(settings: Settings) -> Optional[str]:
    """Configured default camera, or the first channel's name."""
    if settings.default_camera:
        return settings.default_camera
    return next(iter(settings.camera_channels.values()), None)
