from __future__ import annotations

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

from camwatch.app import CamwatchApp
from camwatch.config import load_settings


class _SensitiveDataFilter(logging.Filter):
    """Redact Telegram bot tokens and vision API keys from log messages."""

    _TELEGRAM_BOT_PATH_RE = re.compile(r"(https://api\.telegram\.org/bot)[^/\s]+")
    _API_KEY_RE = re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}")

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self._TELEGRAM_BOT_PATH_RE.sub(r"\1<redacted>", message)
        redacted = self._API_KEY_RE.sub("sk-<redacted>", redacted)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def setup_logging(log_dir: Path = Path("logs")) -> None:
    """Configure console + rotating file logging."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "camwatch.log"

    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    redactor = _SensitiveDataFilter()

    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.handlers.clear()

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(logging.INFO)
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(redactor)

    file_handler = RotatingFileHandler(
        filename=str(log_file),
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(redactor)

    root.addHandler(stream_handler)
    root.addHandler(file_handler)

    # Third-party request logging includes full Telegram URLs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def main() -> None:
    setup_logging()
    settings = load_settings(".secrets")
    app = CamwatchApp(settings)
    app.run()


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logging.info("Interrupted by user, exiting.")
