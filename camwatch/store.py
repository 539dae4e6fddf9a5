from __future__ import annotations

"""Durable JSON storage for reminder schedules, alert rules and request history."""

import json
import logging
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping

from camwatch.errors import ConfigurationError, PersistenceError
from camwatch.models import AlertRule, ReminderSchedule, RequestRecord, ScheduleSnapshot

logger = logging.getLogger(__name__)


_SECTIONS = (
    ("reminders", "reminder", ReminderSchedule, "reminders"),
    ("alertRules", "alert rule", AlertRule, "alert_rules"),
    ("requestHistory", "request record", RequestRecord, "request_history"),
)


def _parse_document(document: Mapping[str, Any]) -> ScheduleSnapshot:
    """Build a snapshot, skipping individual malformed entries."""
    keys = {key for key, _, _, _ in _SECTIONS}
    snapshot = ScheduleSnapshot(extra={key: value for key, value in document.items() if key not in keys})

    for key, label, model, attribute in _SECTIONS:
        entries = getattr(snapshot, attribute)
        for raw in document.get(key) or []:
            try:
                if not isinstance(raw, Mapping):
                    raise ConfigurationError(f"expected an object, got {type(raw).__name__}")
                entries.append(model.from_dict(raw))
            except (ConfigurationError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed %s entry %r: %s", label, raw, exc)

    return snapshot


class ScheduleStore:
    """Single-file store with atomic replace and one serialized writer.

    Every mutation goes through `transaction()`, which holds the writer lock
    for the whole read-modify-write cycle so two timers can never overwrite
    each other's update.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()

    def load(self) -> ScheduleSnapshot:
        """Read the document; missing or corrupt files yield an empty snapshot.

        Any other read failure raises `PersistenceError` so a transaction
        never saves an empty document over schedules it could not read.
        """
        with self._lock:
            try:
                raw = self.path.read_text(encoding="utf-8")
                document = json.loads(raw) if raw.strip() else {}
            except FileNotFoundError:
                return ScheduleSnapshot()
            except OSError as exc:
                raise PersistenceError(f"Failed reading schedule store {self.path}: {exc}") from exc
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                logger.error("Schedule store %s is unreadable (%s); starting empty", self.path, exc)
                self._quarantine()
                return ScheduleSnapshot()

            if not isinstance(document, dict):
                logger.error("Schedule store %s does not hold a JSON object; starting empty", self.path)
                self._quarantine()
                return ScheduleSnapshot()
            return _parse_document(document)

    def save(self, snapshot: ScheduleSnapshot) -> None:
        """Write the snapshot via temp file + atomic rename."""
        payload = json.dumps(snapshot.to_dict(), indent=2, ensure_ascii=False)
        with self._lock:
            tmp_name = None
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with tempfile.NamedTemporaryFile(
                    "w",
                    encoding="utf-8",
                    dir=str(self.path.parent),
                    prefix=f".{self.path.name}.",
                    suffix=".tmp",
                    delete=False,
                ) as handle:
                    tmp_name = handle.name
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self.path)
                tmp_name = None
            except OSError as exc:
                raise PersistenceError(f"Failed writing schedule store {self.path}: {exc}") from exc
            finally:
                if tmp_name is not None:
                    try:
                        os.unlink(tmp_name)
                    except OSError:
                        logger.warning("Could not remove temp file %s", tmp_name)

    @contextmanager
    def transaction(self) -> Iterator[ScheduleSnapshot]:
        """Load, yield for mutation, then save; nothing is written if the body raises."""
        with self._lock:
            snapshot = self.load()
            yield snapshot
            self.save(snapshot)

    def _quarantine(self) -> None:
        """Keep a copy of an unreadable document before it gets overwritten."""
        backup = self.path.with_name(self.path.name + ".corrupt")
        try:
            shutil.copy2(str(self.path), str(backup))
            logger.warning("Copied unreadable schedule store to %s", backup)
        except OSError:
            logger.exception("Could not back up unreadable schedule store %s", self.path)
