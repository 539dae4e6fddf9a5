"""Shared fakes for engine tests: timers, cameras, dispatch, vision and time."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import pytest

from camwatch.errors import CameraUnavailable
from camwatch.store import ScheduleStore
from camwatch.vision import BinClassification

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimer:
    def __init__(self, name: str, interval: float, callback, delay: float) -> None:
        self.name = name
        self.interval = interval
        self.callback = callback
        self.delay = delay
        self._cancelled = False
        self.joined = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def join(self, timeout=None) -> None:
        self.joined = True

    def fire(self) -> None:
        if not self._cancelled:
            self.callback()


class FakeTimerFactory:
    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def __call__(self, name: str, interval: float, callback, delay: float) -> FakeTimer:
        timer = FakeTimer(name, interval, callback, delay)
        self.timers.append(timer)
        return timer

    def live(self) -> List[FakeTimer]:
        return [timer for timer in self.timers if not timer.cancelled]

    def for_reminder(self, reminder_id: str) -> FakeTimer:
        matches = [timer for timer in self.live() if timer.name == f"reminder-{reminder_id}"]
        assert len(matches) == 1
        return matches[0]


class FakeSnapshots:
    def __init__(self) -> None:
        self.calls: List[Optional[str]] = []
        self.failing: Dict[Optional[str], Exception] = {}

    def capture(self, camera_ref: Optional[str]) -> bytes:
        self.calls.append(camera_ref)
        error = self.failing.get(camera_ref)
        if error is not None:
            raise error
        return f"jpeg:{camera_ref}:{len(self.calls)}".encode()

    def fail(self, camera_ref: Optional[str], message: str = "camera offline") -> None:
        self.failing[camera_ref] = CameraUnavailable(message)


class FakeDispatcher:
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.sent: List[dict] = []

    def send(self, recipient, text, image=None, controls=None) -> bool:
        self.sent.append({"recipient": recipient, "text": text, "image": image, "controls": list(controls or [])})
        return self.result


class FakeVision:
    def __init__(self, answer: str = "YES") -> None:
        self.answer = answer
        self.bins = BinClassification("street", "Two bins at the curb.")
        self.error: Optional[Exception] = None
        self.calls: List[tuple] = []

    def query(self, image: bytes, prompt: str) -> str:
        self.calls.append((image, prompt))
        if self.error is not None:
            raise self.error
        return self.answer

    def classify_bins(self, image: bytes) -> BinClassification:
        self.calls.append((image, "bins"))
        if self.error is not None:
            raise self.error
        return self.bins


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def timers() -> FakeTimerFactory:
    return FakeTimerFactory()


@pytest.fixture
def snapshots() -> FakeSnapshots:
    return FakeSnapshots()


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def vision() -> FakeVision:
    return FakeVision()


@pytest.fixture
def store(tmp_path: Path) -> ScheduleStore:
    return ScheduleStore(tmp_path / "schedules.json")
