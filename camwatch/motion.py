from __future__ import annotations

"""Per-camera motion bookkeeping used by idle-threshold checks."""

import threading
from dataclasses import dataclass, replace
from typing import Dict, Optional

from camwatch.models import camera_key


@dataclass(frozen=True)
class MotionState:
    """Last known motion for one camera; `last_motion_at=None` means never seen."""

    camera_ref: str
    last_motion_at: Optional[float] = None
    active: bool = False

    def idle_duration(self, now: float) -> Optional[float]:
        """Seconds since the last motion, or None when unknown."""
        if self.last_motion_at is None:
            return None
        return max(0.0, now - self.last_motion_at)


@dataclass(frozen=True)
class MotionUpdate:
    """Result of recording one motion event."""

    previous: MotionState
    accepted: bool


class MotionStateTracker:
    """Thread-safe in-memory map of camera -> MotionState.

    Not persisted: after a restart every camera starts unknown until its first
    motion event.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: Dict[str, MotionState] = {}

    def record_motion(self, camera_ref: str, at: float) -> MotionUpdate:
        """Mark motion at `at` and return the state that preceded it.

        Events not newer than the recorded motion (duplicates or out-of-order
        deliveries) leave the state unchanged and come back with
        `accepted=False`.
        """
        key = camera_key(camera_ref)
        with self._lock:
            previous = self._states.get(key) or MotionState(camera_ref=camera_ref)
            if previous.last_motion_at is not None and at <= previous.last_motion_at:
                return MotionUpdate(previous=previous, accepted=False)
            self._states[key] = MotionState(camera_ref=camera_ref, last_motion_at=at, active=True)
            return MotionUpdate(previous=previous, accepted=True)

    def mark_idle(self, camera_ref: str) -> None:
        key = camera_key(camera_ref)
        with self._lock:
            state = self._states.get(key)
            if state is not None and state.active:
                self._states[key] = replace(state, active=False)

    def state(self, camera_ref: str) -> MotionState:
        with self._lock:
            return self._states.get(camera_key(camera_ref)) or MotionState(camera_ref=camera_ref)

    def idle_duration(self, camera_ref: str, now: float) -> Optional[float]:
        return self.state(camera_ref).idle_duration(now)

    def snapshot(self) -> Dict[str, MotionState]:
        with self._lock:
            return dict(self._states)
