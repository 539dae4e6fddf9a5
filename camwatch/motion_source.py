from __future__ import annotations

"""Snapshot-polling motion source based on frame differencing."""

import logging
import threading
import time
from typing import Callable, Dict, Optional

import cv2
import numpy as np

from camwatch.camera import CameraDirectory, SnapshotProvider, decode_jpeg
from camwatch.errors import TransientExternalError

logger = logging.getLogger(__name__)


class FrameDiffMotionDetector:
    """Compare each frame with the previous one and report changed-pixel ratio."""

    def __init__(
        self,
        pixel_threshold: int = 25,
        min_changed_ratio: float = 0.01,
        working_width: int = 320,
        blur_kernel: int = 21,
    ) -> None:
        self.pixel_threshold = pixel_threshold
        self.min_changed_ratio = min_changed_ratio
        self.working_width = working_width
        self.blur_kernel = blur_kernel | 1
        self._previous: Optional[np.ndarray] = None

    def _prepare(self, frame: np.ndarray) -> np.ndarray:
        height, width = frame.shape[:2]
        if width > self.working_width:
            scale = self.working_width / float(width)
            frame = cv2.resize(frame, (self.working_width, max(1, int(height * scale))), interpolation=cv2.INTER_AREA)
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY) if frame.ndim == 3 else frame
        return cv2.GaussianBlur(gray, (self.blur_kernel, self.blur_kernel), 0)

    def changed_ratio(self, frame: np.ndarray) -> Optional[float]:
        """Fraction of pixels that changed since the last frame (None for the first)."""
        current = self._prepare(frame)
        previous, self._previous = self._previous, current
        if previous is None or previous.shape != current.shape:
            return None
        delta = cv2.absdiff(previous, current)
        _, mask = cv2.threshold(delta, self.pixel_threshold, 255, cv2.THRESH_BINARY)
        return float(np.count_nonzero(mask)) / float(mask.size)

    def update(self, frame: np.ndarray) -> bool:
        ratio = self.changed_ratio(frame)
        return ratio is not None and ratio >= self.min_changed_ratio

    def reset(self) -> None:
        self._previous = None


class SnapshotMotionSource:
    """One poller thread per camera feeding motion events to a callback."""

    def __init__(
        self,
        directory: CameraDirectory,
        snapshots: SnapshotProvider,
        on_motion: Callable[[str, float], object],
        on_idle: Optional[Callable[[str], None]] = None,
        poll_seconds: float = 2.0,
        pixel_threshold: int = 25,
        min_changed_ratio: float = 0.01,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = directory
        self.snapshots = snapshots
        self.on_motion = on_motion
        self.on_idle = on_idle
        self.poll_seconds = poll_seconds
        self.clock = clock
        self.detectors: Dict[str, FrameDiffMotionDetector] = {
            name: FrameDiffMotionDetector(pixel_threshold=pixel_threshold, min_changed_ratio=min_changed_ratio)
            for name in directory.names()
        }
        self.stop_event = threading.Event()
        self._threads: Dict[str, threading.Thread] = {}
        self._in_motion: Dict[str, bool] = {name: False for name in self.detectors}

    def poll_once(self, camera_name: str) -> bool:
        """Capture, compare and emit; returns whether motion was seen."""
        detector = self.detectors[camera_name]
        try:
            data = self.snapshots.capture(camera_name)
        except TransientExternalError as exc:
            logger.debug("Motion poll for %s failed: %s", camera_name, exc)
            detector.reset()
            return False

        frame = decode_jpeg(data)
        if frame is None:
            detector.reset()
            return False

        captured_at = self.clock()
        if detector.update(frame):
            self._in_motion[camera_name] = True
            self.on_motion(camera_name, captured_at)
            return True

        if self._in_motion.get(camera_name):
            self._in_motion[camera_name] = False
            if self.on_idle is not None:
                self.on_idle(camera_name)
        return False

    def _poll_camera(self, camera_name: str) -> None:
        """Producer loop: poll snapshots until stopped."""
        while not self.stop_event.is_set():
            try:
                self.poll_once(camera_name)
            except Exception:
                logger.exception("Motion processing failed for %s", camera_name)
            self.stop_event.wait(timeout=self.poll_seconds)

    def start(self) -> None:
        for camera_name in self.detectors:
            if camera_name in self._threads:
                continue
            thread = threading.Thread(
                target=self._poll_camera,
                args=(camera_name,),
                name=f"motion-{camera_name}",
                daemon=True,
            )
            thread.start()
            self._threads[camera_name] = thread
            logger.info("Started motion poller for camera=%s every %.1fs", camera_name, self.poll_seconds)

    def stop(self) -> None:
        self.stop_event.set()
        for thread in self._threads.values():
            thread.join(timeout=2)
        self._threads.clear()
