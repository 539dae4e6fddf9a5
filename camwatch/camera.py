from __future__ import annotations

"""Snapshot providers for DVR channels (ISAPI HTTP snapshots and RTSP frames)."""

import os
import threading
from typing import Dict, List, Optional, Protocol

import cv2
import numpy as np
import requests
from requests.auth import HTTPBasicAuth, HTTPDigestAuth

from camwatch.config import CameraConfig, Settings, default_camera_name
from camwatch.errors import CameraNotFound, CameraUnavailable
from camwatch.models import camera_key


class SnapshotProvider(Protocol):
    """Capture one JPEG image from a camera reference (None = default camera)."""

    def capture(self, camera_ref: Optional[str]) -> bytes:
        ...


def decode_jpeg(data: bytes) -> Optional[np.ndarray]:
    """Decode image bytes to a BGR frame, or None when the payload is not an image."""
    if not data:
        return None
    buffer = np.frombuffer(data, dtype=np.uint8)
    return cv2.imdecode(buffer, cv2.IMREAD_COLOR)


class CameraDirectory:
    """Resolve camera references by channel id or case-insensitive name."""

    def __init__(self, cameras: Dict[int, CameraConfig], default_camera: Optional[str] = None) -> None:
        self.cameras = dict(cameras)
        self.default_camera = default_camera

    def names(self) -> List[str]:
        return [camera.name for camera in self.cameras.values()]

    def resolve(self, camera_ref: Optional[str]) -> CameraConfig:
        ref = (camera_ref or "").strip() or (self.default_camera or "").strip()
        if not ref:
            for camera in self.cameras.values():
                return camera
            raise CameraNotFound("No cameras configured")

        if ref.isdigit() and int(ref) in self.cameras:
            return self.cameras[int(ref)]
        wanted = camera_key(ref)
        for camera in self.cameras.values():
            if camera_key(camera.name) == wanted:
                return camera
        raise CameraNotFound(f"Camera not found: {ref}")


class IsapiSnapshotProvider:
    """HTTP snapshot client for DVR/NVR ISAPI endpoints."""

    def __init__(
        self,
        directory: CameraDirectory,
        username: str,
        password: str,
        timeout_seconds: float,
        auth_mode: str = "auto",
        session: Optional[requests.Session] = None,
    ) -> None:
        self.directory = directory
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()
        self._lock = threading.Lock()

        if auth_mode == "basic":
            self._auth = HTTPBasicAuth(username, password)
        else:
            # Hikvision typically uses digest auth.
            self._auth = HTTPDigestAuth(username, password)

    def capture(self, camera_ref: Optional[str]) -> bytes:
        """Fetch one JPEG snapshot and check that it decodes."""
        camera = self.directory.resolve(camera_ref)
        try:
            with self._lock:
                response = self._session.get(
                    camera.isapi_url,
                    auth=self._auth,
                    timeout=self.timeout_seconds,
                )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise CameraUnavailable(f"Snapshot request for {camera.name} failed: {exc}") from exc

        data = response.content
        if decode_jpeg(data) is None:
            raise CameraUnavailable(f"Snapshot from {camera.name} is not a decodable image")
        return data

    def close(self) -> None:
        """Close the underlying requests session."""
        self._session.close()


class RtspSnapshotProvider:
    """Grab a single frame per capture from the channel's RTSP stream."""

    def __init__(self, directory: CameraDirectory, rtsp_transport: str = "tcp", jpeg_quality: int = 90) -> None:
        self.directory = directory
        self.rtsp_transport = rtsp_transport
        self.jpeg_quality = jpeg_quality

    def capture(self, camera_ref: Optional[str]) -> bytes:
        camera = self.directory.resolve(camera_ref)
        os.environ["OPENCV_FFMPEG_CAPTURE_OPTIONS"] = f"rtsp_transport;{self.rtsp_transport}"
        capture = cv2.VideoCapture(camera.rtsp_url, cv2.CAP_FFMPEG)
        try:
            if not capture.isOpened():
                raise CameraUnavailable(f"Could not open RTSP stream for {camera.name}")
            capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)
            ok, frame = capture.read()
        finally:
            capture.release()

        if not ok or frame is None:
            raise CameraUnavailable(f"No frame received from {camera.name}")
        encoded_ok, encoded = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality])
        if not encoded_ok:
            raise CameraUnavailable(f"Could not encode frame from {camera.name}")
        return encoded.tobytes()

    def close(self) -> None:
        pass


def build_snapshot_provider(settings: Settings, directory: CameraDirectory):
    """Create the snapshot provider matching the configured capture mode."""
    if settings.capture_mode == "rtsp":
        return RtspSnapshotProvider(directory, rtsp_transport=settings.rtsp_transport)
    return IsapiSnapshotProvider(
        directory,
        username=settings.dvr_username,
        password=settings.dvr_password,
        timeout_seconds=settings.isapi_timeout_seconds,
        auth_mode=settings.isapi_auth_mode,
    )


def build_camera_directory(settings: Settings, cameras: Dict[int, CameraConfig]) -> CameraDirectory:
    return CameraDirectory(cameras, default_camera=default_camera_name(settings))
