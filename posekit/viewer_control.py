"""Settings and thread-safe stop/finish handshake for a map viewer loop."""

from __future__ import annotations

import threading
from dataclasses import dataclass


@dataclass(frozen=True)
class ViewerSettings:
    """Viewer refresh rate, image size and initial viewpoint."""

    fps: float = 30.0
    image_width: int = 640
    image_height: int = 480
    viewpoint_x: float = 0.0
    viewpoint_y: float = 0.0
    viewpoint_z: float = 0.0
    viewpoint_f: float = 0.0

    @property
    def frame_period_ms(self) -> float:
        return 1e3 / self.fps

    @classmethod
    def from_mapping(cls, settings):
        """Read settings keyed like 'Camera.fps'; missing values count as zero."""

        def read(key):
            return float(settings.get(key, 0) or 0)

        fps = read("Camera.fps")
        if fps < 1:
            fps = 30.0
        width = int(read("Camera.width"))
        height = int(read("Camera.height"))
        if width < 1 or height < 1:
            width, height = 640, 480
        return cls(
            fps=fps,
            image_width=width,
            image_height=height,
            viewpoint_x=read("Viewer.ViewpointX"),
            viewpoint_y=read("Viewer.ViewpointY"),
            viewpoint_z=read("Viewer.ViewpointZ"),
            viewpoint_f=read("Viewer.ViewpointF"),
        )


class ViewerControl:
    """Stop and finish requests exchanged between a viewer loop and other threads.

    A fresh control counts as stopped and finished until ``start`` is called
    by the loop that it controls.
    """

    def __init__(self):
        self._finish_lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True
        self._stopped = True
        self._stop_requested = False

    def start(self):
        """Mark the loop as running."""
        with self._finish_lock:
            self._finished = False
        with self._stop_lock:
            self._stopped = False

    def request_finish(self):
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self):
        with self._finish_lock:
            self._finished = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished

    def request_stop(self):
        """Ask the loop to pause; ignored while it is already stopped."""
        with self._stop_lock:
            if not self._stopped:
                self._stop_requested = True

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop(self) -> bool:
        """Called by the loop: enter the stopped state if a stop was requested.

        A pending finish request takes precedence and prevents stopping.
        """
        with self._stop_lock, self._finish_lock:
            if self._finish_requested:
                return False
            if self._stop_requested:
                self._stopped = True
                self._stop_requested = False
                return True
            return False

    def release(self):
        with self._stop_lock:
            self._stopped = False