import logging
import threading
import time
from typing import Callable, Optional, Tuple

import cv2
import numpy as np

from .errors import CameraAccessDeniedError, CameraError, CameraUnavailableError

logger = logging.getLogger(__name__)


class CameraSession:
    """
    Owns one webcam capture device for the lifetime of a monitor session.

    A background thread keeps the most recent frame and a sequence number;
    the detection loop uses the sequence number to tell whether a frame it
    has not seen yet is available.
    """

    def __init__(
        self,
        camera_index: int = 0,
        width: int = 320,
        height: int = 240,
        capture_factory: Optional[Callable[[int], "cv2.VideoCapture"]] = None,
        frame_rate: int = 30,
    ):
        self.camera_index = camera_index
        self.width = width
        self.height = height
        self.capture_factory = capture_factory or cv2.VideoCapture
        self.frame_interval = 1.0 / frame_rate

        self.cap = None
        self.is_capturing = False
        self.capture_thread: Optional[threading.Thread] = None
        self.latest_frame: Optional[np.ndarray] = None
        self.frame_seq = 0
        self.frame_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._released = False

    def acquire(self):
        """
        Open the device and start capturing. Blocking; run it off the event loop.

        Raises CameraUnavailableError when no device opens at the index and
        CameraAccessDeniedError when the device opens but delivers no frame.
        """
        if self._released:
            raise CameraError("Camera session already released")

        cap = self.capture_factory(self.camera_index)
        if cap is None or not cap.isOpened():
            if cap is not None:
                cap.release()
            raise CameraUnavailableError(f"Could not open camera at index {self.camera_index}")

        # Video only, low resolution
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)

        ret, frame = cap.read()
        if not ret or frame is None:
            cap.release()
            raise CameraAccessDeniedError(f"Camera at index {self.camera_index} delivered no frames")

        with self._state_lock:
            if self._released:
                # release() ran while the device was opening
                cap.release()
                raise CameraError("Camera session released during acquisition")
            self.cap = cap
            with self.frame_lock:
                self.latest_frame = frame
                self.frame_seq += 1
            self.is_capturing = True
            self.capture_thread = threading.Thread(target=self._capture_frames, daemon=True)
            self.capture_thread.start()

        logger.info(f"Camera {self.camera_index} acquired at {self.width}x{self.height}")

    def _capture_frames(self):
        """Keep the latest frame fresh in a background thread."""
        while self.is_capturing:
            try:
                cap = self.cap
                if cap is None or not cap.isOpened():
                    break

                ret, frame = cap.read()
                if not ret:
                    logger.warning(f"Camera {self.camera_index} stopped delivering frames")
                    break

                with self.frame_lock:
                    self.latest_frame = frame
                    self.frame_seq += 1

                time.sleep(self.frame_interval)

            except Exception as e:
                logger.error(f"Error in camera capture: {e}")
                break

    def frame_ready(self, last_seen_seq: int = 0) -> bool:
        """True when a decoded frame newer than last_seen_seq is available."""
        with self.frame_lock:
            return self.latest_frame is not None and self.frame_seq > last_seen_seq

    def get_latest_frame(self) -> Tuple[int, Optional[np.ndarray]]:
        """Return (sequence number, copy of the latest frame)."""
        with self.frame_lock:
            if self.latest_frame is None:
                return self.frame_seq, None
            return self.frame_seq, self.latest_frame.copy()

    def is_open(self) -> bool:
        cap = self.cap
        return cap is not None and cap.isOpened()

    def release(self):
        """Stop capturing and release the device. Safe to call repeatedly."""
        with self._state_lock:
            self._released = True
            self.is_capturing = False
            thread = self.capture_thread
            self.capture_thread = None

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)

        cap = self.cap
        self.cap = None
        if cap is not None:
            try:
                cap.release()
                logger.info(f"Camera {self.camera_index} released")
            except Exception as e:
                logger.warning(f"Error releasing camera {self.camera_index}: {e}")

        with self.frame_lock:
            self.latest_frame = None

    @property
    def released(self) -> bool:
        return self._released


def detect_available_cameras(max_index: int = 5) -> dict:
    """Probe camera indices and return availability map."""
    availability = {}
    for idx in range(max_index + 1):
        cap = cv2.VideoCapture(idx)
        available = cap.isOpened()
        if available:
            cap.release()
        availability[idx] = available
    return availability
