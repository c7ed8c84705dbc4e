#!/usr/bin/env python3
"""
Camera device access.

FrameSource is the contract the capture loop relies on; V4L2FrameSource
implements it on top of OpenCV's V4L2 backend with RGB conversion disabled,
so read_frame() hands back the sensor's packed bytes untouched.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import cv2

from yuyv import RawFrame

logger = logging.getLogger(__name__)

SUPPORTED_PIXEL_FORMATS = ("YUYV",)
FRAME_RATE_TOLERANCE = 0.1


def _fourcc_str(code: int) -> str:
    return "".join(chr((code >> (8 * i)) & 0xFF) for i in range(4))


class DeviceError(Exception):
    """Open, configure, stream or read failure reported by the camera."""


@dataclass(frozen=True)
class CaptureConfig:
    device: str = "/dev/video0"
    pixel_format: str = "YUYV"
    frame_width: int = 2304
    frame_height: int = 1536
    frame_rate: float = 2.0
    picture_interval: float = 10.0

    def __post_init__(self):
        if self.pixel_format not in SUPPORTED_PIXEL_FORMATS:
            raise ValueError(f"Unsupported pixel format: {self.pixel_format!r}")
        if self.frame_width <= 0 or self.frame_height <= 0:
            raise ValueError(f"Invalid frame size {self.frame_width}x{self.frame_height}")
        if self.frame_width % 2:
            raise ValueError("Frame width must be even for 4:2:2 frames")
        if self.frame_rate <= 0:
            raise ValueError(f"Invalid frame rate: {self.frame_rate}")
        if self.picture_interval <= 0:
            raise ValueError(f"Invalid picture interval: {self.picture_interval}")


class FrameSource(ABC):
    """A streaming camera. Callers must not start twice without stopping."""

    @abstractmethod
    def configure(self, pixel_format: str, width: int, height: int, frame_rate: float) -> None:
        ...

    @abstractmethod
    def start_streaming(self) -> None:
        ...

    @abstractmethod
    def stop_streaming(self) -> None:
        ...

    @abstractmethod
    def wait_for_frame(self, timeout: float) -> bool:
        """Block up to timeout seconds. Returns False on timeout."""
        ...

    @abstractmethod
    def read_frame(self) -> RawFrame:
        """Return the frame that made the last wait_for_frame() ready."""
        ...

    @abstractmethod
    def close(self) -> None:
        ...


class V4L2FrameSource(FrameSource):
    """V4L2 camera driven through cv2.VideoCapture."""

    def __init__(self, device: str):
        self.device = device
        self.cap: Optional[cv2.VideoCapture] = None
        self._width = 0
        self._height = 0
        self._settings: Optional[tuple] = None
        self._open()

    def _open(self) -> None:
        cap = cv2.VideoCapture(self.device, cv2.CAP_V4L2)
        if not cap.isOpened():
            raise DeviceError(f"Failed to open camera device {self.device}")
        self.cap = cap
        logger.info("Opened camera device %s", self.device)

    def configure(self, pixel_format: str, width: int, height: int, frame_rate: float) -> None:
        if self.cap is None or not self.cap.isOpened():
            self._open()

        cap = self.cap
        cap.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*pixel_format))
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        cap.set(cv2.CAP_PROP_FPS, frame_rate)
        cap.set(cv2.CAP_PROP_CONVERT_RGB, 0)

        actual_w = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        actual_h = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        if (actual_w, actual_h) != (width, height):
            raise DeviceError(
                f"{self.device} rejected {pixel_format} {width}x{height}, got {actual_w}x{actual_h}"
            )

        actual_fourcc = int(cap.get(cv2.CAP_PROP_FOURCC)) & 0xFFFFFFFF
        if actual_fourcc != cv2.VideoWriter_fourcc(*pixel_format):
            raise DeviceError(
                f"{self.device} rejected pixel format {pixel_format}, got {_fourcc_str(actual_fourcc)!r}"
            )

        # the driver may round the rate to the nearest supported one
        actual_fps = cap.get(cv2.CAP_PROP_FPS)
        if actual_fps <= 0:
            raise DeviceError(f"{self.device} rejected frame rate {frame_rate}")
        if abs(actual_fps - frame_rate) > FRAME_RATE_TOLERANCE * frame_rate:
            logger.warning("%s runs at %.2f fps instead of %.2f", self.device, actual_fps, frame_rate)

        self._width, self._height = width, height
        self._settings = (pixel_format, width, height, frame_rate)
        logger.info("Configured %s: %s %dx%d @ %.1f fps", self.device, pixel_format, width, height, frame_rate)

    def start_streaming(self) -> None:
        # OpenCV starts the V4L2 stream on the first dequeue; a released
        # handle has to be reopened and reconfigured first.
        if self.cap is None or not self.cap.isOpened():
            if self._settings is None:
                raise DeviceError("Camera must be configured before streaming")
            self.configure(*self._settings)
        logger.info("Streaming started on %s", self.device)

    def stop_streaming(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None
        logger.info("Streaming stopped on %s", self.device)

    def wait_for_frame(self, timeout: float) -> bool:
        if self.cap is None:
            raise DeviceError("Camera is not streaming")
        try:
            ready, _ = cv2.VideoCapture.waitAny([self.cap], int(timeout * 1e9))
        except cv2.error as e:
            raise DeviceError(f"Waiting for frame failed: {e}") from e
        return bool(ready)

    def read_frame(self) -> RawFrame:
        if self.cap is None:
            raise DeviceError("Camera is not streaming")
        ok, frame = self.cap.retrieve()
        if not ok or frame is None:
            raise DeviceError(f"Failed to read frame from {self.device}")
        return RawFrame(data=frame.tobytes(), width=self._width, height=self._height)

    def close(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None
            logger.info("Closed camera device %s", self.device)
