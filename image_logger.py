#!/usr/bin/env python3
"""
Turn captured images into log lines.

Each image is optionally annotated by the failure detector, fitted into the
log line budget and written as one `data:image/jpeg;base64,...` line.
"""

from __future__ import annotations

import base64
import logging
import sys
from typing import Iterable, Optional, TextIO, Union

import numpy as np
import requests

from adaptive_encoder import IMAGE_SIZES, NoFitError, fit
from failure_detector import DetectionError, FailureDetector
from telemetry import Telemetry
from yuyv import YCbCrImage

logger = logging.getLogger(__name__)

FORMAT_PREFIX = "data:image/jpeg;base64,"
DEFAULT_MAX_LOG_SIZE = 256000


def jpeg_budget(max_log_size: int) -> int:
    """Largest JPEG size whose base64 line still fits in max_log_size bytes."""
    return max(0, (max_log_size - len(FORMAT_PREFIX)) * 3 // 4)


def format_line(jpeg: bytes) -> str:
    return FORMAT_PREFIX + base64.b64encode(jpeg).decode("ascii")


class ImageLogger:
    def __init__(
        self,
        max_log_size: int = DEFAULT_MAX_LOG_SIZE,
        max_image_height: int = IMAGE_SIZES[0],
        detector: Optional[FailureDetector] = None,
        telemetry: Optional[Telemetry] = None,
        stream: Optional[TextIO] = None,
    ):
        self.max_log_size = max_log_size
        self.max_image_height = max_image_height
        self.detector = detector
        self.telemetry = telemetry or Telemetry()
        self.stream = stream

    @property
    def max_image_bytes(self) -> int:
        return jpeg_budget(self.max_log_size)

    def _annotate(self, frame_bgr: np.ndarray) -> np.ndarray:
        try:
            annotated, failures = self.detector.detect(frame_bgr)
        except (DetectionError, requests.RequestException) as e:
            logger.warning("Failure detection unavailable, logging unannotated image: %s", e)
            return frame_bgr
        if failures:
            logger.info(
                "Detected %d failure(s), best confidence %.2f",
                len(failures), max(f.confidence for f in failures),
            )
        return annotated

    def log_image(self, image: Union[YCbCrImage, np.ndarray]) -> bool:
        """Write one line for image. Returns False if it had to be skipped."""
        frame = image.to_bgr() if isinstance(image, YCbCrImage) else image
        if self.detector is not None:
            frame = self._annotate(frame)

        try:
            jpeg, height = fit(frame, self.max_image_bytes, self.max_image_height)
        except NoFitError as e:
            logger.warning("Skipping image: %s", e)
            self.telemetry.image_skipped()
            return False

        stream = self.stream or sys.stdout
        print(format_line(jpeg), file=stream, flush=True)
        self.telemetry.image_logged(height, len(jpeg))
        return True

    def consume(self, images: Iterable[Union[YCbCrImage, np.ndarray]]) -> None:
        """Log every image until the iterable (usually an ImageChannel) ends."""
        count = 0
        for image in images:
            if self.log_image(image):
                count += 1
        logger.info("Image stream closed after %d logged image(s)", count)
