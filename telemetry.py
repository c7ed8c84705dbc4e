#!/usr/bin/env python3
"""
In-process telemetry for the capture pipeline.

One instance is built at startup and handed to every component that reports
something, so tests can build their own and inspect it.
"""

import logging
import threading
import time
from collections import Counter
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class Telemetry:
    """Thread-safe counters for logged images, status polls and detections."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.images_logged: Counter = Counter()
        self.images_logged_bytes = 0
        self.images_skipped = 0
        self.status_polls: Counter = Counter()
        self.last_status_duration: Optional[float] = None
        self.detection_calls: Counter = Counter()
        self.last_failures_count = 0
        self.last_detection_success: Optional[float] = None
        self.capture_starts = 0
        self.capture_stops = 0

    def image_logged(self, height: int, size_bytes: int) -> None:
        with self._lock:
            self.images_logged[height] += 1
            self.images_logged_bytes += size_bytes
        logger.debug("Logged %dp image (%d bytes)", height, size_bytes)

    def image_skipped(self) -> None:
        with self._lock:
            self.images_skipped += 1

    def status_polled(self, outcome: str, duration: float) -> None:
        with self._lock:
            self.status_polls[outcome] += 1
            self.last_status_duration = duration

    def detection_completed(self, outcome: str, failures: int = 0) -> None:
        with self._lock:
            self.detection_calls[outcome] += 1
            if outcome == "ok":
                self.last_failures_count = failures
                self.last_detection_success = time.time()

    def capture_started(self) -> None:
        with self._lock:
            self.capture_starts += 1

    def capture_stopped(self) -> None:
        with self._lock:
            self.capture_stops += 1

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "images_logged": dict(self.images_logged),
                "images_logged_bytes": self.images_logged_bytes,
                "images_skipped": self.images_skipped,
                "status_polls": dict(self.status_polls),
                "last_status_duration": self.last_status_duration,
                "detection_calls": dict(self.detection_calls),
                "last_failures_count": self.last_failures_count,
                "last_detection_success": self.last_detection_success,
                "capture_starts": self.capture_starts,
                "capture_stops": self.capture_stops,
            }
