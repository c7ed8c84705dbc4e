#!/usr/bin/env python3
"""
Client for the remote print-failure detection API.

POSTs a JPEG to <ml-api-url>/predict and draws the returned boxes onto the
frame. The API answers {"detections": [[label, confidence, [xc, yc, w, h]], ...]}
with boxes in pixel units, centre form.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np
import requests

from adaptive_encoder import encode_jpeg
from telemetry import Telemetry

logger = logging.getLogger(__name__)

DETECT_TIMEOUT = 5
UPLOAD_QUALITY = 100
BOX_COLOR_BGR = (0, 0, 255)
BOX_THICKNESS = 2


class DetectionError(Exception):
    pass


@dataclass(frozen=True)
class DetectedFailure:
    confidence: float
    box: Tuple[float, float, float, float]  # xc, yc, w, h


def parse_detections(payload: dict) -> List[DetectedFailure]:
    detections = payload.get("detections") if isinstance(payload, dict) else None
    if not isinstance(detections, list):
        raise DetectionError("response has no detections list")

    failures = []
    for detection in detections:
        if not isinstance(detection, (list, tuple)) or len(detection) < 3:
            raise DetectionError(f"malformed detection: {detection!r}")
        confidence, box = detection[1], detection[2]
        if not isinstance(confidence, (int, float)):
            raise DetectionError(f"expected numeric confidence, got {type(confidence).__name__}")
        if not isinstance(box, (list, tuple)) or len(box) != 4:
            raise DetectionError(f"expected 4 box coordinates, got {box!r}")
        try:
            coords = tuple(float(v) for v in box)
        except (TypeError, ValueError) as e:
            raise DetectionError(f"non-numeric box coordinates: {box!r}") from e
        failures.append(DetectedFailure(confidence=float(confidence), box=coords))
    return failures


def draw_failures(frame_bgr: np.ndarray, failures: List[DetectedFailure]) -> np.ndarray:
    """Return a copy of frame_bgr with one red rectangle per failure."""
    annotated = frame_bgr.copy()
    for failure in failures:
        xc, yc, w, h = failure.box
        top_left = (int(round(xc - w / 2)), int(round(yc - h / 2)))
        bottom_right = (int(round(xc + w / 2)), int(round(yc + h / 2)))
        cv2.rectangle(annotated, top_left, bottom_right, BOX_COLOR_BGR, BOX_THICKNESS)
    return annotated


class FailureDetector:
    def __init__(
        self,
        api_url: str,
        session: Optional[requests.Session] = None,
        timeout: float = DETECT_TIMEOUT,
        telemetry: Optional[Telemetry] = None,
    ):
        self.predict_url = api_url.rstrip("/") + "/predict"
        self.session = session or requests.Session()
        self.timeout = timeout
        self.telemetry = telemetry or Telemetry()

    def detect(self, frame_bgr: np.ndarray) -> Tuple[np.ndarray, List[DetectedFailure]]:
        """Send frame_bgr for detection.

        Returns the frame (annotated when anything was found) and the failures.
        Raises DetectionError or requests.RequestException on failure.
        """
        body = encode_jpeg(frame_bgr, quality=UPLOAD_QUALITY)
        try:
            resp = self.session.post(
                self.predict_url,
                data=body,
                headers={"Content-Type": "image/jpeg"},
                timeout=self.timeout,
            )
        except requests.RequestException:
            self.telemetry.detection_completed("error")
            raise

        if resp.status_code != 200:
            self.telemetry.detection_completed(str(resp.status_code))
            raise DetectionError(f"expected status code 200, got {resp.status_code}")

        try:
            failures = parse_detections(resp.json())
        except ValueError as e:
            self.telemetry.detection_completed("invalid")
            raise DetectionError(f"invalid JSON from detection API: {e}") from e
        except DetectionError:
            self.telemetry.detection_completed("invalid")
            raise

        self.telemetry.detection_completed("ok", len(failures))
        if not failures:
            return frame_bgr, failures
        return draw_failures(frame_bgr, failures), failures
