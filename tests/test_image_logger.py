"""Tests for writing captured images as base64 log lines."""

import base64
import io
from unittest.mock import MagicMock

import cv2
import numpy as np
import pytest
import requests

from failure_detector import DetectedFailure, DetectionError
from fakes import noise_image
from image_logger import FORMAT_PREFIX, ImageLogger, format_line, jpeg_budget
from telemetry import Telemetry
from yuyv import RawFrame, decode_yuyv422


def _decode_line(line):
    assert line.startswith(FORMAT_PREFIX)
    jpeg = base64.b64decode(line[len(FORMAT_PREFIX):])
    return cv2.imdecode(np.frombuffer(jpeg, dtype=np.uint8), cv2.IMREAD_COLOR)


def test_jpeg_budget_leaves_room_for_prefix_and_base64():
    assert jpeg_budget(256000) == (256000 - len(FORMAT_PREFIX)) * 3 // 4
    assert jpeg_budget(10) == 0

    jpeg = bytes(jpeg_budget(1000))
    assert len(format_line(jpeg)) <= 1000


def test_logs_one_line_within_the_limits():
    stream = io.StringIO()
    telemetry = Telemetry()
    image_logger = ImageLogger(max_log_size=120000, max_image_height=480, telemetry=telemetry, stream=stream)

    gradient = np.tile(np.linspace(0, 255, 800, dtype=np.uint8), (600, 1))
    assert image_logger.log_image(cv2.cvtColor(gradient, cv2.COLOR_GRAY2BGR))

    lines = stream.getvalue().splitlines()
    assert len(lines) == 1
    assert len(lines[0]) <= 120000
    decoded = _decode_line(lines[0])
    assert decoded.shape[:2] == (480, 640)
    assert sum(telemetry.images_logged.values()) == 1
    assert telemetry.images_logged_bytes > 0


def test_accepts_decoded_camera_frames():
    stream = io.StringIO()
    raw = bytes([90, 100, 90, 160]) * (32 * 24 // 2)
    image = decode_yuyv422(RawFrame(raw, 32, 24))

    assert ImageLogger(stream=stream).log_image(image)

    decoded = _decode_line(stream.getvalue().strip())
    assert decoded.shape[:2] == (1080, 1440)


def test_image_that_cannot_fit_is_skipped(caplog):
    stream = io.StringIO()
    telemetry = Telemetry()
    image_logger = ImageLogger(max_log_size=100, telemetry=telemetry, stream=stream)

    assert not image_logger.log_image(noise_image(48, 64))

    assert stream.getvalue() == ""
    assert telemetry.images_skipped == 1
    assert "Skipping image" in caplog.text


def test_detector_annotations_are_logged():
    stream = io.StringIO()
    frame = np.zeros((240, 320, 3), dtype=np.uint8)
    marked = np.full((240, 320, 3), 255, dtype=np.uint8)
    detector = MagicMock()
    detector.detect.return_value = (marked, [DetectedFailure(0.9, (160, 120, 40, 40))])

    ImageLogger(max_image_height=240, detector=detector, stream=stream).log_image(frame)

    detector.detect.assert_called_once()
    decoded = _decode_line(stream.getvalue().strip())
    assert decoded.mean() > 200


@pytest.mark.parametrize("error", [DetectionError("bad payload"), requests.Timeout("slow")])
def test_detector_failure_falls_back_to_the_plain_image(error):
    stream = io.StringIO()
    frame = np.zeros((240, 320, 3), dtype=np.uint8)
    detector = MagicMock()
    detector.detect.side_effect = error

    assert ImageLogger(max_image_height=240, detector=detector, stream=stream).log_image(frame)

    decoded = _decode_line(stream.getvalue().strip())
    assert decoded.mean() < 10


def test_consume_logs_until_the_stream_ends():
    stream = io.StringIO()
    images = [noise_image(48, 64, seed=s) for s in range(3)]

    ImageLogger(max_image_height=240, stream=stream).consume(iter(images))

    assert len(stream.getvalue().splitlines()) == 3
