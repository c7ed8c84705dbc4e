"""Tests for the command line entry point."""

import argparse
from datetime import timedelta
from unittest import mock

import cv2
import numpy as np
import pytest

import orchestrator
from failure_detector import DetectedFailure
from fakes import FakeFrameSource, solid_frame

ENV_VARS = [
    "CAMERA_DEVICE", "CAMERA_PIXEL_FORMAT", "CAMERA_FRAME_WIDTH", "CAMERA_FRAME_HEIGHT",
    "CAMERA_FRAME_RATE", "CAMERA_PICTURE_INTERVAL", "MAX_LOG_SIZE", "MAX_IMAGE_SIZE",
    "PRUSA_LINK_URL", "STATUS_POLL_INTERVAL", "ML_API_URL",
    "LOKI_URL", "LOKI_USERNAME", "LOKI_PASSWORD", "LOGQL_QUERY",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # keep a developer's .env out of the tests
    monkeypatch.chdir(tmp_path)


def test_print_image_defaults():
    args = orchestrator.build_parser().parse_args(["print-image"])

    assert args.camera_device == "/dev/video0"
    assert args.camera_pixel_format == "YUYV"
    assert (args.camera_frame_width, args.camera_frame_height) == (2304, 1536)
    assert args.camera_frame_rate == 2.0
    assert args.camera_picture_interval == 10.0
    assert args.max_log_size == 256000
    assert args.max_image_size == 1080
    assert args.prusa_link_url is None
    assert args.status_poll_interval == 5.0
    assert args.ml_api_url is None


def test_environment_overrides_defaults(monkeypatch):
    monkeypatch.setenv("CAMERA_FRAME_WIDTH", "1920")
    monkeypatch.setenv("CAMERA_FRAME_HEIGHT", "1080")
    monkeypatch.setenv("MAX_IMAGE_SIZE", "720")
    monkeypatch.setenv("PRUSA_LINK_URL", "http://maker:pw@printer")

    args = orchestrator.build_parser().parse_args(["print-image", "--camera-frame-height", "720"])

    assert args.camera_frame_width == 1920
    assert args.camera_frame_height == 720
    assert args.max_image_size == 720
    assert args.prusa_link_url == "http://maker:pw@printer"


def test_bad_environment_value_exits_with_usage_error(monkeypatch, capsys):
    monkeypatch.setenv("MAX_LOG_SIZE", "big")

    assert orchestrator.main(["print-image"]) == 2
    assert "MAX_LOG_SIZE" in capsys.readouterr().err


def test_max_image_size_must_be_a_known_height():
    with pytest.raises(SystemExit):
        orchestrator.build_parser().parse_args(["print-image", "--max-image-size", "500"])


def test_parse_time():
    aware = orchestrator._parse_time("2024-05-01T12:00:00+00:00")
    assert aware.utcoffset() == timedelta(0)

    naive = orchestrator._parse_time("2024-05-01T12:00:00")
    assert naive.tzinfo is not None

    with pytest.raises(argparse.ArgumentTypeError):
        orchestrator._parse_time("yesterday")


def test_generate_timelapse_requires_loki_url():
    with pytest.raises(SystemExit):
        orchestrator.build_parser().parse_args(
            ["generate-timelapse", "--start-time", "2024-05-01T00:00:00", "--end-time", "2024-05-02T00:00:00"]
        )


def test_generate_timelapse_command(monkeypatch, capsys):
    monkeypatch.setenv("LOKI_URL", "http://loki:3100")
    with mock.patch.object(orchestrator, "generate_timelapse", return_value=["videos/timelapse-0.avi"]) as gen:
        rc = orchestrator.main([
            "generate-timelapse",
            "--start-time", "2024-05-01T00:00:00+00:00",
            "--end-time", "2024-05-02T00:00:00+00:00",
            "--encode-to-mp4",
        ])

    assert rc == 0
    client, start, end = gen.call_args.args
    assert client.query_url == "http://loki:3100/loki/api/v1/query_range"
    assert end - start == timedelta(days=1)
    assert gen.call_args.kwargs == {"output_dir": "videos/", "to_mp4": True}
    assert capsys.readouterr().out.splitlines() == ["videos/timelapse-0.avi"]


def test_failure_detect_command(tmp_path, capsys):
    image_path = str(tmp_path / "print.png")
    cv2.imwrite(image_path, np.zeros((48, 64, 3), dtype=np.uint8))
    output_path = str(tmp_path / "annotated.png")

    with mock.patch.object(orchestrator, "FailureDetector") as detector_cls:
        detector_cls.return_value.detect.side_effect = lambda frame: (
            frame, [DetectedFailure(0.9, (1.0, 2.0, 3.0, 4.0))]
        )
        rc = orchestrator.main([
            "failure-detect",
            "--ml-api-url", "http://ml:8000",
            "--image-path", image_path,
            "--output-path", output_path,
        ])

    assert rc == 0
    detector_cls.assert_called_once_with("http://ml:8000")
    assert capsys.readouterr().out.strip() == (
        "Failure detected with confidence 0.900000 at coordinates [1.0, 2.0, 3.0, 4.0]"
    )
    assert cv2.imread(output_path) is not None


def test_failure_detect_missing_image(tmp_path):
    assert orchestrator.main([
        "failure-detect", "--ml-api-url", "http://ml:8000", "--image-path", str(tmp_path / "missing.png"),
    ]) == 1


def test_print_image_rejects_invalid_camera_config():
    assert orchestrator.main(["print-image", "--camera-frame-width", "2303"]) == 2


def test_print_image_logs_until_the_camera_breaks(capsys):
    # good frames for a while, then frames of the wrong size end the session
    script = [solid_frame(100)] * 30 + [b"\x00" * 3] * 100
    source = FakeFrameSource(script, frame_delay=0.01)

    with mock.patch.object(orchestrator, "V4L2FrameSource", return_value=source) as source_cls:
        rc = orchestrator.main([
            "print-image",
            "--camera-device", "/dev/video9",
            "--camera-frame-width", "4",
            "--camera-frame-height", "2",
            "--camera-picture-interval", "0.05",
            "--max-image-size", "240",
        ])

    assert rc == 1
    source_cls.assert_called_once_with("/dev/video9")
    lines = capsys.readouterr().out.splitlines()
    assert lines
    assert all(line.startswith("data:image/jpeg;base64,") for line in lines)
    assert source.calls[:2] == ["configure", "start"]
    assert source.calls[-2:] == ["stop", "close"]
