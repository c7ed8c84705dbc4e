#!/usr/bin/env python3
"""
Configuration loading.

Values come from the environment (a .env file in the working directory is
loaded first) and can be overridden on the command line.
"""

from __future__ import annotations

import argparse
import logging
import os
from typing import Optional

from dotenv import load_dotenv

from adaptive_encoder import IMAGE_SIZES
from frame_source import CaptureConfig
from image_logger import DEFAULT_MAX_LOG_SIZE
from print_gate import STATUS_POLL_INTERVAL
from timelapse import DEFAULT_LOGQL_QUERY

logger = logging.getLogger(__name__)

ENV_FILE = ".env"


def load_env(env_file: str = ENV_FILE) -> None:
    if os.path.exists(env_file):
        load_dotenv(env_file)
    else:
        logger.debug("%s not found; using environment and defaults", env_file)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def add_camera_arguments(parser: argparse.ArgumentParser) -> None:
    defaults = CaptureConfig()
    group = parser.add_argument_group("camera")
    group.add_argument("--camera-device", default=_env_str("CAMERA_DEVICE", defaults.device),
                       help="The video device to use.")
    group.add_argument("--camera-pixel-format", default=_env_str("CAMERA_PIXEL_FORMAT", defaults.pixel_format),
                       help="FourCC of the raw camera format.")
    group.add_argument("--camera-frame-width", type=int,
                       default=_env_int("CAMERA_FRAME_WIDTH", defaults.frame_width),
                       help="The width of the frame.")
    group.add_argument("--camera-frame-height", type=int,
                       default=_env_int("CAMERA_FRAME_HEIGHT", defaults.frame_height),
                       help="The height of the frame.")
    group.add_argument("--camera-frame-rate", type=float,
                       default=_env_float("CAMERA_FRAME_RATE", defaults.frame_rate),
                       help="The frame rate of the camera.")
    group.add_argument("--camera-picture-interval", type=float,
                       default=_env_float("CAMERA_PICTURE_INTERVAL", defaults.picture_interval),
                       help="Seconds between logged pictures.")


def add_print_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--max-log-size", type=int,
                        default=_env_int("MAX_LOG_SIZE", DEFAULT_MAX_LOG_SIZE),
                        help="Maximum bytes of a logged line. Keep it below the Loki line limit.")
    parser.add_argument("--max-image-size", type=int, choices=IMAGE_SIZES,
                        default=_env_int("MAX_IMAGE_SIZE", IMAGE_SIZES[0]),
                        help="Maximum height of the logged image in pixels.")
    parser.add_argument("--prusa-link-url", default=_env_str("PRUSA_LINK_URL"),
                        help="PrusaLink URL with credentials. When set, images are only logged while printing.")
    parser.add_argument("--status-poll-interval", type=float,
                        default=_env_float("STATUS_POLL_INTERVAL", STATUS_POLL_INTERVAL),
                        help="Seconds between PrusaLink status polls.")
    parser.add_argument("--ml-api-url", default=_env_str("ML_API_URL"),
                        help="URL of the failure detection API.")


def add_loki_arguments(parser: argparse.ArgumentParser) -> None:
    loki_url = _env_str("LOKI_URL")
    parser.add_argument("--loki-url", default=loki_url, required=loki_url is None,
                        help="The URL to the Loki API to fetch logs from.")
    parser.add_argument("--loki-username", default=_env_str("LOKI_USERNAME", ""),
                        help="The username to authenticate with the Loki API.")
    parser.add_argument("--loki-password", default=_env_str("LOKI_PASSWORD", ""),
                        help="The password to authenticate with the Loki API.")
    parser.add_argument("--logql-query", default=_env_str("LOGQL_QUERY", DEFAULT_LOGQL_QUERY),
                        help="The LogQL query to fetch logs.")


def capture_config_from_args(args: argparse.Namespace) -> CaptureConfig:
    return CaptureConfig(
        device=args.camera_device,
        pixel_format=args.camera_pixel_format,
        frame_width=args.camera_frame_width,
        frame_height=args.camera_frame_height,
        frame_rate=args.camera_frame_rate,
        picture_interval=args.camera_picture_interval,
    )
