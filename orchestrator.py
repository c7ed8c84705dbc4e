#!/usr/bin/env python3
"""
prusaLGTM orchestrator: camera -> sampled frames -> base64 JPEG log lines

Commands:
- print-image: capture a frame every interval and print it to stdout as a
  `data:image/jpeg;base64,` line. With a PrusaLink URL, capture only while
  the printer is printing. With an ML API URL, detected failures are drawn
  onto the frame first.
- failure-detect: run the failure detection API on a single image file.
- generate-timelapse: rebuild timelapse videos from the lines stored in Loki.

Diagnostics are logged to stderr so stdout only carries image lines.
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime
from typing import List, Optional

import cv2
import requests

from failure_detector import DetectionError, FailureDetector
from frame_source import DeviceError, V4L2FrameSource
from image_logger import ImageLogger
from print_gate import PrintGate
from prusa_link import PrusaLinkClient
from sampled_capture import SampledCapture
from settings import (
    add_camera_arguments,
    add_loki_arguments,
    add_print_arguments,
    capture_config_from_args,
    load_env,
)
from telemetry import Telemetry
from timelapse import LokiClient, TimelapseError, generate_timelapse

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )


def _parse_time(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid ISO-8601 time: {value!r}")
    # naive times are local
    return parsed if parsed.tzinfo else parsed.astimezone()


def run_print_image(args: argparse.Namespace) -> int:
    telemetry = Telemetry()
    try:
        config = capture_config_from_args(args)
    except ValueError as e:
        logger.error("Invalid camera configuration: %s", e)
        return 2

    detector = None
    if args.ml_api_url:
        detector = FailureDetector(args.ml_api_url, telemetry=telemetry)

    image_logger = ImageLogger(
        max_log_size=args.max_log_size,
        max_image_height=args.max_image_size,
        detector=detector,
        telemetry=telemetry,
    )

    try:
        source = V4L2FrameSource(config.device)
    except DeviceError as e:
        logger.error("%s", e)
        return 1

    capture = SampledCapture(source, config, telemetry=telemetry)
    try:
        if not args.prusa_link_url:
            try:
                channel = capture.start()
            except DeviceError as e:
                logger.error("Error starting camera: %s", e)
                return 1
            try:
                image_logger.consume(channel)
            except KeyboardInterrupt:
                logger.info("Interrupted; stopping capture")
            finally:
                capture.stop()
            if capture.last_error is not None:
                return 1
            return 0

        client = PrusaLinkClient(args.prusa_link_url, telemetry=telemetry)
        gate = PrintGate(
            capture,
            consume=image_logger.consume,
            state_provider=client.printer_state,
            poll_interval=args.status_poll_interval,
        )
        try:
            gate.run()
        except KeyboardInterrupt:
            logger.info("Interrupted; stopping capture")
        finally:
            gate.stop()
        return 0
    finally:
        source.close()
        logger.info("Telemetry: %s", telemetry.snapshot())


def run_failure_detect(args: argparse.Namespace) -> int:
    frame = cv2.imread(args.image_path, cv2.IMREAD_COLOR)
    if frame is None:
        logger.error("Could not read image %s", args.image_path)
        return 1

    detector = FailureDetector(args.ml_api_url)
    try:
        annotated, failures = detector.detect(frame)
    except (DetectionError, requests.RequestException) as e:
        logger.error("Failure detection failed: %s", e)
        return 1

    for failure in failures:
        print(f"Failure detected with confidence {failure.confidence:f} at coordinates {list(failure.box)}")

    if args.output_path:
        if not cv2.imwrite(args.output_path, annotated):
            logger.error("Could not write %s", args.output_path)
            return 1
        logger.info("Annotated image written to %s", args.output_path)
    return 0


def run_generate_timelapse(args: argparse.Namespace) -> int:
    client = LokiClient(
        args.loki_url,
        query=args.logql_query,
        username=args.loki_username,
        password=args.loki_password,
    )
    try:
        outputs = generate_timelapse(
            client,
            args.start_time,
            args.end_time,
            output_dir=args.output_path,
            to_mp4=args.encode_to_mp4,
        )
    except TimelapseError as e:
        logger.error("%s", e)
        return 1

    for path in outputs:
        print(path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prusa-lgtm",
        description="Monitor a Prusa printer camera through logs and make sure it is looking good.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    commands = parser.add_subparsers(dest="command", required=True)

    print_image = commands.add_parser("print-image", help="Print images from a camera to stdout.")
    add_camera_arguments(print_image)
    add_print_arguments(print_image)
    print_image.set_defaults(func=run_print_image)

    failure_detect = commands.add_parser("failure-detect", help="Detect failures in a print image.")
    failure_detect.add_argument("--ml-api-url", required=True, help="The URL to the ML API to detect failures.")
    failure_detect.add_argument("--image-path", required=True, help="The image to detect failures in.")
    failure_detect.add_argument("--output-path", help="Where to write the annotated image.")
    failure_detect.set_defaults(func=run_failure_detect)

    timelapse = commands.add_parser("generate-timelapse", help="Build timelapse videos from logged images.")
    add_loki_arguments(timelapse)
    timelapse.add_argument("--start-time", type=_parse_time, required=True,
                           help="The start time of the logs to fetch (ISO-8601).")
    timelapse.add_argument("--end-time", type=_parse_time, required=True,
                           help="The end time of the logs to fetch (ISO-8601).")
    timelapse.add_argument("--encode-to-mp4", action="store_true",
                           help="Also encode each timelapse to MP4. Requires ffmpeg.")
    timelapse.add_argument("--output-path", default="videos/", help="Directory for the timelapse videos.")
    timelapse.set_defaults(func=run_generate_timelapse)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_env()
    try:
        parser = build_parser()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
