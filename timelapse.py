#!/usr/bin/env python3
"""
Rebuild timelapse videos from logged frames.

Behavior:
- Fetch log lines from Loki in 5-minute windows, starting 10s before the
  first matching line.
- Every `data:image/jpeg;base64,` line becomes one frame of an MJPEG AVI.
- A window without any lines is a gap: the current video is closed and the
  next frame starts a new file.
- Optionally re-encode each finished AVI to MP4 with ffmpeg.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import cv2
import numpy as np
import requests
from requests.auth import HTTPBasicAuth

from image_logger import FORMAT_PREFIX

logger = logging.getLogger(__name__)

TIMELAPSE_FPS = 24
FETCH_WINDOW = timedelta(minutes=5)
FETCH_LIMIT = 1000
SEEK_BACK = timedelta(seconds=10)
DEFAULT_LOGQL_QUERY = '{unit="prusaLGTM.service"} |= "base64"'
QUERY_RANGE_PATH = "/loki/api/v1/query_range"
LOKI_TIMEOUT = 60


class TimelapseError(Exception):
    pass


@dataclass
class LogEntry:
    timestamp: datetime
    line: str


@dataclass
class LogStream:
    labels: dict
    entries: List[LogEntry] = field(default_factory=list)


def _parse_streams(payload: dict) -> List[LogStream]:
    data = payload.get("data") or {}
    result_type = data.get("resultType")
    if result_type != "streams":
        raise TimelapseError(f"unexpected result type: {result_type}")

    streams = []
    for item in data.get("result") or []:
        entries = [
            LogEntry(
                timestamp=datetime.fromtimestamp(int(ts) / 1e9, tz=timezone.utc),
                line=line,
            )
            for ts, line in item.get("values") or []
        ]
        streams.append(LogStream(labels=item.get("stream") or {}, entries=entries))
    return streams


class LokiClient:
    def __init__(
        self,
        url: str,
        query: str = DEFAULT_LOGQL_QUERY,
        username: str = "",
        password: str = "",
        session: Optional[requests.Session] = None,
        timeout: float = LOKI_TIMEOUT,
    ):
        self.query_url = url.rstrip("/") + QUERY_RANGE_PATH
        self.query = query
        self.timeout = timeout
        self.session = session or requests.Session()
        if username and password:
            self.session.auth = HTTPBasicAuth(username, password)

    def fetch_logs(self, start: datetime, end: datetime, limit: int) -> List[LogStream]:
        params = {
            "query": self.query,
            "start": start.isoformat(),
            "end": end.isoformat(),
            "direction": "forward",
            "limit": str(limit),
        }
        try:
            resp = self.session.get(self.query_url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise TimelapseError(f"failed to fetch logs: {e}") from e
        if resp.status_code != 200:
            raise TimelapseError(f"failed to fetch logs. status: {resp.status_code} {resp.reason}")
        try:
            return _parse_streams(resp.json())
        except ValueError as e:
            raise TimelapseError(f"invalid JSON from Loki: {e}") from e


def decode_line(line: str) -> Optional[bytes]:
    """JPEG bytes carried by a log line, or None if the line is not a frame."""
    if not line.startswith(FORMAT_PREFIX):
        return None
    try:
        return base64.b64decode(line[len(FORMAT_PREFIX):], validate=True)
    except binascii.Error as e:
        raise TimelapseError(f"failed to decode base64 image: {e}") from e


class TimelapseFile:
    """MJPEG AVI writer; the first frame fixes the video size."""

    def __init__(self, path: str, fps: int = TIMELAPSE_FPS):
        self.path = path
        self.fps = fps
        self.writer: Optional[cv2.VideoWriter] = None
        self.size: Optional[tuple] = None
        self.frames = 0

    def add_frame(self, jpeg: bytes) -> None:
        frame = cv2.imdecode(np.frombuffer(jpeg, dtype=np.uint8), cv2.IMREAD_COLOR)
        if frame is None:
            raise TimelapseError("failed to decode jpeg image")

        height, width = frame.shape[:2]
        if self.writer is None:
            self.writer = cv2.VideoWriter(self.path, cv2.VideoWriter_fourcc(*"MJPG"), self.fps, (width, height))
            if not self.writer.isOpened():
                self.writer = None
                raise TimelapseError(f"failed to create mjpeg writer for {self.path}")
            self.size = (width, height)
        elif (width, height) != self.size:
            frame = cv2.resize(frame, self.size, interpolation=cv2.INTER_AREA)

        self.writer.write(frame)
        self.frames += 1

    def close(self) -> None:
        if self.writer is not None:
            self.writer.release()
            self.writer = None


def encode_to_mp4(avi_path: str) -> str:
    """Re-encode an AVI to MPEG-4 next to it. Returns the .mp4 path."""
    output_path = os.path.splitext(avi_path)[0] + ".mp4"
    tmp_path = output_path + ".tmp.mp4"
    cmd = [
        "ffmpeg",
        "-hide_banner",
        "-loglevel", "error",
        "-y",
        "-i", avi_path,
        "-c:v", "mpeg4",
        "-qscale", "0",
        tmp_path,
    ]
    try:
        proc = subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
    except FileNotFoundError as e:
        raise TimelapseError("ffmpeg not found; cannot encode to mp4") from e
    if proc.returncode != 0:
        raise TimelapseError(
            f"failed to reencode timelapse (rc={proc.returncode}): "
            f"{proc.stderr.decode(errors='ignore').strip()}, command: {' '.join(cmd)}"
        )

    os.replace(tmp_path, output_path)
    return output_path


def _single_stream(streams: List[LogStream]) -> Optional[LogStream]:
    if not streams:
        return None
    if len(streams) > 1:
        raise TimelapseError(f"unexpected number of streams: {len(streams)}")
    return streams[0] if streams[0].entries else None


def generate_timelapse(
    client: LokiClient,
    start_time: datetime,
    end_time: datetime,
    output_dir: str = "videos",
    to_mp4: bool = False,
    window: timedelta = FETCH_WINDOW,
) -> List[str]:
    """Write one video per contiguous run of logged frames.

    start_time and end_time must be timezone-aware. Returns the paths of the finished videos (MP4 paths when to_mp4).
    """
    first = _single_stream(client.fetch_logs(start_time, end_time, 1))
    if first is None:
        logger.info("No logs found. from=%s, to=%s, query=%s", start_time, end_time, client.query)
        return []

    os.makedirs(output_dir, exist_ok=True)
    outputs: List[str] = []
    timelapse: Optional[TimelapseFile] = None

    def _finish() -> None:
        timelapse.close()
        if timelapse.frames == 0:
            logger.warning("No frames in %s; nothing written", timelapse.path)
            return
        logger.info("timelapse generated: %s (%d frames)", timelapse.path, timelapse.frames)
        outputs.append(encode_to_mp4(timelapse.path) if to_mp4 else timelapse.path)

    start = first.entries[0].timestamp - SEEK_BACK
    while start < end_time:
        end = min(start + window, end_time)
        stream = _single_stream(client.fetch_logs(start, end, FETCH_LIMIT))
        window_start, start = start, end

        if stream is None:
            if timelapse is not None:
                _finish()
                timelapse = None
            continue

        if timelapse is None:
            name = f"timelapse-{len(outputs)}-{window_start.strftime('%Y-%m-%d')}.avi"
            timelapse = TimelapseFile(os.path.join(output_dir, name))
            logger.info("timelapse started: %s", timelapse.path)

        for entry in stream.entries:
            jpeg = decode_line(entry.line)
            if jpeg is None:
                logger.debug("Skipping non-image line at %s", entry.timestamp)
                continue
            timelapse.add_frame(jpeg)

    if timelapse is not None:
        _finish()

    return outputs
