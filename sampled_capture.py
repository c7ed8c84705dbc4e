#!/usr/bin/env python3
"""
Sampled capture: pull frames continuously, keep at most one per interval.

Behavior:
- One acquisition thread per session. It checks the stop event before every
  blocking call, and the frame wait is bounded, so stop latency is at most one
  wait timeout.
- Frames arriving between ticks are read (to drain the driver) and dropped.
- Accepted frames are decoded and handed over an unbuffered channel. A slow
  consumer stalls capture instead of queueing frames.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable, Iterator, List, Optional

from frame_source import CaptureConfig, DeviceError, FrameSource
from telemetry import Telemetry
from yuyv import DecodeError, RawFrame, YCbCrImage, decode_yuyv422

logger = logging.getLogger(__name__)

FRAME_WAIT_TIMEOUT = 5.0
DEVICE_ERROR_BACKOFF = 0.05


class ChannelClosed(Exception):
    pass


class ImageChannel:
    """Rendezvous channel: send() returns only once a receiver took the item.

    Closing wakes both sides. An item not yet taken when the channel closes
    is dropped and send() reports False.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._slot: Optional[List[YCbCrImage]] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def send(self, item: YCbCrImage) -> bool:
        with self._cond:
            self._cond.wait_for(lambda: self._slot is None or self._closed)
            if self._closed:
                return False
            self._slot = [item]
            self._cond.notify_all()
            self._cond.wait_for(lambda: self._slot is None or self._closed)
            if self._slot is not None:
                self._slot = None
                return False
            return True

    def receive(self, timeout: Optional[float] = None) -> YCbCrImage:
        """Take the next item. Raises queue.Empty on timeout, ChannelClosed when closed."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._slot is not None or self._closed, timeout):
                raise queue.Empty
            if self._closed:
                raise ChannelClosed
            item = self._slot[0]
            self._slot = None
            self._cond.notify_all()
            return item

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self) -> Iterator[YCbCrImage]:
        while True:
            try:
                yield self.receive()
            except ChannelClosed:
                return


class Ticker:
    """Non-blocking interval gate.

    fired() is True at most once per interval; the first tick comes one
    interval after construction. Missed ticks are not accumulated.
    """

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._next = clock() + interval

    def fired(self) -> bool:
        now = self._clock()
        if now < self._next:
            return False
        self._next = now + self.interval
        return True


class SampledCapture:
    """Capture session bound to one FrameSource. States: Idle, Running."""

    def __init__(
        self,
        source: FrameSource,
        config: CaptureConfig,
        frame_wait_timeout: float = FRAME_WAIT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        telemetry: Optional[Telemetry] = None,
    ):
        self.source = source
        self.config = config
        self.frame_wait_timeout = frame_wait_timeout
        self._clock = clock
        self.telemetry = telemetry or Telemetry()

        self._channel: Optional[ImageChannel] = None
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self.last_error: Optional[Exception] = None

    @property
    def running(self) -> bool:
        return self._thread is not None

    @property
    def loop_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> ImageChannel:
        """Configure the device, start streaming and launch the acquisition loop.

        Raises DeviceError if the device rejects the configuration or refuses
        to stream; the session stays Idle in that case.
        """
        if self._thread is not None:
            raise RuntimeError("Capture session already running")

        cfg = self.config
        self.source.configure(cfg.pixel_format, cfg.frame_width, cfg.frame_height, cfg.frame_rate)
        self.source.start_streaming()

        channel = ImageChannel()
        stop_event = threading.Event()
        self.last_error = None
        self._channel = channel
        self._stop_event = stop_event
        self._thread = threading.Thread(
            target=self._loop,
            args=(channel, stop_event),
            name="capture-loop",
            daemon=True,
        )
        self._thread.start()
        self.telemetry.capture_started()
        logger.info(
            "Capture started: %dx%d, one picture every %.1fs",
            cfg.frame_width, cfg.frame_height, cfg.picture_interval,
        )
        return channel

    def stop(self) -> None:
        """Stop the loop, close the channel and stop streaming.

        The loop is joined before the stream is stopped so the device is never
        touched by two threads; if the loop does not exit in time the device
        is left streaming. Raises RuntimeError when not running.
        """
        if self._thread is None:
            raise RuntimeError("Capture session is not running")

        thread, channel, stop_event = self._thread, self._channel, self._stop_event
        self._thread = None
        self._channel = None
        self._stop_event = None

        stop_event.set()
        channel.close()
        thread.join(timeout=self.frame_wait_timeout * 2)
        self.telemetry.capture_stopped()
        if thread.is_alive():
            # the loop still owns the device
            logger.warning(
                "Capture loop did not exit within %.1fs; leaving the device streaming",
                self.frame_wait_timeout * 2,
            )
            return

        self.source.stop_streaming()
        logger.info("Capture stopped")

    def _loop(self, channel: ImageChannel, stop_event: threading.Event) -> None:
        cfg = self.config
        ticker = Ticker(cfg.picture_interval, clock=self._clock)

        while not stop_event.is_set():
            try:
                if not self.source.wait_for_frame(self.frame_wait_timeout):
                    continue
                raw = self.source.read_frame()
            except DeviceError as e:
                logger.debug("Frame read failed: %s", e)
                stop_event.wait(DEVICE_ERROR_BACKOFF)
                continue

            if not ticker.fired():
                continue

            try:
                image = decode_yuyv422(RawFrame(raw.data, cfg.frame_width, cfg.frame_height))
            except DecodeError as e:
                logger.error("Stopping capture loop, malformed frame: %s", e)
                self.last_error = e
                channel.close()
                return

            if not channel.send(image):
                break

        logger.debug("Capture loop exited")
