#!/usr/bin/env python3
"""
Only capture while the printer is printing.

A polling thread asks the status provider for the printer state on a fixed
interval and feeds the resulting boolean into a two-state machine
(NotCapturing / Capturing) that starts and stops the capture session.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from frame_source import DeviceError
from prusa_link import StatusError
from sampled_capture import ImageChannel, SampledCapture

logger = logging.getLogger(__name__)

STATUS_POLL_INTERVAL = 5.0

CAPTURE_STATES = frozenset({"PRINTING", "PAUSED", "ATTENTION"})
IDLE_STATES = frozenset({"OPERATIONAL", "FINISHED", "IDLE"})


def should_capture(state: str) -> bool:
    """Map a PrusaLink printer state to whether frames should be captured.

    Unknown states are logged and treated as not printing.
    """
    if state in CAPTURE_STATES:
        return True
    if state not in IDLE_STATES:
        logger.warning("%s is an unknown printer state; not capturing", state)
    return False


class PrintGate:
    """Start/stop a SampledCapture from a polled boolean.

    Args:
        capture: The session to drive.
        consume: Called on a new worker thread with each session's channel.
        state_provider: Returns the current printer state string. StatusError
            means "no signal this tick".
        poll_interval: Seconds between polls.
    """

    def __init__(
        self,
        capture: SampledCapture,
        consume: Callable[[ImageChannel], None],
        state_provider: Optional[Callable[[], str]] = None,
        poll_interval: float = STATUS_POLL_INTERVAL,
    ):
        self.capture = capture
        self.consume = consume
        self.state_provider = state_provider
        self.poll_interval = poll_interval

        self._lock = threading.Lock()
        self._capturing = False
        self._worker: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None

    @property
    def capturing(self) -> bool:
        with self._lock:
            return self._capturing

    def update(self, capture_wanted: bool) -> None:
        """Apply one signal to the state machine.

        A session whose acquisition loop has died is stopped first, so a
        wanted capture is restarted on the same call.
        """
        with self._lock:
            if self._capturing and not self.capture.loop_alive:
                logger.error("Capture session ended unexpectedly: %s", self.capture.last_error)
                self._stop_capture()
            if capture_wanted and not self._capturing:
                self._start_capture()
            elif not capture_wanted and self._capturing:
                self._stop_capture()

    def _start_capture(self) -> None:
        try:
            channel = self.capture.start()
        except DeviceError as e:
            logger.error("Error starting camera, will retry on next poll: %s", e)
            return

        self._capturing = True
        self._worker = threading.Thread(
            target=self.consume, args=(channel,), name="image-logger", daemon=True
        )
        self._worker.start()
        logger.info("Printer is printing; capture started")

    def _stop_capture(self) -> None:
        try:
            self.capture.stop()
        except DeviceError as e:
            logger.error("Error stopping camera: %s", e)
        self._capturing = False
        logger.info("Printer is not printing; capture stopped")

    def poll_once(self) -> None:
        try:
            state = self.state_provider()
        except StatusError as e:
            logger.warning("%s", e)
            return
        self.update(should_capture(state))

    def run(self) -> None:
        """Poll until stop() is called. Blocks the calling thread."""
        if self.state_provider is None:
            raise RuntimeError("PrintGate.run needs a state provider")
        logger.info("Polling printer state every %.1fs", self.poll_interval)
        while not self._stop_event.wait(self.poll_interval):
            self.poll_once()
        self.update(False)

    def start(self) -> None:
        """Run the polling loop on a background thread."""
        if self._poll_thread is not None:
            return
        self._stop_event.clear()
        self._poll_thread = threading.Thread(target=self.run, name="status-poll", daemon=True)
        self._poll_thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop polling and release any running capture session."""
        self._stop_event.set()
        if self._poll_thread is not None:
            self._poll_thread.join(timeout=timeout)
            self._poll_thread = None
        else:
            self.update(False)
        worker = self._worker
        if worker is not None:
            worker.join(timeout=timeout)
