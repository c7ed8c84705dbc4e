#!/usr/bin/env python3
"""
Packed 4:2:2 (YUYV) frame decoding.

The camera delivers frames as Y0 Cb Y1 Cr byte quads. Each quad carries two
luma samples and one shared chroma pair, so a frame of w x h pixels is
exactly w * h * 2 bytes long.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class DecodeError(Exception):
    """Raised when a raw frame does not match the configured geometry."""


@dataclass(frozen=True)
class RawFrame:
    data: bytes
    width: int
    height: int


@dataclass(frozen=True)
class YCbCrImage:
    """Decoded 4:2:2 image with separate planes.

    y is (height, width); cb and cr are (height, width // 2).
    """

    y: np.ndarray
    cb: np.ndarray
    cr: np.ndarray

    @property
    def width(self) -> int:
        return self.y.shape[1]

    @property
    def height(self) -> int:
        return self.y.shape[0]

    def to_yuyv(self) -> np.ndarray:
        """Re-interleave the planes into a (height, width, 2) YUYV array."""
        packed = np.empty((self.height, self.width * 2), dtype=np.uint8)
        packed[:, 0::2] = self.y
        packed[:, 1::4] = self.cb
        packed[:, 3::4] = self.cr
        return packed.reshape(self.height, self.width, 2)

    def to_bgr(self) -> np.ndarray:
        return cv2.cvtColor(self.to_yuyv(), cv2.COLOR_YUV2BGR_YUYV)


def decode_yuyv422(frame: RawFrame) -> YCbCrImage:
    """Split a packed YUYV buffer into Y, Cb and Cr planes.

    For chroma index i the luma samples 2i and 2i+1 come from byte offsets 4i
    and 4i+2, Cb from 4i+1 and Cr from 4i+3.
    """
    width, height = frame.width, frame.height
    expected = width * height * 2
    if len(frame.data) != expected:
        raise DecodeError(
            f"raw frame is {len(frame.data)} bytes, expected {expected} for {width}x{height}"
        )

    raw = np.frombuffer(frame.data, dtype=np.uint8)
    y = raw[0::2].reshape(height, width)
    cb = raw[1::4].reshape(height, width // 2)
    cr = raw[3::4].reshape(height, width // 2)
    # copies, so the planes never alias a driver buffer
    return YCbCrImage(y=y.copy(), cb=cb.copy(), cr=cr.copy())
