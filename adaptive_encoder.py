#!/usr/bin/env python3
"""
Fit an image into a byte budget by trying smaller resolutions.
"""

from __future__ import annotations

import logging
from typing import List, Sequence, Tuple, Union

import cv2
import numpy as np

from yuyv import YCbCrImage

logger = logging.getLogger(__name__)

IMAGE_SIZES: Tuple[int, ...] = (1080, 720, 480, 360, 240)
# fixed so the chosen height is stable for a given image
JPEG_QUALITY = 75


class NoFitError(Exception):
    """No candidate resolution encodes under the byte budget."""


def candidate_heights(ceiling_height: int, sizes: Sequence[int] = IMAGE_SIZES) -> List[int]:
    """Heights allowed under the ceiling, tallest first."""
    return sorted((s for s in sizes if s <= ceiling_height), reverse=True)


def resize_to_height(image: np.ndarray, height: int) -> np.ndarray:
    src_h, src_w = image.shape[:2]
    width = max(1, int(round(src_w * height / src_h)))
    return cv2.resize(image, (width, height), interpolation=cv2.INTER_LANCZOS4)


def encode_jpeg(image: np.ndarray, quality: int = JPEG_QUALITY) -> bytes:
    ok, buf = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buf.tobytes()


def fit(
    image: Union[np.ndarray, YCbCrImage],
    max_bytes: int,
    ceiling_height: int,
    sizes: Sequence[int] = IMAGE_SIZES,
) -> Tuple[bytes, int]:
    """Encode image at the tallest candidate height whose JPEG is under max_bytes.

    Args:
        image: BGR array or a decoded YCbCrImage.
        max_bytes: Exclusive upper bound on the encoded size.
        ceiling_height: Candidates taller than this are never tried.
        sizes: Candidate heights.

    Returns:
        (jpeg_bytes, chosen_height)

    Raises:
        NoFitError: if no candidate fits.
    """
    if isinstance(image, YCbCrImage):
        image = image.to_bgr()

    candidates = candidate_heights(ceiling_height, sizes)
    for height in candidates:
        encoded = encode_jpeg(resize_to_height(image, height))
        if len(encoded) < max_bytes:
            return encoded, height
        logger.debug("%dp encodes to %d bytes, budget %d", height, len(encoded), max_bytes)

    raise NoFitError(
        f"no size in {candidates} fits under {max_bytes} bytes"
    )
