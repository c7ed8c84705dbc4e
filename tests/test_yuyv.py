"""Tests for packed 4:2:2 frame decoding."""

import numpy as np
import pytest

from yuyv import DecodeError, RawFrame, decode_yuyv422


def _ramp_frame(width, height):
    data = bytes(i % 251 for i in range(width * height * 2))
    return RawFrame(data=data, width=width, height=height)


def test_plane_sizes():
    image = decode_yuyv422(_ramp_frame(8, 6))

    assert image.y.shape == (6, 8)
    assert image.cb.shape == (6, 4)
    assert image.cr.shape == (6, 4)
    assert image.y.size == 2 * image.cb.size == 2 * image.cr.size


def test_samples_come_from_documented_offsets():
    frame = _ramp_frame(8, 4)
    raw = frame.data
    image = decode_yuyv422(frame)

    y = image.y.ravel()
    cb = image.cb.ravel()
    cr = image.cr.ravel()
    for i in range(cb.size):
        assert y[2 * i] == raw[4 * i]
        assert y[2 * i + 1] == raw[4 * i + 2]
        assert cb[i] == raw[4 * i + 1]
        assert cr[i] == raw[4 * i + 3]


def test_first_quad():
    raw = bytes([10, 20, 30, 40]) + bytes(4)
    image = decode_yuyv422(RawFrame(raw, 4, 1))

    assert image.y[0, 0] == 10
    assert image.cb[0, 0] == 20
    assert image.y[0, 1] == 30
    assert image.cr[0, 0] == 40


@pytest.mark.parametrize("length", [0, 15, 17, 32])
def test_length_mismatch_is_an_error(length):
    with pytest.raises(DecodeError):
        decode_yuyv422(RawFrame(bytes(length), 4, 2))


def test_repacking_restores_the_raw_layout():
    frame = _ramp_frame(6, 2)
    image = decode_yuyv422(frame)

    assert image.to_yuyv().tobytes() == frame.data


def test_neutral_chroma_converts_to_grey():
    raw = bytes([128, 128, 128, 128]) * (4 * 2 // 2)
    image = decode_yuyv422(RawFrame(raw, 4, 2))

    bgr = image.to_bgr()
    assert bgr.shape == (2, 4, 3)
    assert bgr.dtype == np.uint8
    channels = bgr.reshape(-1, 3).astype(int)
    assert np.all(np.abs(channels[:, 0] - channels[:, 2]) <= 2)
    assert np.all(np.abs(channels[:, 1] - channels[:, 2]) <= 2)


def test_planes_do_not_alias_the_input():
    data = bytearray(_ramp_frame(4, 2).data)
    image = decode_yuyv422(RawFrame(bytes(data), 4, 2))

    image.y[0, 0] = 255
    assert decode_yuyv422(RawFrame(bytes(data), 4, 2)).y[0, 0] == data[0]
