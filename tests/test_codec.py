import base64
import struct

import numpy as np
import pytest

from axd_reader.codec import (
    FloatArrayReader,
    decode_base64,
    decode_samples,
    read_float32_le,
)
from axd_reader.errors import InvalidBase64, PayloadError, PayloadSizeMismatch


def test_decode_samples_reproduces_float32_values():
    values = [0.0, -1.5, 3.25, 1e-12, -7e20, np.float32(np.pi)]
    raw = struct.pack("<6f", *values)
    text = base64.b64encode(raw).decode("ascii")

    decoded = decode_samples(text, len(values))

    assert decoded.dtype == np.float64
    assert decoded.astype("<f4").tobytes() == raw


def test_decode_base64_ignores_line_breaks():
    raw = bytes(range(48))
    text = base64.encodebytes(raw).decode("ascii")  # wrapped at 76 chars
    assert "\n" in text
    assert decode_base64(text) == raw


@pytest.mark.parametrize("text", [None, ""])
def test_missing_payload_is_empty(text):
    assert decode_base64(text) == b""


def test_bad_padding_is_invalid_base64():
    with pytest.raises(InvalidBase64):
        decode_base64("QUJDRA=")


@pytest.mark.parametrize("text", ["QUJD$$$$RA==", "QUJD-_RA", "QUJD!RA=="])
def test_characters_outside_the_alphabet_are_invalid(text):
    with pytest.raises(InvalidBase64):
        decode_base64(text)


def test_spaces_and_tabs_are_ignored():
    assert decode_base64(" QUJD\tRA==\r\n") == b"ABCD"


def test_non_ascii_is_invalid_base64():
    with pytest.raises(InvalidBase64):
        decode_base64("QUJDé")


def test_invalid_base64_is_a_payload_error():
    assert issubclass(InvalidBase64, PayloadError)
    assert issubclass(PayloadSizeMismatch, PayloadError)


@pytest.mark.parametrize("nbytes", [0, 4, 11, 16])
def test_length_must_match_exactly(nbytes):
    with pytest.raises(PayloadSizeMismatch):
        read_float32_le(bytes(nbytes), 3)


class TestFloatArrayReader:
    def test_cursor_advances(self):
        reader = FloatArrayReader(struct.pack("<4f", 1, 2, 3, 4))

        first = reader.read(1)
        rest = reader.read(3)

        np.testing.assert_array_equal(first, [1])
        np.testing.assert_array_equal(rest, [2, 3, 4])
        assert reader.offset == 16
        assert reader.remaining == 0

    def test_reading_past_the_end_fails_without_moving(self):
        reader = FloatArrayReader(struct.pack("<2f", 1, 2))

        with pytest.raises(PayloadSizeMismatch):
            reader.read(3)
        assert reader.offset == 0

    def test_negative_count_fails(self):
        with pytest.raises(PayloadSizeMismatch):
            FloatArrayReader(bytes(8)).read(-1)

    def test_reads_little_endian(self):
        reader = FloatArrayReader(b"\x00\x00\x80\x3f")
        assert reader.read(1)[0] == 1.0
