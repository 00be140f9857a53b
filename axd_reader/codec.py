"""Sample payload decoding.

Analysis Studio stores every array as base64 text wrapping little-endian
float32 values.
"""

# Copyright (C) Richard J. Sheridan
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
import base64
import binascii

import numpy as np
from attrs import field, mutable

from axd_reader.errors import InvalidBase64, PayloadSizeMismatch

FLOAT32_LE = np.dtype("<f4")


def decode_base64(text: str | bytes | None) -> bytes:
    """Decode base64 payload text. Whitespace and line breaks are ignored,
    any other character outside the alphabet is an error.

    A missing payload decodes to an empty buffer so the caller's length
    check reports it."""
    if not text:
        return b""
    if isinstance(text, str):
        try:
            text = text.encode("ascii")
        except UnicodeEncodeError as e:
            raise InvalidBase64("Non-ASCII characters in base64 payload.") from e
    try:
        return base64.b64decode(b"".join(text.split()), validate=True)
    except binascii.Error as e:
        raise InvalidBase64(str(e)) from e


@mutable
class FloatArrayReader:
    """Cursor over an owned buffer yielding little-endian float32 runs."""

    buffer: bytes = field(converter=bytes, repr=lambda x: f"<{len(x)} bytes>")
    offset: int = 0

    @property
    def remaining(self) -> int:
        return len(self.buffer) - self.offset

    def read(self, count: int) -> np.ndarray:
        nbytes = count * FLOAT32_LE.itemsize
        if count < 0 or nbytes > self.remaining:
            raise PayloadSizeMismatch(
                f"Requested {count} floats but only {self.remaining} bytes remain.",
                self,
            )
        floats = np.frombuffer(
            self.buffer, dtype=FLOAT32_LE, count=count, offset=self.offset
        )
        self.offset += nbytes
        return floats


def read_float32_le(buffer: bytes, count: int) -> np.ndarray:
    """Interpret buffer as exactly count floats, returned as float64."""
    expected = count * FLOAT32_LE.itemsize
    if len(buffer) != expected:
        raise PayloadSizeMismatch(
            f"Expected {expected} bytes for {count} samples, got {len(buffer)}.",
        )
    return FloatArrayReader(buffer).read(count).astype(np.float64)


def decode_samples(text: str | bytes | None, count: int) -> np.ndarray:
    return read_float32_le(decode_base64(text), count)
