"""Scan geometry

Helpers that turn a raster as stored on disk (first row at the bottom of the
scan) into an axis-aligned raster with the first row at the top, for any
scan angle.
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
import math

import numpy as np

SPLINE_ORDER = 3


def normalize_angle(angle: float) -> float:
    """Wrap an angle in degrees into (-180, 180]."""
    if not math.isfinite(angle):
        raise ValueError("Scan angle must be finite.", angle)
    angle = (angle + 180.0) % 360.0 - 180.0
    if angle <= -180.0:
        angle += 360.0
    return angle


def flip_vertical(data: np.ndarray) -> np.ndarray:
    return data[::-1, :]


def flip_horizontal(data: np.ndarray) -> np.ndarray:
    return data[:, ::-1]


def rotate_90(data: np.ndarray, clockwise: bool) -> np.ndarray:
    return np.rot90(data, -1 if clockwise else 1)


def rotate_expanded(
    data: np.ndarray, angle: float, dx: float, dy: float
) -> tuple[np.ndarray, np.ndarray, float, float]:
    """Rotate counterclockwise by angle degrees without clipping the corners.

    Non-square pixels are resampled to square ones first so the rotation
    happens in physical space. Canvas pixels outside the rotated footprint
    are filled with the mean of the finite samples.

    Returns the rotated data, a mask that is True on the exterior pixels,
    and the physical width and height of the canvas."""
    from scipy import ndimage

    rows, cols = data.shape
    xreal = dx * cols
    yreal = dy * rows
    if dx > 0 and dy > 0 and not math.isclose(dx, dy):
        step = min(dx, dy)
        data = ndimage.zoom(
            data,
            (dy / step, dx / step),
            order=SPLINE_ORDER,
            mode="nearest",
            grid_mode=True,
        )
        rows, cols = data.shape
    dx = xreal / cols
    dy = yreal / rows

    finite = np.isfinite(data)
    fill = float(data[finite].mean()) if finite.any() else 0.0
    data = np.where(finite, data, fill)

    matrix, offset, out_shape = expanded_rotation(data.shape, angle)
    rotated = ndimage.affine_transform(
        data,
        matrix,
        offset,
        output_shape=out_shape,
        order=SPLINE_ORDER,
        mode="constant",
        cval=fill,
    )
    exterior = exterior_mask(data.shape, matrix, offset, out_shape)
    out_rows, out_cols = out_shape
    return rotated, exterior, out_cols * dx, out_rows * dy


def expanded_rotation(
    shape: tuple[int, int], angle: float
) -> tuple[np.ndarray, np.ndarray, tuple[int, int]]:
    """Affine map from canvas (row, col) to input coordinates for a rotation
    by angle degrees about the center, on a canvas holding every corner.

    Same convention as scipy.ndimage.rotate with reshape=True."""
    theta = math.radians(angle)
    c, s = math.cos(theta), math.sin(theta)
    matrix = np.array([[c, s], [-s, c]])
    rows, cols = shape
    corners = matrix @ np.array([[0, 0, rows, rows], [0, cols, 0, cols]])
    out_shape = tuple(int(extent) for extent in np.ptp(corners, axis=1) + 0.5)
    in_center = (np.array(shape) - 1) / 2
    out_center = matrix @ ((np.array(out_shape) - 1) / 2)
    return matrix, in_center - out_center, out_shape


def exterior_mask(
    shape: tuple[int, int],
    matrix: np.ndarray,
    offset: np.ndarray,
    out_shape: tuple[int, int],
) -> np.ndarray:
    """True on canvas pixels that map outside the input grid."""
    rows, cols = shape
    r, c = np.ogrid[: out_shape[0], : out_shape[1]]
    # tolerance for pixels landing exactly on the edge of the grid
    eps = 1e-6
    in_r = matrix[0, 0] * r + matrix[0, 1] * c + offset[0]
    exterior = (in_r < -eps) | (in_r > rows - 1 + eps)
    del in_r
    in_c = matrix[1, 0] * r + matrix[1, 1] * c + offset[1]
    exterior |= (in_c < -eps) | (in_c > cols - 1 + eps)
    return exterior
