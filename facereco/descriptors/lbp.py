"""Uniform extended-LBP spatial histograms and their weighted chi-square distance.

A face patch is turned into a 2301-long descriptor:

1. Extended LBP with 8 sampling points on a circle of radius 2. Each sampling
   point is bilinearly interpolated; bit ``n`` of the code is set when the
   interpolated value is greater than (or within float epsilon of) the centre.
2. The code image is cut into a 7x7 grid. Ten patches carry no identity
   information (nose bridge and the cheek/background columns) and are dropped,
   leaving 39 patches in row-major order::

       0  1   2   3   4   5   6
       7  8   9   10  11  12  13
      14  15  16      17  18  19
          20  21      22  23
          24  25  26  27  28
          29  30  31  32  33
          34  35  36  37  38

3. Every patch contributes a 59-bin histogram of uniform patterns (at most two
   circular 0/1 transitions); all non-uniform codes share the last bin.

See Ahonen, Hadid and Pietikainen (2006), "Face Description with Local Binary
Patterns: Application to Face Recognition".
"""

from __future__ import annotations

import logging
from typing import List, Tuple

import cv2
import numpy as np

from facereco.types import (
    DESCRIPTOR_LENGTH,
    MAX_DISTANCE,
    NUM_PATCHES,
    NUM_PATTERNS,
    Descriptor,
    as_descriptor,
)

LOGGER = logging.getLogger("facereco.descriptors.lbp")

GRID_X = 7
GRID_Y = 7
LBP_RADIUS = 2
LBP_SAMPLING_POINTS = 8
MEDIAN_BLUR_KSIZE = 3

# Weight per retained patch: eyes and eyebrows count most.
PATCH_WEIGHTS: Tuple[int, ...] = (
    2, 1, 1, 1, 1, 1, 2,
    2, 4, 4, 1, 4, 4, 2,
    1, 1, 1, 1, 1, 1,
    1, 1, 1, 1,
    1, 1, 1, 1, 1,
    1, 1, 2, 1, 1,
    1, 1, 1, 1, 1,
)

_FLOAT_EPS = np.finfo(np.float32).eps


def _is_excluded_patch(row: int, col: int) -> bool:
    if col in (0, GRID_X - 1) and row in (3, 4, 5, 6):
        return True
    return col == 3 and row in (2, 3)


def retained_patches() -> List[Tuple[int, int]]:
    """Return (row, col) grid coordinates of the 39 patches in descriptor order."""
    return [
        (row, col)
        for row in range(GRID_Y)
        for col in range(GRID_X)
        if not _is_excluded_patch(row, col)
    ]


def _circular_transitions(code: int, bits: int = 8) -> int:
    transitions = 0
    for n in range(bits):
        current = (code >> n) & 1
        following = (code >> ((n + 1) % bits)) & 1
        transitions += current != following
    return transitions


def uniform_pattern_table() -> np.ndarray:
    """Build the 256 -> 59 lookup used to bin LBP codes.

    Uniform codes get consecutive bins in ascending code order; everything else
    lands in bin 58.
    """
    table = np.full(256, NUM_PATTERNS - 1, dtype=np.intp)
    next_bin = 0
    for code in range(256):
        if _circular_transitions(code) <= 2:
            table[code] = next_bin
            next_bin += 1
    return table


UNIFORM_PATTERN = uniform_pattern_table()
_PATCHES = retained_patches()
_BIN_WEIGHTS = np.repeat(np.asarray(PATCH_WEIGHTS, dtype=np.float64), NUM_PATTERNS)

if len(_PATCHES) != NUM_PATCHES or len(PATCH_WEIGHTS) != NUM_PATCHES:
    raise RuntimeError(f"Patch layout mismatch: {len(_PATCHES)} patches, {len(PATCH_WEIGHTS)} weights")


def _require_gray_u8(image: np.ndarray) -> np.ndarray:
    if image is None:
        raise ValueError("Face patch is missing")
    arr = np.asarray(image)
    if arr.ndim == 3 and arr.shape[2] == 1:
        arr = arr[:, :, 0]
    if arr.ndim != 2 or arr.dtype != np.uint8:
        raise ValueError(
            f"Expected a single-channel 8-bit image, got shape={arr.shape} dtype={arr.dtype}"
        )
    return arr


def compute_lbp_image(
    image: np.ndarray,
    radius: int = LBP_RADIUS,
    sampling_points: int = LBP_SAMPLING_POINTS,
) -> np.ndarray:
    """Compute the extended LBP code image (shrunk by ``radius`` on each side)."""
    img = _require_gray_u8(image)
    rows, cols = img.shape
    out_rows = rows - 2 * radius
    out_cols = cols - 2 * radius
    if out_rows <= 0 or out_cols <= 0:
        raise ValueError(f"Image {img.shape} too small for LBP radius {radius}")

    center = img[radius:rows - radius, radius:cols - radius].astype(np.float32)
    codes = np.zeros((out_rows, out_cols), dtype=np.uint8)

    for n in range(sampling_points):
        x = np.float32(np.cos(2.0 * np.pi * n / sampling_points) * radius)
        y = np.float32(np.sin(2.0 * np.pi * n / sampling_points) * -radius)

        fx = int(np.floor(x))
        fy = int(np.floor(y))
        cx = int(np.ceil(x))
        cy = int(np.ceil(y))

        ty = np.float32(y - fy)
        tx = np.float32(x - fx)

        w1 = np.float32((1 - tx) * (1 - ty))
        w2 = np.float32(tx * (1 - ty))
        w3 = np.float32((1 - tx) * ty)
        w4 = np.float32(tx * ty)

        def _shifted(dy: int, dx: int) -> np.ndarray:
            return img[radius + dy:rows - radius + dy, radius + dx:cols - radius + dx].astype(np.float32)

        t = (
            w1 * _shifted(fy, fx)
            + w2 * _shifted(fy, cx)
            + w3 * _shifted(cy, fx)
            + w4 * _shifted(cy, cx)
        )
        bit = (t > center) | (np.abs(t - center) < _FLOAT_EPS)
        codes |= bit.astype(np.uint8) << np.uint8(n)

    return codes


def spatial_histogram(lbp_image: np.ndarray) -> Descriptor:
    """Concatenate the 39 per-patch uniform histograms of an LBP code image."""
    codes = np.asarray(lbp_image)
    height = codes.shape[0] // GRID_Y
    width = codes.shape[1] // GRID_X
    if height == 0 or width == 0:
        raise ValueError(f"LBP image {codes.shape} too small for a {GRID_Y}x{GRID_X} grid")

    result = np.zeros(DESCRIPTOR_LENGTH, dtype=np.float32)
    for patch_index, (row, col) in enumerate(_PATCHES):
        patch = codes[row * height:(row + 1) * height, col * width:(col + 1) * width]
        counts = np.bincount(UNIFORM_PATTERN[patch].ravel(), minlength=NUM_PATTERNS)
        start = patch_index * NUM_PATTERNS
        result[start:start + NUM_PATTERNS] = counts

    result /= np.float32(codes.size)
    return as_descriptor(result)


def encode(patch: np.ndarray) -> Descriptor:
    """Encode a grayscale 8-bit face patch into a 2301-long descriptor."""
    return spatial_histogram(compute_lbp_image(patch))


def preprocess_face(aligned_face: np.ndarray) -> np.ndarray:
    """Median-blur an aligned face crop and convert it to 8-bit grayscale."""
    if aligned_face is None or np.asarray(aligned_face).size == 0:
        raise ValueError("Aligned face image is empty")
    image = np.asarray(aligned_face)
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    blurred = cv2.medianBlur(image, MEDIAN_BLUR_KSIZE)
    if blurred.ndim == 3 and blurred.shape[2] == 3:
        return cv2.cvtColor(blurred, cv2.COLOR_BGR2GRAY)
    if blurred.ndim == 3 and blurred.shape[2] == 4:
        return cv2.cvtColor(blurred, cv2.COLOR_BGRA2GRAY)
    return blurred


def _as_row(values) -> np.ndarray:
    arr = np.asarray(values)
    if arr.ndim == 2 and arr.shape[0] == 1:
        arr = arr[0]
    return arr


def distance(a: Descriptor, b: Descriptor) -> float:
    """Weighted chi-square distance between two descriptors.

    Returns ``MAX_DISTANCE`` when either argument is not a 2301-long row vector.
    """
    if a is None or b is None:
        return MAX_DISTANCE
    va = _as_row(a)
    vb = _as_row(b)
    if va.shape != (DESCRIPTOR_LENGTH,) or vb.shape != (DESCRIPTOR_LENGTH,):
        return MAX_DISTANCE

    va = va.astype(np.float64)
    vb = vb.astype(np.float64)
    total = va + vb
    diff = va - vb
    terms = np.divide(
        diff * diff,
        total,
        out=np.zeros_like(total),
        where=total > 0.0,
    )
    return float(np.dot(_BIN_WEIGHTS, terms))
