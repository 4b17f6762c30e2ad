import numpy as np
import pytest

from facereco.descriptors.lbp import (
    PATCH_WEIGHTS,
    compute_lbp_image,
    distance,
    encode,
    preprocess_face,
    retained_patches,
    uniform_pattern_table,
)
from facereco.types import DESCRIPTOR_LENGTH, MAX_DISTANCE, NUM_PATCHES, NUM_PATTERNS


def _flat_face(value=128, size=64):
    return np.full((size, size), value, dtype=np.uint8)


def _ramp_face(size=64):
    row = (np.arange(size) * 3).astype(np.uint8)
    return np.tile(row, (size, 1))


def test_uniform_table_has_58_uniform_bins_and_one_shared_bin():
    table = uniform_pattern_table()
    assert table.shape == (256,)
    assert table[0] == 0
    assert table[1] == 1
    assert table[255] == 57
    assert sorted(set(table.tolist())) == list(range(NUM_PATTERNS))
    # 0b00100100 has four transitions.
    assert table[0b00100100] == 58


def test_retained_patches_skip_nose_bridge_and_cheek_columns():
    patches = retained_patches()
    assert len(patches) == NUM_PATCHES == len(PATCH_WEIGHTS)
    assert (2, 3) not in patches
    assert (3, 3) not in patches
    assert (4, 0) not in patches
    assert (6, 6) not in patches
    assert (2, 0) in patches
    assert patches[0] == (0, 0)


def test_lbp_image_shrinks_by_radius():
    codes = compute_lbp_image(_flat_face())
    assert codes.shape == (60, 60)
    assert codes.dtype == np.uint8
    assert len(np.unique(codes)) == 1


def test_flat_face_puts_all_mass_in_one_bin_per_patch():
    descriptor = encode(_flat_face())
    assert descriptor.shape == (DESCRIPTOR_LENGTH,)
    assert descriptor.dtype == np.float32
    per_patch = descriptor.reshape(NUM_PATCHES, NUM_PATTERNS)
    # 60x60 code image, 8x8 pixels per patch.
    expected = 64.0 / 3600.0
    assert np.all(np.count_nonzero(per_patch, axis=1) == 1)
    assert len(set(per_patch.argmax(axis=1).tolist())) == 1
    np.testing.assert_allclose(per_patch.max(axis=1), expected, rtol=1e-6)
    assert descriptor.sum() == pytest.approx(NUM_PATCHES * expected, rel=1e-5)


def test_encode_returns_read_only_descriptor():
    descriptor = encode(_ramp_face())
    with pytest.raises(ValueError):
        descriptor[0] = 1.0


def test_encode_rejects_colour_and_tiny_images():
    with pytest.raises(ValueError):
        encode(np.zeros((64, 64, 3), dtype=np.uint8))
    with pytest.raises(ValueError):
        encode(np.zeros((4, 4), dtype=np.uint8))
    with pytest.raises(ValueError):
        encode(np.zeros((64, 64), dtype=np.float32))


def test_preprocess_face_converts_bgr_to_gray():
    bgr = np.dstack([_ramp_face()] * 3)
    gray = preprocess_face(bgr)
    assert gray.shape == (64, 64)
    assert gray.dtype == np.uint8
    np.testing.assert_array_equal(gray, _ramp_face())


def test_preprocess_face_rejects_empty_input():
    with pytest.raises(ValueError):
        preprocess_face(np.zeros((0, 0, 3), dtype=np.uint8))
    with pytest.raises(ValueError):
        preprocess_face(None)


def test_distance_is_symmetric_and_zero_on_self():
    flat = encode(_flat_face())
    ramp = encode(_ramp_face())
    assert distance(flat, flat) == 0.0
    assert distance(ramp, ramp) == 0.0
    assert distance(flat, ramp) == pytest.approx(distance(ramp, flat))
    assert distance(flat, ramp) > 0.37


def test_distance_accepts_row_matrices():
    flat = encode(_flat_face())
    ramp = encode(_ramp_face())
    assert distance(flat.reshape(1, -1), ramp) == pytest.approx(distance(flat, ramp))


def test_distance_weights_patches():
    base = np.zeros(DESCRIPTOR_LENGTH, dtype=np.float32)
    base[0] = 1.0  # patch 0, weight 2
    other = base.copy()
    other[1] = 0.5
    assert distance(base, other) == pytest.approx(2 * 0.5)

    base = np.zeros(DESCRIPTOR_LENGTH, dtype=np.float32)
    base[NUM_PATTERNS] = 1.0  # patch 1, weight 1
    other = base.copy()
    other[NUM_PATTERNS + 1] = 0.5
    assert distance(base, other) == pytest.approx(0.5)


def test_distance_of_malformed_descriptors_is_max():
    good = encode(_flat_face())
    assert distance(None, good) == MAX_DISTANCE
    assert distance(good, np.zeros(10, dtype=np.float32)) == MAX_DISTANCE
    assert distance(np.zeros((2, DESCRIPTOR_LENGTH), dtype=np.float32), good) == MAX_DISTANCE
