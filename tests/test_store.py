import io
import struct

import numpy as np
import pytest

from facereco.store.database import Person, Store, Track
from facereco.store.persistence import MAGIC, StoreFormatError, read_store, write_store
from facereco.types import DESCRIPTOR_LENGTH

DESCRIPTOR_BYTES = DESCRIPTOR_LENGTH * 4


def _descriptor(seed):
    rng = np.random.default_rng(seed)
    return rng.random(DESCRIPTOR_LENGTH, dtype=np.float32)


def _person(name, track_sizes, seed=0):
    person = Person(name)
    for offset, size in enumerate(track_sizes):
        person.add_track(Track([_descriptor(seed * 100 + offset * 10 + i) for i in range(size)]))
    return person


def _store(*track_layouts):
    store = Store()
    for person_id, layout in enumerate(track_layouts):
        store.add_person(_person(f"p{person_id}", layout, seed=person_id))
    return store


def test_counters_follow_appends():
    store = Store()
    assert store.is_empty()
    assert store.person_count() == 0

    person_id = store.add_person(_person("Alice", [2]))
    assert person_id == 0
    assert store.track_count() == 1
    assert store.descriptor_count() == 2
    assert store.size() == 2 * DESCRIPTOR_BYTES

    track_id = store.add_track(0, Track([_descriptor(7)]))
    assert track_id == 1
    descriptor_id = store.add_descriptor(0, 1, _descriptor(8))
    assert descriptor_id == 1

    assert store.track_count(0) == 2
    assert store.descriptor_count(0) == 4
    assert store.descriptor_count(0, 1) == 2
    assert store.size(0) == 4 * DESCRIPTOR_BYTES
    assert store.size() == store.size(0)
    assert store.descriptor_count() == 4


def test_count_queries_are_zero_out_of_range():
    store = _store([1])
    assert store.track_count(5) == 0
    assert store.descriptor_count(5) == 0
    assert store.descriptor_count(0, 3) == 0
    assert store.size(-1) == 0


def test_reads_and_mutations_reject_bad_ids():
    store = _store([1])
    with pytest.raises(IndexError):
        store.get_descriptor(0, 0, 1)
    with pytest.raises(IndexError):
        store.get_name(1)
    with pytest.raises(IndexError):
        store.add_track(1, Track([_descriptor(1)]))
    with pytest.raises(IndexError):
        store.add_descriptor(0, 1, _descriptor(1))


def test_person_without_descriptors_is_rejected():
    with pytest.raises(ValueError):
        Store().add_person(Person("empty"))


def test_stored_descriptors_are_frozen_copies():
    original = _descriptor(3)
    store = Store()
    person = Person("Alice")
    person.add_track(Track([original.reshape(1, -1)]))
    store.add_person(person)

    stored = store.get_descriptor(0, 0, 0)
    assert stored.shape == (DESCRIPTOR_LENGTH,)
    np.testing.assert_array_equal(stored, original)
    original[0] = -1.0
    assert stored[0] != -1.0
    with pytest.raises(ValueError):
        stored[0] = 0.0


def test_merge_concatenates_tracks_and_shifts_ids():
    store = _store([1], [2, 1], [3])
    expected_tracks = store.track_count(0) + store.track_count(2)
    expected_descriptors = store.descriptor_count(0) + store.descriptor_count(2)
    expected_size = store.size(0) + store.size(2)
    totals = (store.track_count(), store.descriptor_count(), store.size())
    last_track = store.get_descriptor(2, 0, 2)

    merged_id = store.merge_persons(0, 2)

    assert merged_id == 0
    assert store.person_count() == 2
    assert store.track_count(0) == expected_tracks
    assert store.descriptor_count(0) == expected_descriptors
    assert store.size(0) == expected_size
    assert (store.track_count(), store.descriptor_count(), store.size()) == totals
    np.testing.assert_array_equal(store.get_descriptor(0, 1, 2), last_track)
    assert store.get_name(1) == "p1"


def test_merge_into_higher_id_returns_shifted_id():
    store = _store([1], [1], [1])
    merged_id = store.merge_persons(2, 0)
    assert merged_id == 1
    assert store.get_name(merged_id) == "p2"
    assert store.track_count(merged_id) == 2


def test_merge_rejects_self_and_missing_ids():
    store = _store([1], [1])
    with pytest.raises(ValueError):
        store.merge_persons(1, 1)
    with pytest.raises(IndexError):
        store.merge_persons(0, 4)
    assert store.person_count() == 2


def test_rename_clear_and_summary():
    store = _store([2], [1, 1])
    store.rename_person(1, "Bob")
    assert store.get_name(1) == "Bob"

    table = store.summary()
    assert list(table.columns) == ["person_id", "name", "tracks", "descriptors", "size_bytes", "has_face_image"]
    assert table["name"].tolist() == ["p0", "Bob"]
    assert table["tracks"].tolist() == [1, 2]
    assert table["descriptors"].sum() == store.descriptor_count()

    store.clear()
    assert store.is_empty()
    assert store.size() == 0
    assert store.summary().empty


def test_face_image_is_stored_as_rgb():
    bgr = np.zeros((4, 4, 3), dtype=np.uint8)
    bgr[:, :, 0] = 255
    person = _person("Alice", [1])
    person.set_face_image(bgr)
    assert person.face_image[0, 0].tolist() == [0, 0, 255]
    person.set_face_image(np.zeros((0, 0, 3), dtype=np.uint8))
    assert person.face_image is None


def test_save_and_load_roundtrip(tmp_path):
    store = _store([2, 1], [1])
    face = np.arange(6 * 5 * 3, dtype=np.uint8).reshape(6, 5, 3)
    store.get_person(0).set_face_image(face, bgr=False)
    store.rename_person(1, "Zoë")
    path = tmp_path / "faces.db"

    assert store.save(path)
    loaded = Store()
    assert loaded.load(path)

    assert loaded.person_count() == 2
    assert (loaded.track_count(), loaded.descriptor_count(), loaded.size()) == (
        store.track_count(),
        store.descriptor_count(),
        store.size(),
    )
    assert loaded.persons() == store.persons()
    np.testing.assert_array_equal(loaded.get_face_image(0), face)
    assert loaded.get_face_image(1) is None
    assert loaded.get_name(1) == "Zoë"


def test_file_starts_with_header(tmp_path):
    path = tmp_path / "faces.db"
    assert _store([1]).save(path)
    data = path.read_bytes()
    assert data[:4] == MAGIC
    assert data[4:8] == (1).to_bytes(4, "big")
    # totals: 1 track, 1 descriptor
    assert data[8:12] == (1).to_bytes(4, "big")
    assert data[12:16] == (1).to_bytes(4, "big")


def test_failed_load_leaves_store_untouched(tmp_path):
    path = tmp_path / "faces.db"
    assert _store([2], [1]).save(path)
    data = path.read_bytes()

    current = _store([1])
    before = current.persons()

    truncated = tmp_path / "truncated.db"
    truncated.write_bytes(data[:-10])
    assert not current.load(truncated)

    trailing = tmp_path / "trailing.db"
    trailing.write_bytes(data + b"\x00")
    assert not current.load(trailing)

    bad_magic = tmp_path / "bad_magic.db"
    bad_magic.write_bytes(b"XXXX" + data[4:])
    assert not current.load(bad_magic)

    assert not current.load(tmp_path / "missing.db")

    assert current.persons() == before
    assert current.person_count() == 1


def test_inconsistent_totals_are_rejected():
    buffer = io.BytesIO()
    write_store(_store([1]), buffer)
    data = bytearray(buffer.getvalue())
    # Bump the total descriptor count.
    data[12:16] = (2).to_bytes(4, "big")
    with pytest.raises(StoreFormatError):
        read_store(io.BytesIO(bytes(data)))


def _single_descriptor_stream(values):
    """One person, one track, one float32 descriptor, with consistent counters."""
    data = np.asarray(values, dtype="<f4").tobytes()
    name = "p0".encode("utf-16-be")
    empty_matrix = struct.pack(">iiiQI", 0, 0, 0, 0, 0)
    descriptor = struct.pack(">iiiQI", 1, len(values), 5, len(data), len(data)) + data
    return b"".join(
        [
            MAGIC,
            struct.pack(">IIIQI", 1, 1, 1, len(data), 1),
            struct.pack(">IQI", 1, len(data), 1),
            struct.pack(">I", len(name)) + name,
            empty_matrix,
            struct.pack(">QI", len(data), 1),
            descriptor,
        ]
    )


def test_hand_built_stream_with_full_descriptor_loads(tmp_path):
    path = tmp_path / "faces.db"
    path.write_bytes(_single_descriptor_stream(np.full(DESCRIPTOR_LENGTH, 0.5)))

    store = Store()
    assert store.load(path)
    assert store.descriptor_count(0, 0) == 1
    assert store.get_name(0) == "p0"


def test_descriptor_with_wrong_length_fails_the_load(tmp_path):
    path = tmp_path / "faces.db"
    path.write_bytes(_single_descriptor_stream(np.full(10, 0.5)))

    current = _store([1])
    assert not current.load(path)
    assert current.person_count() == 1
    with pytest.raises(StoreFormatError):
        read_store(io.BytesIO(path.read_bytes()))


def test_corrupt_matrix_type_fails_the_load(tmp_path):
    path = tmp_path / "faces.db"
    assert _store([1]).save(path)
    data = path.read_bytes()
    header = struct.pack(">iii", 1, DESCRIPTOR_LENGTH, 5)
    assert data.count(header) == 1
    path.write_bytes(data.replace(header, struct.pack(">iii", 1, DESCRIPTOR_LENGTH, -8)))

    current = _store([2])
    assert not current.load(path)
    assert current.descriptor_count() == 2


def test_descriptors_with_wrong_length_are_not_appended():
    track = Track([_descriptor(1)])
    with pytest.raises(ValueError):
        track.add_descriptor(np.zeros(10, dtype=np.float32))
    assert track.descriptor_count == 1

    store = _store([1])
    with pytest.raises(ValueError):
        store.add_descriptor(0, 0, np.zeros(DESCRIPTOR_LENGTH + 1, dtype=np.float32))
    assert store.descriptor_count() == 1


def test_unserializable_face_image_fails_the_save(tmp_path):
    store = Store()
    person = _person("Alice", [1])
    person.set_face_image(np.ones((4, 4), dtype=np.int64), bgr=False)
    store.add_person(person)

    path = tmp_path / "faces.db"
    assert not store.save(path)
    assert not path.exists()
