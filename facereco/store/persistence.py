"""Binary (big-endian) serialization of the identity database.

Layout::

    magic "FRDB", u32 format version
    u32 total tracks, u32 total descriptors, u64 total bytes, u32 person count
    per person:
        u32 track count, u64 size bytes, u32 descriptor count, string name,
        matrix face image, tracks...
    per track:
        u64 size bytes, u32 descriptor count, matrix descriptors...

A string is a u32 byte length (0xFFFFFFFF for "no name") followed by UTF-16BE.
A matrix is ``i32 rows, i32 cols, i32 OpenCV type, u64 row stride`` followed by a
byte block (u32 length + raw bytes).
"""

from __future__ import annotations

import io
import logging
import os
import struct
from pathlib import Path
from typing import BinaryIO, Optional, Tuple

import numpy as np

from facereco.store.database import Person, Store, Track
from facereco.types import DESCRIPTOR_LENGTH

LOGGER = logging.getLogger("facereco.store.persistence")

MAGIC = b"FRDB"
FORMAT_VERSION = 1
NULL_LENGTH = 0xFFFFFFFF

# OpenCV depth codes (CV_8U ... CV_64F).
_DEPTH_TO_DTYPE = {
    0: np.dtype(np.uint8),
    1: np.dtype(np.int8),
    2: np.dtype(np.uint16),
    3: np.dtype(np.int16),
    4: np.dtype(np.int32),
    5: np.dtype(np.float32),
    6: np.dtype(np.float64),
}
_DTYPE_TO_DEPTH = {dtype: depth for depth, dtype in _DEPTH_TO_DTYPE.items()}
_CV_CN_SHIFT = 3


class StoreFormatError(ValueError):
    """Raised when a database stream is truncated or malformed."""


def cv_type_of(array: np.ndarray) -> int:
    """OpenCV type code (depth + channel bits) for a 1-3 dimensional array."""
    depth = _DTYPE_TO_DEPTH.get(array.dtype)
    if depth is None:
        raise ValueError(f"Unsupported dtype for serialization: {array.dtype}")
    channels = array.shape[2] if array.ndim == 3 else 1
    return depth + ((channels - 1) << _CV_CN_SHIFT)


def _dtype_and_channels(cv_type: int) -> Tuple[np.dtype, int]:
    depth = cv_type & ((1 << _CV_CN_SHIFT) - 1)
    channels = (cv_type >> _CV_CN_SHIFT) + 1
    dtype = _DEPTH_TO_DTYPE.get(depth)
    if dtype is None:
        raise StoreFormatError(f"Unknown matrix type {cv_type}")
    return dtype, channels


class _Writer:
    def __init__(self, fh: BinaryIO) -> None:
        self._fh = fh

    def u32(self, value: int) -> None:
        self._fh.write(struct.pack(">I", value))

    def i32(self, value: int) -> None:
        self._fh.write(struct.pack(">i", value))

    def u64(self, value: int) -> None:
        self._fh.write(struct.pack(">Q", value))

    def raw(self, data: bytes) -> None:
        self.u32(len(data))
        self._fh.write(data)

    def string(self, value: Optional[str]) -> None:
        if value is None:
            self.u32(NULL_LENGTH)
            return
        self.raw(value.encode("utf-16-be"))

    def matrix(self, array: Optional[np.ndarray]) -> None:
        if array is None or array.size == 0:
            self.i32(0)
            self.i32(0)
            self.i32(0)
            self.u64(0)
            self.raw(b"")
            return
        arr = np.ascontiguousarray(array)
        rows, cols = (1, arr.shape[0]) if arr.ndim == 1 else arr.shape[:2]
        data = arr.astype(arr.dtype.newbyteorder("<"), copy=False).tobytes()
        self.i32(rows)
        self.i32(cols)
        self.i32(cv_type_of(arr))
        self.u64(len(data) // rows)
        self.raw(data)


class _Reader:
    def __init__(self, fh: BinaryIO) -> None:
        self._fh = fh

    def _take(self, size: int) -> bytes:
        data = self._fh.read(size)
        if len(data) != size:
            raise StoreFormatError(f"Unexpected end of stream (wanted {size} bytes, got {len(data)})")
        return data

    def u32(self) -> int:
        return struct.unpack(">I", self._take(4))[0]

    def i32(self) -> int:
        return struct.unpack(">i", self._take(4))[0]

    def u64(self) -> int:
        return struct.unpack(">Q", self._take(8))[0]

    def raw(self) -> bytes:
        length = self.u32()
        if length == NULL_LENGTH:
            return b""
        return self._take(length)

    def string(self) -> Optional[str]:
        length = self.u32()
        if length == NULL_LENGTH:
            return None
        if length % 2:
            raise StoreFormatError(f"Odd UTF-16 string length {length}")
        try:
            return self._take(length).decode("utf-16-be")
        except UnicodeDecodeError as exc:
            raise StoreFormatError(f"Invalid name string: {exc}") from exc

    def matrix(self) -> Optional[np.ndarray]:
        rows = self.i32()
        cols = self.i32()
        cv_type = self.i32()
        step = self.u64()
        data = self.raw()
        if rows == 0 or cols == 0:
            if data:
                raise StoreFormatError("Empty matrix header followed by data")
            return None
        if rows < 0 or cols < 0:
            raise StoreFormatError(f"Negative matrix shape {rows}x{cols}")
        dtype, channels = _dtype_and_channels(cv_type)
        row_bytes = cols * channels * dtype.itemsize
        if channels < 1 or row_bytes <= 0:
            raise StoreFormatError(f"Invalid matrix type {cv_type} for {rows}x{cols}")
        if step < row_bytes or len(data) != step * rows:
            raise StoreFormatError(
                f"Matrix {rows}x{cols} type={cv_type} step={step} inconsistent with {len(data)} data bytes"
            )
        shape = (rows, cols, channels) if channels > 1 else (rows, cols)
        try:
            buffer = np.frombuffer(data, dtype=np.uint8).reshape(rows, step)[:, :row_bytes]
            flat = np.ascontiguousarray(buffer).view(dtype.newbyteorder("<")).astype(dtype)
            return flat.reshape(shape)
        except ValueError as exc:
            raise StoreFormatError(f"Matrix {rows}x{cols} type={cv_type}: {exc}") from exc


def _write_track(out: _Writer, track: Track) -> None:
    out.u64(track.size)
    out.u32(track.descriptor_count)
    for descriptor in track:
        out.matrix(descriptor)


def _write_person(out: _Writer, person: Person) -> None:
    out.u32(person.track_count)
    out.u64(person.size)
    out.u32(person.descriptor_count)
    out.string(person.name)
    out.matrix(person.face_image)
    for track in person.tracks:
        _write_track(out, track)


def write_store(store: Store, fh: BinaryIO) -> None:
    """Serialize ``store`` into an open binary stream."""
    out = _Writer(fh)
    with store.transaction():
        persons = store.persons()
        fh.write(MAGIC)
        out.u32(FORMAT_VERSION)
        out.u32(store.track_count())
        out.u32(store.descriptor_count())
        out.u64(store.size())
        out.u32(len(persons))
        for person in persons:
            _write_person(out, person)


def _read_track(inp: _Reader) -> Track:
    size = inp.u64()
    count = inp.u32()
    if count == 0:
        raise StoreFormatError("Track without descriptors")
    track = Track()
    for _ in range(count):
        descriptor = inp.matrix()
        if descriptor is None:
            raise StoreFormatError("Empty descriptor in track")
        if descriptor.dtype != np.float32 or descriptor.shape != (1, DESCRIPTOR_LENGTH):
            raise StoreFormatError(
                f"Descriptor must be 1x{DESCRIPTOR_LENGTH} float32, got {descriptor.shape} {descriptor.dtype}"
            )
        track.add_descriptor(descriptor)
    if track.size != size:
        raise StoreFormatError(f"Track size mismatch: header={size} actual={track.size}")
    return track


def _read_person(inp: _Reader) -> Person:
    track_count = inp.u32()
    size = inp.u64()
    descriptor_count = inp.u32()
    name = inp.string()
    person = Person(name if name is not None else "")
    person.set_face_image(inp.matrix(), bgr=False)
    for _ in range(track_count):
        person.add_track(_read_track(inp))
    if person.size != size or person.descriptor_count != descriptor_count:
        raise StoreFormatError(
            f"Person counters mismatch: header=({descriptor_count}, {size}) "
            f"actual=({person.descriptor_count}, {person.size})"
        )
    return person


def read_store(fh: BinaryIO) -> Store:
    """Parse a database stream into a new :class:`Store`."""
    inp = _Reader(fh)
    magic = inp._take(len(MAGIC))
    if magic != MAGIC:
        raise StoreFormatError(f"Not a facereco database (magic={magic!r})")
    version = inp.u32()
    if version != FORMAT_VERSION:
        raise StoreFormatError(f"Unsupported database format version {version}")

    total_tracks = inp.u32()
    total_descriptors = inp.u32()
    total_size = inp.u64()
    person_count = inp.u32()

    store = Store()
    for _ in range(person_count):
        person = _read_person(inp)
        if person.descriptor_count == 0:
            raise StoreFormatError("Person without descriptors")
        store.add_person(person)

    if fh.read(1):
        raise StoreFormatError("Trailing data after last person")
    actual = (store.track_count(), store.descriptor_count(), store.size())
    if actual != (total_tracks, total_descriptors, total_size):
        raise StoreFormatError(
            f"Database totals mismatch: header={(total_tracks, total_descriptors, total_size)} actual={actual}"
        )
    return store


def save_store(store: Store, path: Path) -> None:
    """Write ``store`` to ``path`` via a temporary file and atomic rename."""
    path = Path(path)
    tmp_path = path.with_name(path.name + ".tmp")
    buffer = io.BytesIO()
    write_store(store, buffer)
    with tmp_path.open("wb") as fh:
        fh.write(buffer.getvalue())
    os.replace(tmp_path, path)
    LOGGER.debug("Wrote %d bytes to %s", buffer.tell(), path)


def load_store(path: Path) -> Store:
    """Read a database file into a new :class:`Store`."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Database file not found: {path}")
    with path.open("rb") as fh:
        return read_store(fh)
