"""Person -> Track -> Descriptor database with cached aggregate counters.

Ids are dense positional indices: a new person gets ``person_count()`` as its id
and a new track gets its person's ``track_count()``. Every public method of
:class:`Store` runs under one re-entrant lock, so a reader never sees a
half-applied append or merge.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import cv2
import numpy as np
import pandas as pd

from facereco.types import DESCRIPTOR_LENGTH, UNKNOWN_NAME, Descriptor

LOGGER = logging.getLogger("facereco.store")


def _frozen_copy(array: np.ndarray) -> np.ndarray:
    arr = np.array(array, copy=True)
    if arr.ndim == 2 and arr.shape[0] == 1:
        arr = arr.reshape(-1)
    arr.setflags(write=False)
    return arr


class Track:
    """Descriptors of one continuous observation of a face."""

    def __init__(self, descriptors: Optional[List[Descriptor]] = None) -> None:
        self._descriptors: List[Descriptor] = []
        self._size_in_bytes = 0
        for descriptor in descriptors or []:
            self.add_descriptor(descriptor)

    @property
    def descriptor_count(self) -> int:
        return len(self._descriptors)

    @property
    def size(self) -> int:
        return self._size_in_bytes

    def __len__(self) -> int:
        return len(self._descriptors)

    def __iter__(self) -> Iterator[Descriptor]:
        return iter(self._descriptors)

    def add_descriptor(self, descriptor: Descriptor) -> int:
        descriptor_id = len(self._descriptors)
        stored = _frozen_copy(descriptor)
        if stored.shape != (DESCRIPTOR_LENGTH,):
            raise ValueError(f"Descriptor must hold {DESCRIPTOR_LENGTH} values, got shape {np.shape(descriptor)}")
        self._descriptors.append(stored)
        self._size_in_bytes += stored.nbytes
        return descriptor_id

    def get_descriptor(self, descriptor_id: int) -> Descriptor:
        if not 0 <= descriptor_id < len(self._descriptors):
            raise IndexError(f"Descriptor id {descriptor_id} out of range ({len(self._descriptors)})")
        return self._descriptors[descriptor_id]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Track):
            return NotImplemented
        if self._size_in_bytes != other._size_in_bytes or len(self) != len(other):
            return False
        return all(
            a.shape == b.shape and a.dtype == b.dtype and a.tobytes() == b.tobytes()
            for a, b in zip(self._descriptors, other._descriptors)
        )

    def __repr__(self) -> str:
        return f"Track(descriptors={len(self)}, size={self._size_in_bytes})"


class Person:
    """A (possibly unnamed) identity owning one or more tracks."""

    def __init__(self, name: str = UNKNOWN_NAME) -> None:
        self.name = name
        self._tracks: List[Track] = []
        self._descriptor_count = 0
        self._size_in_bytes = 0
        self._face_image: Optional[np.ndarray] = None

    @property
    def track_count(self) -> int:
        return len(self._tracks)

    @property
    def descriptor_count(self) -> int:
        return self._descriptor_count

    @property
    def size(self) -> int:
        return self._size_in_bytes

    @property
    def tracks(self) -> List[Track]:
        return list(self._tracks)

    @property
    def face_image(self) -> Optional[np.ndarray]:
        return self._face_image

    def get_track(self, track_id: int) -> Track:
        if not 0 <= track_id < len(self._tracks):
            raise IndexError(f"Track id {track_id} out of range ({len(self._tracks)})")
        return self._tracks[track_id]

    def add_track(self, track: Track) -> int:
        track_id = len(self._tracks)
        self._tracks.append(track)
        self._descriptor_count += track.descriptor_count
        self._size_in_bytes += track.size
        return track_id

    def add_descriptor(self, track_id: int, descriptor: Descriptor) -> int:
        track = self.get_track(track_id)
        before = track.size
        descriptor_id = track.add_descriptor(descriptor)
        self._descriptor_count += 1
        self._size_in_bytes += track.size - before
        return descriptor_id

    def set_face_image(self, image: Optional[np.ndarray], bgr: bool = True) -> None:
        """Store the representative face image as RGB (input is BGR by default)."""
        if image is None or np.asarray(image).size == 0:
            self._face_image = None
            return
        img = np.array(image, copy=True)
        if bgr and img.ndim == 3 and img.shape[2] == 3:
            img = cv2.cvtColor(img, cv2.COLOR_BGR2RGB)
        self._face_image = img

    def absorb(self, other: "Person") -> None:
        """Append every track of ``other`` to this person."""
        for track in other._tracks:
            self.add_track(track)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Person):
            return NotImplemented
        if (
            self._size_in_bytes != other._size_in_bytes
            or self._descriptor_count != other._descriptor_count
            or self.name != other.name
            or len(self._tracks) != len(other._tracks)
        ):
            return False
        a, b = self._face_image, other._face_image
        if (a is None) != (b is None):
            return False
        if a is not None and (a.shape != b.shape or a.tobytes() != b.tobytes()):
            return False
        return all(t1 == t2 for t1, t2 in zip(self._tracks, other._tracks))

    def __repr__(self) -> str:
        return (
            f"Person(name={self.name!r}, tracks={self.track_count}, "
            f"descriptors={self._descriptor_count}, size={self._size_in_bytes})"
        )


class Store:
    """Thread-safe identity database (a monitor object around a list of persons)."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._persons: List[Person] = []
        self._total_track_count = 0
        self._total_descriptor_count = 0
        self._size_in_bytes = 0

    @contextmanager
    def transaction(self) -> Iterator["Store"]:
        """Hold the store lock across several calls."""
        with self._lock:
            yield self

    def is_empty(self) -> bool:
        with self._lock:
            return not self._persons

    def person_count(self) -> int:
        with self._lock:
            return len(self._persons)

    def track_count(self, person_id: Optional[int] = None) -> int:
        with self._lock:
            if person_id is None:
                return self._total_track_count
            person = self._person_or_none(person_id)
            return person.track_count if person is not None else 0

    def descriptor_count(self, person_id: Optional[int] = None, track_id: Optional[int] = None) -> int:
        with self._lock:
            if person_id is None:
                return self._total_descriptor_count
            person = self._person_or_none(person_id)
            if person is None:
                return 0
            if track_id is None:
                return person.descriptor_count
            if 0 <= track_id < person.track_count:
                return person.get_track(track_id).descriptor_count
            return 0

    def size(self, person_id: Optional[int] = None) -> int:
        with self._lock:
            if person_id is None:
                return self._size_in_bytes
            person = self._person_or_none(person_id)
            return person.size if person is not None else 0

    def get_descriptor(self, person_id: int, track_id: int, descriptor_id: int) -> Descriptor:
        with self._lock:
            return self._person(person_id).get_track(track_id).get_descriptor(descriptor_id)

    def get_name(self, person_id: int) -> str:
        with self._lock:
            return self._person(person_id).name

    def rename_person(self, person_id: int, name: str) -> None:
        with self._lock:
            person = self._person(person_id)
            LOGGER.info("Renaming person %d: %r -> %r", person_id, person.name, name)
            person.name = name

    def get_face_image(self, person_id: int) -> Optional[np.ndarray]:
        with self._lock:
            return self._person(person_id).face_image

    def get_person(self, person_id: int) -> Person:
        with self._lock:
            return self._person(person_id)

    def persons(self) -> List[Person]:
        """Snapshot of the person list (the Person objects themselves are shared)."""
        with self._lock:
            return list(self._persons)

    def add_person(self, person: Person) -> int:
        if person.descriptor_count == 0:
            raise ValueError("A person must hold at least one descriptor")
        with self._lock:
            self._total_track_count += person.track_count
            self._total_descriptor_count += person.descriptor_count
            self._size_in_bytes += person.size
            person_id = len(self._persons)
            self._persons.append(person)
            return person_id

    def add_track(self, person_id: int, track: Track) -> int:
        with self._lock:
            person = self._person(person_id)
            self._total_track_count += 1
            self._total_descriptor_count += track.descriptor_count
            self._size_in_bytes += track.size
            return person.add_track(track)

    def add_descriptor(self, person_id: int, track_id: int, descriptor: Descriptor) -> int:
        with self._lock:
            person = self._person(person_id)
            before = person.size
            descriptor_id = person.add_descriptor(track_id, descriptor)
            self._total_descriptor_count += 1
            self._size_in_bytes += person.size - before
            return descriptor_id

    def merge_persons(self, person_id1: int, person_id2: int) -> int:
        """Move every track of ``person_id2`` onto ``person_id1`` and drop ``person_id2``.

        Returns the id of the merged person after removal (ids above the removed
        index shift down by one).
        """
        with self._lock:
            if person_id1 == person_id2:
                raise ValueError(f"Cannot merge person {person_id1} with itself")
            target = self._person(person_id1)
            source = self._person(person_id2)
            target.absorb(source)
            del self._persons[person_id2]
            merged_id = person_id1 if person_id2 > person_id1 else person_id1 - 1
            LOGGER.info(
                "Merged person %d into %d -> id %d (%d tracks, %d descriptors)",
                person_id2,
                person_id1,
                merged_id,
                target.track_count,
                target.descriptor_count,
            )
            return merged_id

    def clear(self) -> None:
        with self._lock:
            self._persons = []
            self._total_track_count = 0
            self._total_descriptor_count = 0
            self._size_in_bytes = 0
        LOGGER.info("Database cleared.")

    def save(self, path: Path) -> bool:
        """Write the database to ``path``. Returns False if it could not be written."""
        from facereco.store.persistence import save_store

        path = Path(path)
        with self._lock:
            try:
                save_store(self, path)
            except (OSError, ValueError) as exc:
                LOGGER.error("Failed to save database to file %s: %s", path, exc)
                return False
        LOGGER.info("Database saved to file: %s", path)
        return True

    def load(self, path: Path) -> bool:
        """Replace the contents with the database stored at ``path``.

        The file is parsed into a temporary store first; on any failure the
        current contents are left untouched and False is returned.
        """
        from facereco.store.persistence import StoreFormatError, load_store

        path = Path(path)
        try:
            loaded = load_store(path)
        except (OSError, StoreFormatError) as exc:
            LOGGER.error("Failed to load database from file %s: %s", path, exc)
            return False
        self.replace_contents(loaded)
        LOGGER.info(
            "Database loaded from file: %s (%d persons, %d tracks, %d descriptors)",
            path,
            self.person_count(),
            self.track_count(),
            self.descriptor_count(),
        )
        return True

    def replace_contents(self, other: "Store") -> None:
        """Swap in the persons and counters of ``other``."""
        with other._lock:
            persons = list(other._persons)
            totals = (other._total_track_count, other._total_descriptor_count, other._size_in_bytes)
        with self._lock:
            self._persons = persons
            self._total_track_count, self._total_descriptor_count, self._size_in_bytes = totals

    def summary(self) -> pd.DataFrame:
        """One row per person: id, name, track/descriptor counts and byte size."""
        with self._lock:
            rows = [
                {
                    "person_id": person_id,
                    "name": person.name,
                    "tracks": person.track_count,
                    "descriptors": person.descriptor_count,
                    "size_bytes": person.size,
                    "has_face_image": person.face_image is not None,
                }
                for person_id, person in enumerate(self._persons)
            ]
        columns = ["person_id", "name", "tracks", "descriptors", "size_bytes", "has_face_image"]
        return pd.DataFrame(rows, columns=columns)

    def _person(self, person_id: int) -> Person:
        if not 0 <= person_id < len(self._persons):
            raise IndexError(f"Person id {person_id} out of range ({len(self._persons)})")
        return self._persons[person_id]

    def _person_or_none(self, person_id: int) -> Optional[Person]:
        if 0 <= person_id < len(self._persons):
            return self._persons[person_id]
        return None

    def __len__(self) -> int:
        return self.person_count()

    def __repr__(self) -> str:
        return (
            f"Store(persons={self.person_count()}, tracks={self.track_count()}, "
            f"descriptors={self.descriptor_count()}, size={self.size()})"
        )
