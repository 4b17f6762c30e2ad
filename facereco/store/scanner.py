"""Round-robin traversal visiting every stored descriptor once per pass."""

from __future__ import annotations

import logging
from typing import List, Optional

from facereco.store.database import Store
from facereco.types import Indices

LOGGER = logging.getLogger("facereco.store.scanner")


class FairScanner:
    """Interleaves persons, and tracks within a person, one descriptor at a time.

    The store must hold at least one person, every person at least one track and
    every track at least one descriptor. Counts are snapshotted on ``reset()``;
    descriptors appended during a pass are picked up by the next one.

    Returning to ``(0, 0, 0)`` after ``advance()`` means every descriptor of the
    snapshot has been visited exactly once.
    """

    def __init__(self, store: Store) -> None:
        self._store = store
        self._person_id = 0
        # Per person: active track id, or None once every track is exhausted.
        self._active_tracks: List[Optional[int]] = []
        # Per person, per track: next descriptor id to visit.
        self._cursors: List[List[int]] = []
        self._limits: List[List[int]] = []
        self.passes_completed = 0
        self.reset()

    def reset(self) -> None:
        with self._store.transaction():
            person_count = self._store.person_count()
            if person_count == 0:
                raise ValueError("Cannot scan an empty store")
            limits = []
            for person_id in range(person_count):
                track_count = self._store.track_count(person_id)
                counts = [self._store.descriptor_count(person_id, t) for t in range(track_count)]
                if not counts or min(counts) == 0:
                    raise ValueError(f"Person {person_id} has an empty track list or an empty track")
                limits.append(counts)
        self._person_id = 0
        self._limits = limits
        self._cursors = [[0] * len(counts) for counts in limits]
        self._active_tracks = [0] * len(limits)

    def current(self) -> Indices:
        track_id = self._active_tracks[self._person_id]
        return self._person_id, track_id, self._cursors[self._person_id][track_id]

    def is_at_start(self) -> bool:
        return self.current() == (0, 0, 0)

    def advance(self) -> None:
        person_id = self._person_id
        track_id = self._active_tracks[person_id]
        cursors = self._cursors[person_id]
        limits = self._limits[person_id]

        cursors[track_id] += 1

        track_count = len(cursors)
        if track_count > 1:
            next_track = track_id
            while True:
                next_track = (next_track + 1) % track_count
                if cursors[next_track] < limits[next_track]:
                    self._active_tracks[person_id] = next_track
                    break
                if next_track == track_id:
                    self._active_tracks[person_id] = None
                    break
        elif cursors[track_id] >= limits[track_id]:
            self._active_tracks[person_id] = None

        person_count = len(self._cursors)
        if person_count > 1:
            next_person = person_id
            while True:
                next_person = (next_person + 1) % person_count
                if self._active_tracks[next_person] is not None:
                    self._person_id = next_person
                    break
                if next_person == person_id:
                    self._finish_pass()
                    break
        elif self._active_tracks[person_id] is None:
            self._finish_pass()

    def _finish_pass(self) -> None:
        self.passes_completed += 1
        LOGGER.debug("Scanner pass %d complete", self.passes_completed)
        self.reset()
