"""Incremental commit of descriptors into the identity store."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from facereco.store.database import Person, Store, Track
from facereco.types import UNKNOWN_NAME, Descriptor
from facereco.workers.base import CooperativeWorker, PendingQueue

LOGGER = logging.getLogger("facereco.workers.writer")


class TargetKind(enum.Enum):
    NEW_PERSON = "new_person"
    NEW_TRACK = "new_track"
    EXISTING = "existing"


@dataclass(frozen=True)
class WriteTarget:
    """Where a writing session commits descriptors.

    ``person_id == person_count`` means "create a person" and
    ``track_id == track_count(person_id)`` means "create a track". The target
    is resolved against the store on every write: once the first descriptor
    created the person (or track), the very same ids point at it, so later
    descriptors are appended to it.
    """

    person_id: int
    track_id: int

    def resolve(self, store: Store) -> TargetKind:
        person_count = store.person_count()
        if self.person_id == person_count:
            return TargetKind.NEW_PERSON
        if not 0 <= self.person_id < person_count:
            raise ValueError(f"Write target person {self.person_id} out of range (person count {person_count})")
        track_count = store.track_count(self.person_id)
        if self.track_id == track_count:
            return TargetKind.NEW_TRACK
        if not 0 <= self.track_id < track_count:
            raise ValueError(
                f"Write target track {self.track_id} out of range for person {self.person_id} "
                f"(track count {track_count})"
            )
        return TargetKind.EXISTING


class DescriptorWriter(CooperativeWorker):
    """Writes one queued descriptor per step into the store.

    Events:
        ``person_added(person_id)``, ``track_added(person_id)``,
        ``descriptor_added(person_id)``, ``writing_done()``
    """

    name = "descriptor-writer"
    EVENTS = ("person_added", "track_added", "descriptor_added", "writing_done")

    def __init__(self, store: Store, new_person_name: str = UNKNOWN_NAME, poll_interval_s: float = 0.002) -> None:
        super().__init__(poll_interval_s=poll_interval_s)
        self.store = store
        self.new_person_name = new_person_name
        self._descriptors: PendingQueue[Descriptor] = PendingQueue()
        self._face_images: PendingQueue[np.ndarray] = PendingQueue()
        self._writing = False
        self._target: Optional[WriteTarget] = None
        self._stop_when_empty = False

    # -- public API (any thread) ------------------------------------------
    def push_descriptor(self, descriptor: Descriptor) -> None:
        self._descriptors.push(descriptor)

    def push_face_image(self, face_image: np.ndarray) -> None:
        self._face_images.push(face_image)

    def pending_count(self) -> int:
        return len(self._descriptors)

    def start_continuous_writing(self, person_id: int, track_id: int) -> None:
        """Keep writing queued descriptors to the target until stopped.

        Pass the current person count to create a new person, or the person's
        track count to create a new track.
        """
        self._post(self._handle_start, WriteTarget(person_id, track_id), False)

    def start_queue_drain_writing(self, person_id: int, track_id: int) -> None:
        """Write everything queued, then stop and emit ``writing_done``."""
        self._post(self._handle_start, WriteTarget(person_id, track_id), True)

    def stop(self) -> None:
        """Halt writing and drop queued descriptors (queued face images are kept).

        The queue is emptied right away; descriptors pushed afterwards wait for
        the next session.
        """
        dropped = self._descriptors.clear()
        if dropped:
            LOGGER.debug("Writer stopped, %d queued descriptors dropped", dropped)
        self._post(self._handle_stop)

    @property
    def active(self) -> bool:
        return self._writing

    @property
    def target(self) -> Optional[WriteTarget]:
        return self._target

    # -- control handlers ---------------------------------------------------
    def _handle_start(self, target: WriteTarget, stop_when_empty: bool) -> None:
        self._target = target
        self._stop_when_empty = stop_when_empty
        self._writing = True
        LOGGER.debug("Writing started: %s (drain=%s)", target, stop_when_empty)

    def _handle_stop(self) -> None:
        self._writing = False

    def _abort(self) -> None:
        self._descriptors.clear()
        self._writing = False

    # -- step --------------------------------------------------------------
    def _step(self) -> bool:
        target = self._target
        if target is None:
            raise RuntimeError("Write step without a write target")

        descriptor = self._descriptors.pop()
        if descriptor is None:
            if self._stop_when_empty:
                self._writing = False
                self._emit("writing_done")
                return True
            return False

        with self.store.transaction():
            kind = target.resolve(self.store)
            if kind is TargetKind.NEW_PERSON:
                person = Person(self.new_person_name)
                person.add_track(Track([descriptor]))
                person.set_face_image(self._face_images.pop())
                person_id = self.store.add_person(person)
            elif kind is TargetKind.NEW_TRACK:
                person_id = target.person_id
                self.store.add_track(person_id, Track([descriptor]))
            else:
                person_id = target.person_id
                self.store.add_descriptor(person_id, target.track_id, descriptor)

        if kind is TargetKind.NEW_PERSON:
            LOGGER.info("Person %d added", person_id)
            self._emit("person_added", person_id)
        elif kind is TargetKind.NEW_TRACK:
            LOGGER.debug("Track %d added to person %d", target.track_id, person_id)
            self._emit("track_added", person_id)
        else:
            self._emit("descriptor_added", person_id)
        return True
