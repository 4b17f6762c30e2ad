"""Per-track recognition: feeds the search engine and the writer for one face track at a time."""

from __future__ import annotations

import logging
import sys
import threading
from typing import List, Optional

import numpy as np

from facereco.config import MODE_LEARN, MODE_TEST, POLICY_COUNT, RecognizerConfig
from facereco.descriptors.lbp import encode, preprocess_face
from facereco.store.database import Store
from facereco.types import Descriptor, RecognitionResult, max_vector_length
from facereco.workers.search import SearchEngine
from facereco.workers.writer import DescriptorWriter

LOGGER = logging.getLogger("facereco.pipeline.recognizer")


class TrackRecognizer:
    """Turns aligned face crops of consecutive tracks into identity decisions.

    Every frame of an undecided track is queued for search. Key frames are
    buffered until the decision arrives; in learn mode they are then written to
    the matched person (as a new track) or to a newly created person, and later
    key frames of the same track go straight to the writer.
    """

    def __init__(
        self,
        store: Store,
        config: Optional[RecognizerConfig] = None,
        search_engine: Optional[SearchEngine] = None,
        writer: Optional[DescriptorWriter] = None,
    ) -> None:
        self.config = config or RecognizerConfig()
        self.store = store
        self.search = search_engine or SearchEngine(
            store,
            threshold=self.config.distance_threshold,
            poll_interval_s=self.config.poll_interval_s,
        )
        self.writer = writer or DescriptorWriter(
            store,
            new_person_name=self.config.new_person_name,
            poll_interval_s=self.config.poll_interval_s,
        )
        self.search.connect("match_found", self._on_match_found)
        self.search.connect("match_not_found", self._on_match_not_found)

        self._lock = threading.RLock()
        self._decision = threading.Event()
        self.results: List[RecognitionResult] = []
        self.frames_skipped = 0
        self.track_index = -1

        self._track_frame_index = 0
        self._searching = False
        self._writing = False
        self._search_done = False
        self._awaiting_decision = False
        self._buffer: List[Descriptor] = []
        self._last_key_landmarks: Optional[np.ndarray] = None
        self._track_face: Optional[np.ndarray] = None

    # -- lifecycle ------------------------------------------------------------
    def start(self) -> None:
        """Run the search engine and the writer on background threads."""
        self.search.start_thread()
        self.writer.start_thread()

    def shutdown(self) -> None:
        self.search.stop()
        self.writer.stop()
        self.search.shutdown()
        self.writer.shutdown()

    def run_workers_until_idle(self) -> None:
        """Drive both workers on the calling thread until neither can progress."""
        while True:
            progressed = self.search.run_until_idle()
            progressed += self.writer.run_until_idle()
            if not progressed:
                return

    @property
    def is_writing(self) -> bool:
        with self._lock:
            return self._writing

    @property
    def search_done(self) -> bool:
        with self._lock:
            return self._search_done

    def wait_for_decision(self, timeout: Optional[float] = None) -> bool:
        return self._decision.wait(timeout)

    # -- frame input ------------------------------------------------------------
    def process_face(self, aligned_face: np.ndarray, landmarks: Optional[np.ndarray] = None) -> Optional[Descriptor]:
        """Handle one aligned face crop (BGR or grayscale) of the current track.

        ``landmarks`` are optional aligned (N, 2) landmark coordinates used to pick
        key frames. Returns the descriptor, or None when the frame was skipped.
        """
        try:
            descriptor = encode(preprocess_face(aligned_face))
        except ValueError as exc:
            self.frames_skipped += 1
            LOGGER.warning("Skipping frame of track %d: %s", max(self.track_index, 0), exc)
            return None

        if self._awaiting_decision and self.search.running:
            # Hold until the previous track's search reports back.
            if not self.wait_for_decision(timeout=self.config.max_search_ms / 1000.0 + 1.0):
                LOGGER.warning("Previous track's search did not report back in time")

        with self._lock:
            if self._track_frame_index == 0:
                self._begin_track(aligned_face)

            if not self._search_done:
                self.search.push_descriptor(descriptor)
                if not self._searching:
                    self._start_search()
                    self._searching = True

            if self._is_key_frame(landmarks):
                if self._writing:
                    self.writer.push_descriptor(descriptor)
                else:
                    self._buffer.append(descriptor)
                if landmarks is not None:
                    self._last_key_landmarks = np.array(landmarks, dtype=np.float64, copy=True)

            self._track_frame_index += 1
        return descriptor

    def track_lost(self) -> None:
        """Close the current track: stop searching (reporting if configured) and writing."""
        with self._lock:
            if self._track_frame_index == 0:
                return
            self._track_frame_index = 0
            finalize = self.config.show_short_tracks or self.config.mode == MODE_TEST
            if finalize and self._searching and not self._search_done:
                self._awaiting_decision = True
            LOGGER.debug("Track %d lost (finalize=%s)", self.track_index, finalize)
            self.search.stop(finalize)
            self.writer.stop()

    def _begin_track(self, aligned_face: np.ndarray) -> None:
        self.track_index += 1
        self._searching = False
        self._writing = False
        self._search_done = False
        self._awaiting_decision = False
        self._buffer = []
        self._last_key_landmarks = None
        self._track_face = np.array(aligned_face, copy=True)
        self._decision.clear()
        LOGGER.debug("Track %d started", self.track_index)

    def _start_search(self) -> None:
        cfg = self.config
        if cfg.mode == MODE_TEST:
            # Every frame of the track takes part; the track loss finalizes.
            self.search.start_count_bounded(sys.maxsize)
        elif cfg.search_policy == POLICY_COUNT:
            self.search.start_count_bounded(cfg.search_query_count)
        else:
            self.search.start_time_bounded(cfg.min_search_ms, cfg.max_search_ms)

    def _is_key_frame(self, landmarks: Optional[np.ndarray]) -> bool:
        if self._track_frame_index == 0 or landmarks is None or self._last_key_landmarks is None:
            return True
        current = np.asarray(landmarks, dtype=np.float64)
        if current.shape != self._last_key_landmarks.shape:
            return True
        return max_vector_length(current - self._last_key_landmarks) > self.config.landmark_delta_threshold

    # -- search callbacks (search engine thread) ---------------------------------
    def _on_match_found(self, person_id: int, search_time_ms: int, queries_resolved: int, comparisons: int) -> None:
        with self._lock:
            self._search_done = True
            self._searching = False
            self._awaiting_decision = False
            result = RecognitionResult(
                track_index=self.track_index,
                person_id=person_id,
                is_new_person=False,
                search_time_ms=search_time_ms,
                queries_resolved=queries_resolved,
                comparisons=comparisons,
            )
            self.results.append(result)

            if self.config.mode == MODE_LEARN:
                for descriptor in self._buffer:
                    self.writer.push_descriptor(descriptor)
                self._start_writing(person_id, self.store.track_count(person_id))
                self._writing = True
            self._buffer = []
        self._log_result(result)
        self._decision.set()

    def _on_match_not_found(self, search_time_ms: int, queries_resolved: int, comparisons: int) -> None:
        with self._lock:
            self._search_done = True
            self._searching = False
            self._awaiting_decision = False
            learn = self.config.mode == MODE_LEARN
            person_id = self.store.person_count() if learn else None
            result = RecognitionResult(
                track_index=self.track_index,
                person_id=person_id,
                is_new_person=learn,
                search_time_ms=search_time_ms,
                queries_resolved=queries_resolved,
                comparisons=comparisons,
            )
            self.results.append(result)

            if learn:
                if self._track_face is not None:
                    self.writer.push_face_image(self._track_face)
                for descriptor in self._buffer:
                    self.writer.push_descriptor(descriptor)
                self._start_writing(person_id, 0)
                self._writing = True
            self._buffer = []
        self._log_result(result)
        self._decision.set()

    def _start_writing(self, person_id: int, track_id: int) -> None:
        if self._track_frame_index == 0:
            # Decision for a track that is already gone: write its buffer and stop.
            self.writer.start_queue_drain_writing(person_id, track_id)
        else:
            self.writer.start_continuous_writing(person_id, track_id)

    @staticmethod
    def _log_result(result: RecognitionResult) -> None:
        LOGGER.info(
            "%d: label: %s, search time: %d ms, hm: %d, hc: %d",
            result.track_index,
            result.label,
            result.search_time_ms,
            result.queries_resolved,
            result.comparisons,
        )
