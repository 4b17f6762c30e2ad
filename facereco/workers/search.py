"""Incremental nearest-descriptor search over the identity store."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from facereco.descriptors.lbp import distance
from facereco.store.database import Store
from facereco.store.scanner import FairScanner
from facereco.types import INVALID_ID, Descriptor, QueryResult, SearchOutcome
from facereco.workers.base import CooperativeWorker, PendingQueue

LOGGER = logging.getLogger("facereco.workers.search")

# Distance below which two descriptors are considered the same person. Larger
# values pick wrong persons more often; smaller values find nobody more often.
DEFAULT_DISTANCE_THRESHOLD = 0.37


@dataclass(frozen=True)
class SearchPolicy:
    """Termination policy of a search session.

    Count-bounded sessions stop once ``query_count`` queries are resolved.
    Time-bounded sessions stop after ``max_ms``, or after ``min_ms`` as soon as
    any query matched.
    """

    time_bounded: bool
    query_count: int = 0
    min_ms: int = 0
    max_ms: int = 0

    @classmethod
    def count_bounded(cls, query_count: int) -> "SearchPolicy":
        if query_count <= 0:
            raise ValueError(f"query_count must be positive, got {query_count}")
        return cls(time_bounded=False, query_count=query_count)

    @classmethod
    def time_bounded_ms(cls, min_ms: int, max_ms: int) -> "SearchPolicy":
        if min_ms < 0 or max_ms < 0:
            raise ValueError(f"Search times must be non-negative, got min={min_ms} max={max_ms}")
        return cls(time_bounded=True, min_ms=min_ms, max_ms=max_ms)


class SearchEngine(CooperativeWorker):
    """Drains queued query descriptors against the store, one comparison per step.

    Events:
        ``match_found(person_id, search_time_ms, queries_resolved, comparisons)``
        ``match_not_found(search_time_ms, queries_resolved, comparisons)``
    """

    name = "search-engine"
    EVENTS = ("match_found", "match_not_found")

    def __init__(
        self,
        store: Store,
        threshold: float = DEFAULT_DISTANCE_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
        poll_interval_s: float = 0.002,
    ) -> None:
        super().__init__(poll_interval_s=poll_interval_s)
        self.store = store
        self._threshold = float(threshold)
        self._clock = clock
        self._queries: PendingQueue[Descriptor] = PendingQueue()

        self._searching = False
        self._policy: Optional[SearchPolicy] = None
        self._query: Optional[Descriptor] = None
        self._scanner: Optional[FairScanner] = None
        self._results: List[QueryResult] = []
        self._comparisons = 0
        self._result_found = False
        self._started_at = 0.0
        self.last_outcome: Optional[SearchOutcome] = None

    # -- public API (any thread) ------------------------------------------
    @property
    def threshold(self) -> float:
        return self._threshold

    def set_threshold(self, threshold: float) -> None:
        self._post(self._handle_set_threshold, float(threshold))

    def push_descriptor(self, descriptor: Descriptor) -> None:
        self._queries.push(descriptor)

    def pending_count(self) -> int:
        return len(self._queries)

    def start_count_bounded(self, query_count: int) -> None:
        """Search until ``query_count`` queued descriptors are resolved."""
        self._post(self._handle_start, SearchPolicy.count_bounded(query_count))

    def start_time_bounded(self, min_ms: int, max_ms: int) -> None:
        """Search for at least ``min_ms`` (if something matched) and at most ``max_ms``."""
        self._post(self._handle_start, SearchPolicy.time_bounded_ms(min_ms, max_ms))

    def stop(self, finalize: bool = False) -> None:
        """Stop the session; when ``finalize`` is set, report the partial results.

        Queued queries are dropped right away, so descriptors pushed after this
        call belong to the next session.
        """
        self._queries.clear()
        self._post(self._handle_stop, finalize)

    @property
    def active(self) -> bool:
        return self._searching

    # -- control handlers (worker thread) ---------------------------------
    def _handle_set_threshold(self, threshold: float) -> None:
        LOGGER.info("Distance threshold %.3f -> %.3f", self._threshold, threshold)
        self._threshold = threshold

    def _handle_start(self, policy: SearchPolicy) -> None:
        if self.store.is_empty():
            self._searching = False
            self._queries.clear()
            LOGGER.debug("Search requested on an empty database")
            self._report(SearchOutcome(False, None, 0, 0, 0))
            return

        self._policy = policy
        self._searching = True
        self._result_found = False
        self._comparisons = 0
        self._query = None
        self._scanner = FairScanner(self.store)
        self._results = []
        self._started_at = self._clock()
        LOGGER.debug("Search started: %s", policy)

    def _handle_stop(self, finalize: bool) -> None:
        if not self._searching:
            return
        if finalize:
            self._analyze_results()
        self._searching = False

    def _abort(self) -> None:
        self._queries.clear()
        self._searching = False
        self._query = None

    # -- step --------------------------------------------------------------
    def _elapsed_ms(self) -> int:
        return int((self._clock() - self._started_at) * 1000.0)

    def _step(self) -> bool:
        policy = self._policy
        if policy is None or self._scanner is None:
            raise RuntimeError("Search step without an active search session")

        if policy.time_bounded:
            elapsed = self._elapsed_ms()
            if elapsed > policy.max_ms or (elapsed > policy.min_ms and self._result_found):
                self._handle_stop(True)
                return True

        if self._query is None:
            self._query = self._queries.pop()
            if self._query is None:
                return False
            self._scanner.reset()

        person_id, track_id, descriptor_id = self._scanner.current()
        stored = self.store.get_descriptor(person_id, track_id, descriptor_id)
        dist = distance(stored, self._query)
        self._comparisons += 1
        self._scanner.advance()

        resolved = False
        if dist < self._threshold:
            self._results.append((dist, person_id))
            self._result_found = True
            resolved = True
        elif self._scanner.is_at_start():
            # Full pass without a match for this query.
            self._results.append((float("inf"), INVALID_ID))
            resolved = True

        if resolved:
            if not policy.time_bounded and len(self._results) == policy.query_count:
                self._handle_stop(True)
                return True
            self._query = None
        return True

    # -- finalize ------------------------------------------------------------
    def _analyze_results(self) -> None:
        search_time = self._elapsed_ms()
        queries_resolved = len(self._results)

        min_distance = float("inf")
        person_id = INVALID_ID
        for dist, candidate in self._results:
            if dist < min_distance:
                min_distance = dist
                person_id = candidate

        if person_id == INVALID_ID:
            outcome = SearchOutcome(False, None, search_time, queries_resolved, self._comparisons)
        else:
            outcome = SearchOutcome(True, person_id, search_time, queries_resolved, self._comparisons)
            LOGGER.debug("Best match person=%d distance=%.4f", person_id, min_distance)
        self._queries.clear()
        self._report(outcome)

    def _report(self, outcome: SearchOutcome) -> None:
        self.last_outcome = outcome
        LOGGER.info(
            "Search result: %s, search time: %d ms, queries: %d, comparisons: %d",
            outcome.person_id if outcome.found else "NOT FOUND",
            outcome.search_time_ms,
            outcome.queries_resolved,
            outcome.comparisons,
        )
        if outcome.found:
            self._emit(
                "match_found",
                outcome.person_id,
                outcome.search_time_ms,
                outcome.queries_resolved,
                outcome.comparisons,
            )
        else:
            self._emit(
                "match_not_found",
                outcome.search_time_ms,
                outcome.queries_resolved,
                outcome.comparisons,
            )
