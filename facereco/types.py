"""Common dataclasses, constants and type aliases used across the facereco package."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

# Descriptor layout: 39 retained spatial patches x 59 uniform-pattern bins.
NUM_PATTERNS = 59
NUM_PATCHES = 39
DESCRIPTOR_LENGTH = NUM_PATCHES * NUM_PATTERNS

# Distance reported for malformed descriptors ("definitely not a match").
MAX_DISTANCE = float(np.finfo(np.float32).max)

# Person id recorded for a query that matched nobody during a full pass.
INVALID_ID = 0xFFFFFFFF

UNKNOWN_NAME = "<unknown>"

Descriptor = np.ndarray
# (person_id, track_id, descriptor_id)
Indices = Tuple[int, int, int]
# (distance, person_id) recorded per resolved query
QueryResult = Tuple[float, int]


@dataclass(frozen=True)
class SearchOutcome:
    """Decision reported by the search engine when a session finalizes."""

    found: bool
    person_id: Optional[int]
    search_time_ms: int
    queries_resolved: int
    comparisons: int

    def to_dict(self) -> dict:
        return {
            "found": self.found,
            "person_id": self.person_id,
            "search_time_ms": self.search_time_ms,
            "queries_resolved": self.queries_resolved,
            "comparisons": self.comparisons,
        }


@dataclass
class RecognitionResult:
    """Per-track identity decision kept by the track recognizer."""

    track_index: int
    person_id: Optional[int]
    is_new_person: bool
    search_time_ms: int
    queries_resolved: int
    comparisons: int

    @property
    def label(self) -> str:
        if self.person_id is None:
            return "NOT FOUND"
        if self.is_new_person:
            return f"{self.person_id} (NEW)"
        return str(self.person_id)

    def to_dict(self) -> dict:
        return {
            "track_index": self.track_index,
            "person_id": self.person_id,
            "is_new_person": self.is_new_person,
            "label": self.label,
            "search_time_ms": self.search_time_ms,
            "queries_resolved": self.queries_resolved,
            "comparisons": self.comparisons,
        }


def as_descriptor(values) -> Descriptor:
    """Return a read-only float32 row vector copy of ``values``."""
    arr = np.array(values, dtype=np.float32, copy=True).reshape(-1)
    arr.setflags(write=False)
    return arr


def max_vector_length(delta: np.ndarray) -> float:
    """Return the longest 2D displacement in an (N, 2) landmark delta array."""
    delta = np.asarray(delta, dtype=np.float64).reshape(-1, 2)
    if delta.size == 0:
        return 0.0
    return float(np.linalg.norm(delta, axis=1).max())


def format_size(size_in_bytes: int) -> str:
    """Human-readable size in decimal units (kB below 1 MB, then MB, then GB)."""
    if size_in_bytes < 1_000_000:
        return f"{size_in_bytes / 1000:.1f} kB"
    if size_in_bytes < 1_000_000_000:
        return f"{size_in_bytes / 1_000_000:.1f} MB"
    return f"{size_in_bytes / 1_000_000_000:.1f} GB"
