"""Recognition configuration (dataclass defaults, YAML overrides)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from facereco.io_utils import load_yaml
from facereco.types import UNKNOWN_NAME
from facereco.workers.search import DEFAULT_DISTANCE_THRESHOLD

LOGGER = logging.getLogger("facereco.config")

MODE_LEARN = "learn"
MODE_RECOGNIZE = "recognize"
MODE_TEST = "test"
MODES = (MODE_LEARN, MODE_RECOGNIZE, MODE_TEST)

POLICY_TIME = "time"
POLICY_COUNT = "count"


@dataclass
class RecognizerConfig:
    # learn: recognize and add to the database; recognize: lookup only;
    # test: search every frame of a track, report when the track is lost.
    mode: str = MODE_LEARN
    distance_threshold: float = DEFAULT_DISTANCE_THRESHOLD
    search_policy: str = POLICY_TIME
    min_search_ms: int = 1000
    max_search_ms: int = 1000
    search_query_count: int = 5
    # Key frame when some landmark moved farther than this since the last key frame.
    landmark_delta_threshold: float = 0.03
    # Report a result even for tracks lost before the search finished.
    show_short_tracks: bool = True
    new_person_name: str = UNKNOWN_NAME
    poll_interval_s: float = 0.002

    def __post_init__(self) -> None:
        if self.mode not in MODES:
            raise ValueError(f"Unknown mode {self.mode!r}; expected one of {MODES}")
        if self.search_policy not in (POLICY_TIME, POLICY_COUNT):
            raise ValueError(f"Unknown search policy {self.search_policy!r}")
        if self.min_search_ms < 0 or self.max_search_ms < 0:
            raise ValueError("Search times must be non-negative")
        if self.search_query_count < 1:
            raise ValueError("search_query_count must be at least 1")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], **overrides: Any) -> "RecognizerConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            LOGGER.warning("Ignoring unknown config keys: %s", unknown)
        values: Dict[str, Any] = {k: v for k, v in data.items() if k in known}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def load_config(path: Optional[Path], **overrides: Any) -> RecognizerConfig:
    """Read ``path`` (if it exists) and apply non-None ``overrides`` on top."""
    data: Dict[str, Any] = {}
    if path is not None:
        if path.exists():
            data = load_yaml(path)
        else:
            LOGGER.warning("Config %s not found; using defaults", path)
    return RecognizerConfig.from_mapping(data, **overrides)
