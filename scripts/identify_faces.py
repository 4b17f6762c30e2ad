#!/usr/bin/env python3
"""Identify face tracks against a facereco database (and learn new persons).

Each subdirectory of ``tracks_dir`` is one face track: its aligned face crops in
lexicographic order, optionally with a ``landmarks.npy`` array of shape
(frames, N, 2) holding the aligned landmark positions used to pick key frames.
"""

from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from tqdm import tqdm

from facereco.config import MODE_LEARN, MODES, POLICY_COUNT, POLICY_TIME, RecognizerConfig, load_config
from facereco.io_utils import dump_json, ensure_dir, list_images, list_subdirs, read_image, setup_logging
from facereco.pipeline.recognizer import TrackRecognizer
from facereco.store.database import Store

LOGGER = logging.getLogger("scripts.identify")

LANDMARKS_FILE = "landmarks.npy"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recognize face tracks against a face database")
    parser.add_argument("tracks_dir", type=Path, help="Directory with one subdirectory of face crops per track")
    parser.add_argument("--db", type=Path, default=Path("data/faces.db"), help="Database file")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/facereco.yaml"),
        help="Recognizer config YAML",
    )
    parser.add_argument("--mode", choices=MODES, default=None, help="Override config mode")
    parser.add_argument("--threshold", type=float, default=None, help="Override distance threshold")
    parser.add_argument(
        "--search-policy",
        choices=(POLICY_TIME, POLICY_COUNT),
        default=None,
        help="Override search termination policy",
    )
    parser.add_argument("--min-search-ms", type=int, default=None)
    parser.add_argument("--max-search-ms", type=int, default=None)
    parser.add_argument("--search-query-count", type=int, default=None)
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("data/outputs/identify_results.csv"),
        help="CSV file receiving one row per track",
    )
    parser.add_argument(
        "--threaded",
        action="store_true",
        help="Run search and writing on background threads instead of in-line",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> RecognizerConfig:
    return load_config(
        args.config,
        mode=args.mode,
        distance_threshold=args.threshold,
        search_policy=args.search_policy,
        min_search_ms=args.min_search_ms,
        max_search_ms=args.max_search_ms,
        search_query_count=args.search_query_count,
    )


def load_landmarks(track_dir: Path, frame_count: int) -> Optional[np.ndarray]:
    path = track_dir / LANDMARKS_FILE
    if not path.exists():
        return None
    landmarks = np.load(path)
    if landmarks.ndim != 3 or landmarks.shape[0] != frame_count or landmarks.shape[2] != 2:
        LOGGER.warning("Ignoring %s with shape %s (expected (%d, N, 2))", path, landmarks.shape, frame_count)
        return None
    return landmarks


def _wait_until_idle(recognizer: TrackRecognizer, timeout_s: float) -> None:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        busy = (
            recognizer.search.pending_count()
            or recognizer.writer.pending_count()
            or recognizer.search.active
        )
        if not busy:
            return
        time.sleep(0.01)
    LOGGER.warning("Workers still busy after %.1f s", timeout_s)


def process_track(recognizer: TrackRecognizer, track_dir: Path, threaded: bool) -> bool:
    """Feed every frame of ``track_dir`` and close the track. Returns False if no frame was usable."""
    images = list_images(track_dir)
    landmarks = load_landmarks(track_dir, len(images))
    used = 0
    for index, path in enumerate(images):
        try:
            face = read_image(path)
        except FileNotFoundError as exc:
            LOGGER.warning("%s", exc)
            continue
        frame_landmarks = landmarks[index] if landmarks is not None else None
        if recognizer.process_face(face, frame_landmarks) is not None:
            used += 1
        if not threaded:
            recognizer.run_workers_until_idle()

    recognizer.track_lost()
    if not threaded:
        recognizer.run_workers_until_idle()
    return used > 0


def results_table(recognizer: TrackRecognizer, track_names: Dict[int, str]) -> pd.DataFrame:
    rows = []
    for result in recognizer.results:
        row = result.to_dict()
        row["track"] = track_names.get(result.track_index, "")
        person_id = result.person_id
        if person_id is not None and person_id < recognizer.store.person_count():
            row["name"] = recognizer.store.get_name(person_id)
        else:
            row["name"] = None
        rows.append(row)
    columns = [
        "track_index",
        "track",
        "label",
        "person_id",
        "name",
        "is_new_person",
        "search_time_ms",
        "queries_resolved",
        "comparisons",
    ]
    return pd.DataFrame(rows, columns=columns)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    if not args.tracks_dir.is_dir():
        raise SystemExit(f"Tracks directory not found: {args.tracks_dir}")
    config = build_config(args)
    LOGGER.info("Recognizer config: %s", config)

    store = Store()
    if args.db.exists():
        if not store.load(args.db):
            raise SystemExit(f"Could not load database {args.db}")
    else:
        LOGGER.info("Database %s not found; starting empty", args.db)

    recognizer = TrackRecognizer(store, config)
    if args.threaded:
        recognizer.start()

    track_names: Dict[int, str] = {}
    try:
        for track_dir in tqdm(list_subdirs(args.tracks_dir), desc="tracks", unit="track"):
            if process_track(recognizer, track_dir, args.threaded):
                track_names[recognizer.track_index] = track_dir.name
            else:
                LOGGER.warning("No usable frames in %s", track_dir)
        if args.threaded:
            _wait_until_idle(recognizer, timeout_s=5.0)
    finally:
        if args.threaded:
            recognizer.shutdown()

    table = results_table(recognizer, track_names)
    ensure_dir(args.output.parent)
    table.to_csv(args.output, index=False)
    LOGGER.info("Wrote %d track results to %s", len(table), args.output)

    summary_path = args.output.with_suffix(".json")
    dump_json(
        summary_path,
        {
            "config": config,
            "tracks": len(table),
            "new_persons": int(table["is_new_person"].sum()) if len(table) else 0,
            "not_found": int(table["person_id"].isna().sum()) if len(table) else 0,
            "database": {
                "persons": store.person_count(),
                "tracks": store.track_count(),
                "descriptors": store.descriptor_count(),
            },
        },
    )

    if config.mode == MODE_LEARN:
        ensure_dir(args.db.parent)
        if not store.save(args.db):
            raise SystemExit(f"Could not save database {args.db}")


if __name__ == "__main__":
    main()
