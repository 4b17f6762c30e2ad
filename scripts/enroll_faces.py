#!/usr/bin/env python3
"""Enroll labeled face crops into a facereco database.

Expected layout::

    faces/
      Alice/          one track made of every image in the folder
        0001.jpg
      Bob/
        clip_a/       or one track per subfolder
          0001.jpg
        clip_b/
          0001.jpg
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

import numpy as np
from tqdm import tqdm

from facereco.descriptors.lbp import encode, preprocess_face
from facereco.io_utils import ensure_dir, list_images, list_subdirs, read_image, setup_logging
from facereco.store.database import Store
from facereco.types import Descriptor
from facereco.workers.writer import DescriptorWriter

LOGGER = logging.getLogger("scripts.enroll")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build or extend a face database from labeled face crops")
    parser.add_argument(
        "faces_dir",
        type=Path,
        help="Directory containing one subdirectory of aligned face crops per person",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=Path("data/faces.db"),
        help="Database file to extend (created when missing)",
    )
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Ignore any existing database file and start empty",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


def collect_tracks(person_dir: Path) -> List[List[Path]]:
    """Return the image paths of each track in ``person_dir``."""
    tracks = [list_images(sub) for sub in list_subdirs(person_dir)]
    tracks = [images for images in tracks if images]
    if tracks:
        return tracks
    images = list_images(person_dir)
    return [images] if images else []


def encode_images(paths: List[Path]) -> List[Descriptor]:
    descriptors: List[Descriptor] = []
    for path in paths:
        try:
            descriptors.append(encode(preprocess_face(read_image(path))))
        except (FileNotFoundError, ValueError) as exc:
            LOGGER.warning("Skipping %s: %s", path, exc)
    return descriptors


def enroll_person(
    store: Store,
    writer: DescriptorWriter,
    name: str,
    tracks: List[List[Descriptor]],
    face_image: Optional[np.ndarray] = None,
) -> Optional[int]:
    """Write ``tracks`` as a new person called ``name``; return its id.

    The writer is driven on the calling thread, one queue-draining session per
    track. Returns None when there is nothing to write.
    """
    tracks = [track for track in tracks if track]
    if not tracks:
        return None

    person_id = store.person_count()
    for track_id, descriptors in enumerate(tracks):
        if track_id == 0 and face_image is not None:
            writer.push_face_image(face_image)
        for descriptor in descriptors:
            writer.push_descriptor(descriptor)
        writer.start_queue_drain_writing(person_id, track_id)
        writer.run_until_idle()

    store.rename_person(person_id, name)
    return person_id


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    if not args.faces_dir.is_dir():
        raise SystemExit(f"Faces directory not found: {args.faces_dir}")

    store = Store()
    if args.db.exists() and not args.fresh:
        if not store.load(args.db):
            raise SystemExit(f"Could not load database {args.db}")

    writer = DescriptorWriter(store)
    enrolled = 0
    for person_dir in tqdm(list_subdirs(args.faces_dir), desc="persons", unit="person"):
        image_tracks = collect_tracks(person_dir)
        if not image_tracks:
            LOGGER.warning("No images for %s", person_dir.name)
            continue
        tracks = [encode_images(paths) for paths in image_tracks]
        try:
            face_image: Optional[np.ndarray] = read_image(image_tracks[0][0])
        except FileNotFoundError:
            face_image = None
        person_id = enroll_person(store, writer, person_dir.name, tracks, face_image=face_image)
        if person_id is None:
            LOGGER.warning("No usable faces for %s", person_dir.name)
            continue
        enrolled += 1
        LOGGER.info(
            "Enrolled %s as person %d (%d tracks, %d descriptors)",
            person_dir.name,
            person_id,
            store.track_count(person_id),
            store.descriptor_count(person_id),
        )

    ensure_dir(args.db.parent)
    if not store.save(args.db):
        raise SystemExit(f"Could not save database {args.db}")
    LOGGER.info("Enrolled %d persons; database now holds %d", enrolled, store.person_count())


if __name__ == "__main__":
    main()
