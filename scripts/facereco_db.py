#!/usr/bin/env python3
"""Inspect and edit a facereco database file."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from facereco.io_utils import ensure_dir, setup_logging
from facereco.store.database import Store
from facereco.types import format_size

LOGGER = logging.getLogger("scripts.facereco_db")

EXPORT_FORMATS = ("csv", "parquet")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and edit a face database")
    parser.add_argument("--db", type=Path, default=Path("data/faces.db"), help="Database file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("info", help="Print per-person statistics")

    merge = sub.add_parser("merge", help="Move every track of SOURCE onto TARGET and drop SOURCE")
    merge.add_argument("target", type=int)
    merge.add_argument("source", type=int)

    rename = sub.add_parser("rename", help="Set the name of a person")
    rename.add_argument("person_id", type=int)
    rename.add_argument("name")

    sub.add_parser("clear", help="Remove every person")

    export = sub.add_parser("export", help="Write the per-person summary table")
    export.add_argument("output", type=Path)
    export.add_argument(
        "--format",
        choices=EXPORT_FORMATS,
        default=None,
        help="Table format (default: from the output suffix, else csv)",
    )
    return parser.parse_args(argv)


def load_or_exit(path: Path) -> Store:
    store = Store()
    if not path.exists():
        raise SystemExit(f"Database not found: {path}")
    if not store.load(path):
        raise SystemExit(f"Could not load database {path}")
    return store


def save_or_exit(store: Store, path: Path) -> None:
    if not store.save(path):
        raise SystemExit(f"Could not save database {path}")


def export_summary(store: Store, output: Path, fmt: Optional[str] = None) -> Path:
    """Write ``store.summary()`` to ``output`` as CSV or parquet."""
    if fmt is None:
        fmt = "parquet" if output.suffix.lower() == ".parquet" else "csv"
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unknown export format {fmt!r}")
    table = store.summary()
    ensure_dir(output.parent)
    if fmt == "parquet":
        table.to_parquet(output, index=False)
    else:
        table.to_csv(output, index=False)
    LOGGER.info("Wrote %d rows to %s", len(table), output)
    return output


def describe(store: Store) -> str:
    lines = [
        f"persons: {store.person_count()}, tracks: {store.track_count()}, "
        f"descriptors: {store.descriptor_count()}, size: {format_size(store.size())}"
    ]
    table = store.summary()
    if not table.empty:
        lines.append(table.to_string(index=False))
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging()

    store = load_or_exit(args.db)

    if args.command == "info":
        print(describe(store))
    elif args.command == "merge":
        try:
            merged_id = store.merge_persons(args.target, args.source)
        except (IndexError, ValueError) as exc:
            raise SystemExit(f"Merge failed: {exc}")
        save_or_exit(store, args.db)
        LOGGER.info("Merged person is now id %d", merged_id)
    elif args.command == "rename":
        try:
            store.rename_person(args.person_id, args.name)
        except IndexError as exc:
            raise SystemExit(f"Rename failed: {exc}")
        save_or_exit(store, args.db)
    elif args.command == "clear":
        store.clear()
        save_or_exit(store, args.db)
    elif args.command == "export":
        export_summary(store, args.output, args.format)


if __name__ == "__main__":
    main()
