import numpy as np
import pytest

from facereco.store.database import Person, Store, Track
from facereco.store.scanner import FairScanner
from facereco.types import DESCRIPTOR_LENGTH


def _store(*track_layouts):
    store = Store()
    for layout in track_layouts:
        person = Person()
        for size in layout:
            person.add_track(Track([np.zeros(DESCRIPTOR_LENGTH, dtype=np.float32)] * size))
        store.add_person(person)
    return store


def _one_pass(scanner):
    visited = [scanner.current()]
    scanner.advance()
    while not scanner.is_at_start():
        visited.append(scanner.current())
        scanner.advance()
    return visited


@pytest.mark.parametrize(
    "layouts",
    [
        ([1],),
        ([5],),
        ([1, 1, 1],),
        ([1], [1], [1]),
        ([3], [1, 2], [2, 2, 1]),
        ([4, 1], [1], [2, 3]),
    ],
)
def test_one_pass_visits_every_descriptor_once(layouts):
    store = _store(*layouts)
    scanner = FairScanner(store)
    visited = _one_pass(scanner)

    expected = {
        (p, t, d)
        for p, layout in enumerate(layouts)
        for t, size in enumerate(layout)
        for d in range(size)
    }
    assert len(visited) == store.descriptor_count()
    assert set(visited) == expected
    assert scanner.passes_completed == 1


def test_persons_are_interleaved():
    scanner = FairScanner(_store([2], [2]))
    assert _one_pass(scanner) == [(0, 0, 0), (1, 0, 0), (0, 0, 1), (1, 0, 1)]


def test_tracks_are_interleaved_within_a_person():
    scanner = FairScanner(_store([2, 1]))
    assert _one_pass(scanner) == [(0, 0, 0), (0, 1, 0), (0, 0, 1)]


def test_exhausted_persons_are_skipped():
    scanner = FairScanner(_store([1], [3]))
    assert _one_pass(scanner) == [(0, 0, 0), (1, 0, 0), (1, 0, 1), (1, 0, 2)]


def test_second_pass_repeats_the_first():
    scanner = FairScanner(_store([2, 1], [1]))
    first = _one_pass(scanner)
    second = _one_pass(scanner)
    assert first == second
    assert scanner.passes_completed == 2


def test_descriptors_added_mid_pass_join_the_next_pass():
    store = _store([2])
    scanner = FairScanner(store)
    scanner.advance()
    store.add_descriptor(0, 0, np.zeros(DESCRIPTOR_LENGTH, dtype=np.float32))
    scanner.advance()
    assert scanner.is_at_start()
    assert len(_one_pass(scanner)) == 3


def test_empty_store_cannot_be_scanned():
    with pytest.raises(ValueError):
        FairScanner(Store())
