"""Tests du pré-filtrage par dates."""

import datetime as dt
from decimal import Decimal

from concordbank.matching.blockers import build_date_blocks, candidate_indices
from concordbank.matching.schema import CandidateEntry

D0 = dt.date(2024, 3, 15)


def _entries(*offsets: int) -> list[CandidateEntry]:
    return [CandidateEntry(f"e{i}", Decimal("10"), D0 + dt.timedelta(days=o)) for i, o in enumerate(offsets)]


def test_build_date_blocks() -> None:
    blocks = build_date_blocks(_entries(0, 0, 3))
    assert blocks[D0] == [0, 1]
    assert blocks[D0 + dt.timedelta(days=3)] == [2]


def test_candidate_indices_window() -> None:
    blocks = build_date_blocks(_entries(0, 2, -5, 10))
    assert candidate_indices(D0, blocks, 3) == [0, 1]
    assert candidate_indices(D0, blocks, 5) == [0, 1, 2]
    assert candidate_indices(D0, blocks, 0) == [0]


def test_candidate_indices_exclude() -> None:
    blocks = build_date_blocks(_entries(0, 1, 2))
    assert candidate_indices(D0, blocks, 3, exclude={1}) == [0, 2]


def test_candidate_indices_dense_blocks() -> None:
    """Avec beaucoup de dates distinctes, le parcours par décalage donne le même résultat."""
    entries = _entries(*range(-20, 21))
    blocks = build_date_blocks(entries)
    found = candidate_indices(D0, blocks, 2)
    assert [entries[i].date for i in found] == [D0 + dt.timedelta(days=o) for o in range(-2, 3)]
