"""Pré-filtrage par fenêtre de dates pour réduire l'espace de recherche."""

from __future__ import annotations

import datetime as dt
from collections.abc import Iterable, Sequence

from concordbank.matching.schema import Candidate


def build_date_blocks(items: Sequence[Candidate]) -> dict[dt.date, list[int]]:
    """
    Construit un index de blocs : date -> liste d'indices.

    Args:
        items: Mouvements ou écritures validés.

    Returns:
        Dict {date: [indices]} (indices dans l'ordre d'entrée).
    """
    blocks: dict[dt.date, list[int]] = {}
    for idx, item in enumerate(items):
        blocks.setdefault(item.date, []).append(idx)
    return blocks


def candidate_indices(
    day: dt.date,
    blocks: dict[dt.date, list[int]],
    window_days: int,
    *,
    exclude: Iterable[int] = (),
) -> list[int]:
    """
    Indices candidats dont la date est à au plus window_days jours de day.

    Les indices sont renvoyés triés (ordre d'entrée) pour un résultat déterministe.
    """
    excluded = set(exclude)
    found: list[int] = []
    if 2 * window_days + 1 <= len(blocks):
        for offset in range(-window_days, window_days + 1):
            found.extend(blocks.get(day + dt.timedelta(days=offset), ()))
    else:
        for block_day, indices in blocks.items():
            if abs((block_day - day).days) <= window_days:
                found.extend(indices)
    return sorted(i for i in found if i not in excluded)
