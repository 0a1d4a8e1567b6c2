"""Tests de la similarité des libellés."""

import pytest

from concordbank.config import TextSimilarity
from concordbank.matching.similarity import (
    jaccard_similarity,
    jaro_winkler_similarity,
    levenshtein_similarity,
    similarity,
    text_similarity,
)


def test_similarity_virement_abbreviation() -> None:
    """Un libellé abrégé reste au-dessus du seuil de bonus (0.70)."""
    score = similarity("Virement SARL ABC", "VIR SARL ABC")
    assert score > 0.70
    assert score == pytest.approx(0.7706, abs=1e-3)


def test_similarity_empty_values() -> None:
    assert similarity("", "") == 1.0
    assert similarity(None, None) == 1.0
    assert similarity("EDF", "") == 0.0
    assert similarity(None, "EDF") == 0.0


def test_similarity_case_insensitive() -> None:
    assert similarity("Loyer Mars", "LOYER MARS") == 1.0


def test_similarity_containment_bonus() -> None:
    """L'inclusion d'un libellé dans l'autre ajoute 0.1."""
    with_containment = similarity("PRLV EDF", "PRLV EDF FACTURE")
    jw = jaro_winkler_similarity("prlv edf", "prlv edf facture")
    lev = levenshtein_similarity("prlv edf", "prlv edf facture")
    assert with_containment == pytest.approx(0.6 * jw + 0.3 * lev + 0.1)


def test_similarity_bounded() -> None:
    for a, b in [("abc", "xyz"), ("Loyer", "Loyer janvier"), ("ÉDF", "edf")]:
        assert 0.0 <= similarity(a, b) <= 1.0


@pytest.mark.parametrize(
    ("a", "b"),
    [
        ("martha", "marhta"),
        ("VIR SARL ABC", "Virement SARL ABC"),
        ("PRLV EDF", "PRLV EDF FACTURE"),
        ("Chèque Martin", "CHQ MARTIN 0042"),
        ("dixon", "dicksonx"),
        ("Loyer", ""),
    ],
)
def test_similarity_symmetric(a: str, b: str) -> None:
    assert similarity(a, b) == similarity(b, a)
    for algorithm in ("jaro_winkler", "levenshtein", "jaccard"):
        settings = TextSimilarity(algorithm=algorithm)
        assert text_similarity(a, b, settings) == text_similarity(b, a, settings)


def test_levenshtein_similarity() -> None:
    assert levenshtein_similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)


def test_jaro_winkler_similarity() -> None:
    assert jaro_winkler_similarity("martha", "marhta") == pytest.approx(0.9611, abs=1e-3)


def test_jaccard_similarity() -> None:
    assert jaccard_similarity("a b c", "b c d") == pytest.approx(0.5)
    assert jaccard_similarity("", "") == 1.0
    assert jaccard_similarity("a", "") == 0.0


def test_text_similarity_dispatch() -> None:
    assert text_similarity("a b c", "b c d", TextSimilarity(algorithm="jaccard")) == pytest.approx(0.5)
    assert text_similarity("kitten", "sitting", TextSimilarity(algorithm="levenshtein")) == pytest.approx(1 - 3 / 7)
    advanced = text_similarity("Virement SARL ABC", "VIR SARL ABC", TextSimilarity())
    assert advanced == similarity("Virement SARL ABC", "VIR SARL ABC")
