"""Similarité des libellés bancaires et comptables."""

from __future__ import annotations

from functools import lru_cache

from rapidfuzz.distance import JaroWinkler, Levenshtein

from concordbank.config import TextSimilarity
from concordbank.normalize import norm_text, tokens

JARO_WINKLER_WEIGHT = 0.6
LEVENSHTEIN_WEIGHT = 0.3
CONTAINMENT_WEIGHT = 0.1


def _prepare(s: str | None, normalize: bool) -> str:
    if normalize:
        return norm_text(s, remove_diacritics=True, remove_punctuation=True)
    return norm_text(s)


def jaro_winkler_similarity(a: str, b: str) -> float:
    """Jaro-Winkler (préfixe commun de 4 caractères max, facteur 0.1)."""
    return float(JaroWinkler.normalized_similarity(a, b, prefix_weight=0.1))


def levenshtein_similarity(a: str, b: str) -> float:
    """1 - distance d'édition (coût 1) / longueur de la plus longue chaîne."""
    return float(Levenshtein.normalized_similarity(a, b))


def jaccard_similarity(a: str | None, b: str | None) -> float:
    """Indice de Jaccard sur les ensembles de mots."""
    ta, tb = tokens(a), tokens(b)
    if not ta and not tb:
        return 1.0
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


@lru_cache(maxsize=8192)
def similarity(a: str | None, b: str | None, *, normalize: bool = True) -> float:
    """
    Score combiné (0-1) entre deux libellés.

    0.6 x Jaro-Winkler + 0.3 x (1 - Levenshtein normalisé) + 0.1 x inclusion,
    l'inclusion valant 1 si l'un des libellés normalisés contient l'autre.
    Comparaison insensible à la casse ; deux vides = 1, un seul vide = 0.
    """
    s = _prepare(a, normalize)
    t = _prepare(b, normalize)
    if not s and not t:
        return 1.0
    if not s or not t:
        return 0.0
    if s == t:
        return 1.0
    # ordre canonique : score identique quel que soit l'ordre des arguments
    s, t = sorted((s, t))

    containment = 1.0 if (s in t or t in s) else 0.0
    score = (
        JARO_WINKLER_WEIGHT * jaro_winkler_similarity(s, t)
        + LEVENSHTEIN_WEIGHT * levenshtein_similarity(s, t)
        + CONTAINMENT_WEIGHT * containment
    )
    return min(max(score, 0.0), 1.0)


def text_similarity(a: str | None, b: str | None, settings: TextSimilarity) -> float:
    """Similarité selon l'algorithme configuré (advanced, jaro_winkler, levenshtein, jaccard)."""
    algorithm = settings.algorithm
    if algorithm == "advanced":
        return similarity(a, b, normalize=settings.normalize)
    if algorithm == "jaccard":
        return jaccard_similarity(a, b)

    s = _prepare(a, settings.normalize)
    t = _prepare(b, settings.normalize)
    if not s and not t:
        return 1.0
    if not s or not t:
        return 0.0
    s, t = sorted((s, t))
    if algorithm == "jaro_winkler":
        return jaro_winkler_similarity(s, t)
    return levenshtein_similarity(s, t)
