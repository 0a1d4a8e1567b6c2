"""Normalisation de libellés et de références."""

from __future__ import annotations

import re
import unicodedata
from typing import Any

_PUNCT_RE = re.compile(r"[^\w\s]", flags=re.UNICODE)
_SPACES_RE = re.compile(r"\s+")
_REFERENCE_RE = re.compile(r"[\s\-_/.]+")


def _is_missing(s: Any) -> bool:
    return s is None or (isinstance(s, float) and (s != s or s == float("inf")))


def _remove_diacritics(s: str) -> str:
    """Retire les diacritiques (accents) d'une chaîne."""
    nfd = unicodedata.normalize("NFD", s)
    return "".join(c for c in nfd if unicodedata.category(c) != "Mn")


def norm_text(
    s: str | float | int | None,
    *,
    lower: bool = True,
    remove_diacritics: bool = False,
    remove_punctuation: bool = False,
) -> str:
    """
    Normalise un libellé : NFKC, espaces multiples → espace simple, lower, strip.

    Args:
        s: Valeur à normaliser (convertie en str si numérique).
        lower: Mettre en minuscules.
        remove_diacritics: Supprimer les accents.
        remove_punctuation: Remplacer la ponctuation par des espaces.

    Returns:
        Chaîne normalisée.
    """
    if _is_missing(s):
        return ""
    text = unicodedata.normalize("NFKC", str(s))
    if lower:
        text = text.lower()
    if remove_diacritics:
        text = _remove_diacritics(text)
    if remove_punctuation:
        text = _PUNCT_RE.sub(" ", text)
    text = _SPACES_RE.sub(" ", text)
    return text.strip()


def norm_reference(s: str | float | int | None) -> str:
    """
    Normalise une référence de pièce pour comparaison exacte.

    "FAC-2024/001 " et "fac 2024 001" donnent la même clé.
    """
    if _is_missing(s):
        return ""
    text = norm_text(s, remove_diacritics=True)
    return _REFERENCE_RE.sub("", text)


def tokens(s: str | None) -> set[str]:
    """Ensemble des mots d'un libellé normalisé (sans accents ni ponctuation)."""
    text = norm_text(s, remove_diacritics=True, remove_punctuation=True)
    return set(text.split()) if text else set()


def safe_str(val: Any) -> str:
    """Convertit une valeur en chaîne pour affichage/stockage."""
    if _is_missing(val):
        return ""
    return str(val)
