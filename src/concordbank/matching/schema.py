"""Schémas et types pour le matching."""

from __future__ import annotations

import datetime as dt
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

import pandas as pd

from concordbank.config import ConcordBankError
from concordbank.normalize import safe_str

_AMOUNT_JUNK_RE = re.compile(r"[\s']")


class InvalidCandidate(ConcordBankError, ValueError):
    """Enregistrement inexploitable (identifiant, montant ou date invalide)."""


class SuggestionStateError(ConcordBankError):
    """Transition de statut interdite sur une suggestion."""


class ConfidenceLevel(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    LOW = "LOW"


class MatchKind(str, Enum):
    EXACT = "EXACT"
    HEURISTIC = "HEURISTIC"
    COMBINATION = "COMBINATION"
    LEARNED = "LEARNED"


class SuggestionStatus(str, Enum):
    PENDING = "PENDING"
    APPLIED = "APPLIED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class CandidateMovement:
    """Mouvement bancaire (vue en lecture seule pour la durée d'un rapprochement)."""

    id: str
    amount: Decimal
    date: dt.date
    description: str = ""
    reference: str | None = None


@dataclass(frozen=True)
class CandidateEntry:
    """Écriture comptable (vue en lecture seule pour la durée d'un rapprochement)."""

    id: str
    amount: Decimal
    date: dt.date
    description: str = ""
    reference: str | None = None


Candidate = CandidateMovement | CandidateEntry


def parse_amount(value: Any) -> Decimal:
    """
    Convertit un montant en Decimal.

    Accepte Decimal, int, float et chaînes ("1 234,56", "-89.90").

    Raises:
        InvalidCandidate: Si la valeur est absente ou non numérique.
    """
    if isinstance(value, bool):
        raise InvalidCandidate(f"Montant invalide: {value!r}")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise InvalidCandidate(f"Montant invalide: {value!r}")
        amount = Decimal(str(value))
    else:
        text = _AMOUNT_JUNK_RE.sub("", safe_str(value))
        if "," in text and "." in text:
            # Le dernier séparateur rencontré est le séparateur décimal
            if text.rfind(",") > text.rfind("."):
                text = text.replace(".", "").replace(",", ".")
            else:
                text = text.replace(",", "")
        elif "," in text:
            text = text.replace(",", ".")
        if not text:
            raise InvalidCandidate("Montant absent")
        try:
            amount = Decimal(text)
        except InvalidOperation as e:
            raise InvalidCandidate(f"Montant invalide: {value!r}") from e
    if not amount.is_finite():
        raise InvalidCandidate(f"Montant invalide: {value!r}")
    return amount


def parse_date(value: Any) -> dt.date:
    """
    Convertit une date (date, datetime, Timestamp pandas, chaîne ISO).

    Raises:
        InvalidCandidate: Si la valeur est absente ou illisible.
    """
    if value is None or value is pd.NaT:
        raise InvalidCandidate("Date absente")
    if isinstance(value, pd.Timestamp):
        return value.date()
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    text = safe_str(value).strip()
    if not text:
        raise InvalidCandidate("Date absente")
    try:
        return dt.date.fromisoformat(text[:10])
    except ValueError:
        pass
    try:
        parsed = pd.to_datetime(text, dayfirst=True)
    except (ValueError, TypeError) as e:
        raise InvalidCandidate(f"Date invalide: {value!r}") from e
    if pd.isna(parsed):
        raise InvalidCandidate(f"Date invalide: {value!r}")
    return parsed.date()


def _coerce(record: Any, cls: type) -> Any:
    if isinstance(record, cls):
        return record
    if isinstance(record, pd.Series):
        record = record.to_dict()
    if not isinstance(record, Mapping):
        raise InvalidCandidate(f"Enregistrement non reconnu: {type(record).__name__}")

    record_id = safe_str(record.get("id")).strip()
    if not record_id:
        raise InvalidCandidate("Identifiant absent")
    try:
        amount = parse_amount(record.get("amount"))
        date = parse_date(record.get("date"))
    except InvalidCandidate as e:
        raise InvalidCandidate(f"{record_id}: {e}") from e

    reference = safe_str(record.get("reference")).strip() or None
    return cls(
        id=record_id,
        amount=amount,
        date=date,
        description=safe_str(record.get("description")).strip(),
        reference=reference,
    )


def coerce_movement(record: Any) -> CandidateMovement:
    """Construit un CandidateMovement depuis un mapping, une ligne pandas ou un objet existant."""
    return _coerce(record, CandidateMovement)


def coerce_entry(record: Any) -> CandidateEntry:
    """Construit un CandidateEntry depuis un mapping, une ligne pandas ou un objet existant."""
    return _coerce(record, CandidateEntry)


def validate_candidates(
    movements: Iterable[Any],
    entries: Iterable[Any],
) -> tuple[list[CandidateMovement], list[CandidateEntry], list[str]]:
    """
    Valide les deux listes ; les enregistrements invalides sont écartés.

    Returns:
        (mouvements valides, écritures valides, avertissements)
    """
    warnings: list[str] = []
    valid_movements: list[CandidateMovement] = []
    valid_entries: list[CandidateEntry] = []
    seen: set[str] = set()

    for label, records, coerce, out in (
        ("mouvement", movements, coerce_movement, valid_movements),
        ("écriture", entries, coerce_entry, valid_entries),
    ):
        seen.clear()
        for pos, record in enumerate(records):
            try:
                item = coerce(record)
            except InvalidCandidate as e:
                warnings.append(f"{label} #{pos} ignoré: {e}")
                continue
            if item.id in seen:
                warnings.append(f"{label} #{pos} ignoré: identifiant en double {item.id!r}")
                continue
            seen.add(item.id)
            out.append(item)

    return valid_movements, valid_entries, warnings


@dataclass
class MatchSuggestion:
    """Correspondance proposée entre 1..N mouvements et 1..M écritures."""

    suggestion_id: str
    movement_ids: tuple[str, ...]
    entry_ids: tuple[str, ...]
    score: float
    level: ConfidenceLevel
    kind: MatchKind
    reason: str = ""
    status: SuggestionStatus = SuggestionStatus.PENDING
    details: dict[str, float] = field(default_factory=dict)
    prediction_id: str | None = None
    resolved_at: dt.datetime | None = None

    def __repr__(self) -> str:
        return (
            f"MatchSuggestion({list(self.movement_ids)}->{list(self.entry_ids)}, "
            f"score={self.score:.1f}, {self.kind.value}, {self.status.value})"
        )

    @property
    def is_pending(self) -> bool:
        return self.status is SuggestionStatus.PENDING

    @property
    def is_one_to_one(self) -> bool:
        return len(self.movement_ids) == 1 and len(self.entry_ids) == 1

    def _transition(self, status: SuggestionStatus) -> None:
        if self.status is not SuggestionStatus.PENDING:
            raise SuggestionStateError(
                f"Suggestion {self.suggestion_id}: {self.status.value} -> {status.value} interdit"
            )
        self.status = status
        self.resolved_at = dt.datetime.now()

    def apply(self) -> None:
        self._transition(SuggestionStatus.APPLIED)

    def reject(self) -> None:
        self._transition(SuggestionStatus.REJECTED)

    def expire(self) -> None:
        self._transition(SuggestionStatus.EXPIRED)


@dataclass
class RunStatistics:
    """Statistiques d'un rapprochement."""

    nb_movements: int = 0
    nb_entries: int = 0
    by_level: dict[str, int] = field(default_factory=dict)
    by_kind: dict[str, int] = field(default_factory=dict)
    unmatched_movements: int = 0
    unmatched_entries: int = 0
    unexplained_movements_amount: Decimal = Decimal("0")
    unexplained_entries_amount: Decimal = Decimal("0")
    residual_imbalance: Decimal = Decimal("0")
    invalid_records: int = 0
    truncated: bool = False
    warnings: list[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0


@dataclass
class MatchRun:
    """Résultat d'un rapprochement : suggestions classées et statistiques."""

    run_id: str
    tenant_id: str
    suggestions: list[MatchSuggestion]
    statistics: RunStatistics
    started_at: dt.datetime = field(default_factory=dt.datetime.now)
    closed: bool = False

    def pending(self) -> list[MatchSuggestion]:
        return [s for s in self.suggestions if s.is_pending]

    def auto_approvable(self, threshold: float) -> list[MatchSuggestion]:
        """Suggestions en attente applicables sans revue (les combinaisons exigent une revue)."""
        return [
            s
            for s in self.suggestions
            if s.is_pending and s.score >= threshold and s.kind is not MatchKind.COMBINATION
        ]
