"""Extraction du vecteur de caractéristiques d'une paire mouvement / écriture."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal

from concordbank.matching.schema import CandidateEntry, CandidateMovement
from concordbank.matching.scorers import same_sense
from concordbank.normalize import norm_reference, norm_text, tokens

FEATURE_NAMES: tuple[str, ...] = (
    "amount_difference",
    "date_diff_days",
    "text_similarity",
    "amount_ratio",
    "same_sense",
    "reference_match",
    "is_round_number",
    "is_month_end",
    "day_of_week_bt",
    "day_of_week_gl",
    "historical_match_rate",
    "avg_days_historical",
)

CONTAINMENT_SCORE = 0.8
ROUND_AMOUNT = Decimal(1000)
MONTH_END_DAY = 28


@dataclass(frozen=True)
class HistoricalAggregates:
    """Agrégats historiques fournis par l'appelant (valeurs neutres par défaut)."""

    match_rate: float = 0.5
    average_days: float = 30.0


@dataclass(frozen=True)
class FeatureVector:
    """Vecteur de 12 caractéristiques, dans l'ordre de FEATURE_NAMES."""

    amount_difference: float
    date_diff_days: float
    text_similarity: float
    amount_ratio: float
    same_sense: float
    reference_match: float
    is_round_number: float
    is_month_end: float
    day_of_week_bt: float
    day_of_week_gl: float
    historical_match_rate: float
    avg_days_historical: float

    def to_list(self) -> list[float]:
        return [float(getattr(self, name)) for name in FEATURE_NAMES]

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_list(cls, values: list[float]) -> FeatureVector:
        if len(values) != len(FEATURE_NAMES):
            raise ValueError(f"{len(FEATURE_NAMES)} valeurs attendues (got {len(values)})")
        return cls(**{name: float(v) for name, v in zip(FEATURE_NAMES, values)})


def token_set_similarity(a: str | None, b: str | None) -> float:
    """
    Similarité par mots : 1 si identiques, 0.8 si l'un contient l'autre, sinon Jaccard.

    Distincte de matching.similarity (niveau caractère) ; un libellé vide donne 0.
    """
    s = norm_text(a, remove_diacritics=True, remove_punctuation=True)
    t = norm_text(b, remove_diacritics=True, remove_punctuation=True)
    if not s or not t:
        return 0.0
    if s == t:
        return 1.0
    if s in t or t in s:
        return CONTAINMENT_SCORE
    ta, tb = tokens(s), tokens(t)
    return len(ta & tb) / len(ta | tb)


def extract(
    movement: CandidateMovement,
    entry: CandidateEntry,
    historical: HistoricalAggregates | None = None,
) -> FeatureVector:
    """Vecteur de caractéristiques déterministe pour une paire (mouvement, écriture)."""
    historical = historical or HistoricalAggregates()
    m_amount = abs(movement.amount)
    e_amount = abs(entry.amount)
    ref_m = norm_reference(movement.reference)
    ref_e = norm_reference(entry.reference)

    return FeatureVector(
        amount_difference=float(abs(m_amount - e_amount)),
        date_diff_days=float(abs((movement.date - entry.date).days)),
        text_similarity=token_set_similarity(movement.description, entry.description),
        amount_ratio=float(m_amount / e_amount) if e_amount else 0.0,
        same_sense=1.0 if same_sense(movement.amount, entry.amount) else 0.0,
        reference_match=1.0 if ref_m and ref_m == ref_e else 0.0,
        is_round_number=1.0 if m_amount and m_amount % ROUND_AMOUNT == 0 else 0.0,
        is_month_end=1.0 if movement.date.day >= MONTH_END_DAY else 0.0,
        day_of_week_bt=float(movement.date.isoweekday()),
        day_of_week_gl=float(entry.date.isoweekday()),
        historical_match_rate=float(historical.match_rate),
        avg_days_historical=float(historical.average_days),
    )


def explain(features: FeatureVector, probability: float) -> str:
    """Explication lisible d'une prédiction."""
    parts = [f"ML match probability {probability:.0%}"]
    if features.amount_difference < 100:
        parts.append("amounts nearly identical")
    if features.date_diff_days <= 3:
        parts.append("dates within 3 days")
    if features.text_similarity > 0.7:
        parts.append("similar descriptions")
    if features.reference_match:
        parts.append("references match")
    return "; ".join(parts)

