"""Calcul du score d'une paire mouvement / écriture."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from concordbank.config import AmountTolerance, Config
from concordbank.matching.schema import CandidateEntry, CandidateMovement, ConfidenceLevel, MatchKind
from concordbank.matching.similarity import text_similarity
from concordbank.normalize import norm_reference

EXCELLENT_THRESHOLD = 95.0
GOOD_THRESHOLD = 80.0
FAIR_THRESHOLD = 60.0


def to_decimal(value: float | int | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def contextual_tolerance(amount: Decimal, policy: AmountTolerance) -> Decimal:
    """
    Tolérance absolue admise autour d'un montant.

    Pourcentage « petits montants » sous large_amount_threshold, pourcentage
    « gros montants » au-delà ; le résultat est toujours borné par
    [minimum_absolute, maximum_absolute].
    """
    amt = abs(amount)
    if amt >= to_decimal(policy.large_amount_threshold):
        tol = amt * to_decimal(policy.large_amount_percent)
    else:
        tol = amt * to_decimal(policy.small_amount_percent)
    floor = to_decimal(policy.minimum_absolute)
    ceiling = to_decimal(policy.maximum_absolute)
    return min(max(tol, floor), ceiling)


def contextual_tolerance_rate(amount: Decimal, policy: AmountTolerance) -> Decimal:
    """Tolérance relative (fraction) pour la recherche combinatoire : pourcentage du régime, plafonné par maximum_absolute."""
    amt = abs(amount)
    if amt == 0:
        return Decimal("0")
    large = amt >= to_decimal(policy.large_amount_threshold)
    rate = to_decimal(policy.large_amount_percent if large else policy.small_amount_percent)
    cap = to_decimal(policy.maximum_absolute) / amt
    return min(rate, cap)


def confidence_level(score: float) -> ConfidenceLevel:
    """Palier de confiance d'un score 0-100."""
    if score >= EXCELLENT_THRESHOLD:
        return ConfidenceLevel.EXCELLENT
    if score >= GOOD_THRESHOLD:
        return ConfidenceLevel.GOOD
    if score >= FAIR_THRESHOLD:
        return ConfidenceLevel.FAIR
    return ConfidenceLevel.LOW


def same_sense(a: Decimal, b: Decimal) -> bool:
    """Vrai si les deux montants ont le même signe (zéro compté positif)."""
    return (a < 0) == (b < 0)


@dataclass
class PairScore:
    """Score d'une paire candidate (indices dans les listes validées)."""

    movement_index: int
    entry_index: int
    score: float
    kind: MatchKind
    day_gap: int
    amount_gap: Decimal
    details: dict[str, float] = field(default_factory=dict)
    reason: str = ""

    def __repr__(self) -> str:
        return f"PairScore(m={self.movement_index}, e={self.entry_index}, score={self.score:.1f})"


def score_pair(
    movement: CandidateMovement,
    entry: CandidateEntry,
    config: Config,
    *,
    movement_index: int = 0,
    entry_index: int = 0,
) -> PairScore | None:
    """
    Score (0-100) d'une correspondance 1:1, ou None si la paire est rejetée.

    Paliers :
    - montant identique et écart <= exact_match_days : exact_match
    - montant identique et écart <= good_match_days : good_match
    - écart de montant dans la tolérance et écart <= fair_match_days : fair_match
    - écart de montant dans la tolérance et écart <= low_match_days : low_match

    Puis bonus de référence, bonus de libellé (au-dessus du seuil) et pénalité
    de sens. Seul le palier exact peut atteindre exact_match.
    """
    scores = config.scores
    days = config.date_thresholds
    amount_gap = abs(abs(movement.amount) - abs(entry.amount))
    day_gap = abs((movement.date - entry.date).days)
    tolerance = contextual_tolerance(movement.amount, config.amount_tolerance)

    if amount_gap == 0 and day_gap <= days.exact_match_days:
        base, kind, tier = scores.exact_match, MatchKind.EXACT, "exact"
    elif amount_gap == 0 and day_gap <= days.good_match_days:
        base, kind, tier = scores.good_match, MatchKind.HEURISTIC, "good"
    elif amount_gap <= tolerance and day_gap <= days.fair_match_days:
        base, kind, tier = scores.fair_match, MatchKind.HEURISTIC, "fair"
    elif amount_gap <= tolerance and day_gap <= days.low_match_days:
        base, kind, tier = scores.low_match, MatchKind.HEURISTIC, "low"
    else:
        return None

    details: dict[str, float] = {"base": base}
    reasons = [f"{tier} tier (amount gap={amount_gap}, {day_gap}d)"]
    score = base

    ref_m = norm_reference(movement.reference)
    ref_e = norm_reference(entry.reference)
    if ref_m and ref_m == ref_e:
        score += scores.reference_bonus
        details["reference"] = scores.reference_bonus
        reasons.append("same reference")

    settings = config.text_similarity
    sim = text_similarity(movement.description, entry.description, settings)
    details["text_similarity"] = round(sim, 4)
    if movement.description and entry.description and sim >= settings.threshold:
        bonus = settings.weight * sim
        score += bonus
        details["text"] = round(bonus, 4)
        reasons.append(f"similar labels ({sim:.2f})")

    if not same_sense(movement.amount, entry.amount):
        score -= scores.sign_penalty
        details["sign"] = -scores.sign_penalty
        reasons.append("opposite signs")

    if kind is not MatchKind.EXACT:
        score = min(score, scores.exact_match - 1)
    score = min(max(score, 0.0), 100.0)

    return PairScore(
        movement_index=movement_index,
        entry_index=entry_index,
        score=round(score, 2),
        kind=kind,
        day_gap=day_gap,
        amount_gap=amount_gap,
        details=details,
        reason="; ".join(reasons),
    )
