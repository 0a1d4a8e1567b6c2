"""Tests du scoring 1:1."""

import datetime as dt
from decimal import Decimal

import pytest

from concordbank.config import AmountTolerance, Config
from concordbank.matching.schema import CandidateEntry, CandidateMovement, ConfidenceLevel, MatchKind
from concordbank.matching.scorers import (
    confidence_level,
    contextual_tolerance,
    contextual_tolerance_rate,
    same_sense,
    score_pair,
)

D0 = dt.date(2024, 3, 15)


def _movement(amount: str, day: dt.date = D0, description: str = "", reference: str | None = None) -> CandidateMovement:
    return CandidateMovement("m1", Decimal(amount), day, description, reference)


def _entry(amount: str, day: dt.date = D0, description: str = "", reference: str | None = None) -> CandidateEntry:
    return CandidateEntry("e1", Decimal(amount), day, description, reference)


@pytest.fixture
def config() -> Config:
    return Config.from_dict({})


def test_contextual_tolerance_floor_and_ceiling() -> None:
    policy = AmountTolerance()
    # 5 % de 1000 = 50 < plancher 500
    assert contextual_tolerance(Decimal("1000"), policy) == Decimal("500")
    # 5 % de 100000 = 5000
    assert contextual_tolerance(Decimal("100000"), policy) == Decimal("5000.00")
    # 5 % de 500000 = 25000 > plafond 10000
    assert contextual_tolerance(Decimal("500000"), policy) == Decimal("10000")
    # gros montant : 1 % de 2M = 20000, plafonné
    assert contextual_tolerance(Decimal("2000000"), policy) == Decimal("10000")


def test_contextual_tolerance_rate() -> None:
    policy = AmountTolerance()
    assert contextual_tolerance_rate(Decimal("100000"), policy) == Decimal("0.05")
    assert contextual_tolerance_rate(Decimal("500000"), policy) == Decimal("0.02")
    assert contextual_tolerance_rate(Decimal("0"), policy) == Decimal("0")


def test_confidence_level_buckets() -> None:
    assert confidence_level(100) is ConfidenceLevel.EXCELLENT
    assert confidence_level(95) is ConfidenceLevel.EXCELLENT
    assert confidence_level(90) is ConfidenceLevel.GOOD
    assert confidence_level(70) is ConfidenceLevel.FAIR
    assert confidence_level(50) is ConfidenceLevel.LOW


def test_same_sense() -> None:
    assert same_sense(Decimal("10"), Decimal("5"))
    assert same_sense(Decimal("-10"), Decimal("-5"))
    assert not same_sense(Decimal("-10"), Decimal("5"))
    assert same_sense(Decimal("0"), Decimal("5"))


def test_score_exact_match(config: Config) -> None:
    p = score_pair(_movement("1250.00"), _entry("1250.00"), config)
    assert p is not None
    assert p.kind is MatchKind.EXACT
    assert p.score == 100.0


def test_score_good_tier(config: Config) -> None:
    p = score_pair(_movement("1250.00"), _entry("1250.00", D0 + dt.timedelta(days=2)), config)
    assert p is not None
    assert p.kind is MatchKind.HEURISTIC
    assert p.score == 90.0
    assert p.day_gap == 2


def test_score_fair_and_low_tiers(config: Config) -> None:
    fair = score_pair(_movement("1250.00"), _entry("1240.00", D0 + dt.timedelta(days=5)), config)
    low = score_pair(_movement("1250.00"), _entry("1240.00", D0 + dt.timedelta(days=12)), config)
    assert fair is not None and fair.score == 70.0
    assert low is not None and low.score == 50.0


def test_score_rejected_outside_windows(config: Config) -> None:
    assert score_pair(_movement("1250.00"), _entry("1250.00", D0 + dt.timedelta(days=20)), config) is None
    assert score_pair(_movement("1250.00"), _entry("2500.00"), config) is None


def test_score_reference_bonus_capped_below_exact(config: Config) -> None:
    """Un palier non exact n'atteint jamais le score exact, même avec bonus."""
    p = score_pair(
        _movement("1250.00", reference="FAC-001"),
        _entry("1250.00", D0 + dt.timedelta(days=1), reference="fac 001"),
        config,
    )
    assert p is not None
    assert p.score == 99.0
    assert p.details["reference"] == 10.0


def test_score_text_bonus(config: Config) -> None:
    p = score_pair(
        _movement("1240.00", description="Virement SARL ABC"),
        _entry("1250.00", D0 + dt.timedelta(days=5), description="VIR SARL ABC"),
        config,
    )
    assert p is not None
    assert p.score == pytest.approx(70.0 + 5.0 * p.details["text_similarity"], abs=0.01)
    assert "similar labels" in p.reason


def test_score_sign_penalty(config: Config) -> None:
    p = score_pair(_movement("-1250.00"), _entry("1250.00"), config)
    assert p is not None
    assert p.score == 70.0
    assert p.details["sign"] == -30.0
