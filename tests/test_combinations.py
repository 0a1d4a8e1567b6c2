"""Tests de la recherche combinatoire."""

from decimal import Decimal

import pytest

from concordbank.matching import combinations
from concordbank.matching.budget import Deadline
from concordbank.matching.combinations import (
    find_best_combination,
    greedy_pass,
    subset_sum_pass,
    to_minor_units,
    tolerance_band,
)


def _d(*values: str) -> list[Decimal]:
    return [Decimal(v) for v in values]


def test_to_minor_units_and_band() -> None:
    assert to_minor_units(Decimal("-12.345")) == 1235
    assert tolerance_band(10000, Decimal("0.01")) == (9900, 10100)


def test_exact_single_preferred_over_greedy() -> None:
    """119 250 : le montant exact l'emporte sur 120 000 trouvé par la passe gloutonne."""
    amounts = _d("119250", "59625", "59625", "120000")
    result = find_best_combination(Decimal("119250"), amounts, Decimal("0.01"), 3)
    assert result.indices == (0,)
    assert result.deviation == 0
    assert result.strategy == "subset_sum"
    assert not result.truncated


def test_greedy_takes_all_three() -> None:
    result = find_best_combination(Decimal("100000"), _d("30000", "40000", "35000"), Decimal("0.05"), 3)
    assert result.indices == (0, 1, 2)
    assert result.total == Decimal("105000")
    assert result.strategy == "greedy"


def test_greedy_pass_skips_oversized() -> None:
    found = greedy_pass([500, 300, 200], 490, 510, 3)
    assert found == (500, (0,))
    assert greedy_pass([800, 300], 490, 510, 3) is None


def test_min_size_respected() -> None:
    amounts = _d("100", "60", "40")
    result = find_best_combination(Decimal("100"), amounts, Decimal("0"), 3, min_size=2)
    assert result.indices == (1, 2)


def test_no_combination_is_empty() -> None:
    result = find_best_combination(Decimal("1000"), _d("10", "20"), Decimal("0.01"), 3)
    assert not result
    assert result.strategy == "none"
    assert result.size == 0


def test_inputs_not_mutated_and_deterministic() -> None:
    amounts = _d("25", "50", "25", "75", "10")
    snapshot = list(amounts)
    first = find_best_combination(Decimal("100"), amounts, Decimal("0"), 3)
    second = find_best_combination(Decimal("100"), amounts, Decimal("0"), 3)
    assert amounts == snapshot
    assert first == second
    assert first.total == Decimal("100")
    assert first.size == 2


def test_pool_above_cap_is_truncated() -> None:
    amounts = [Decimal("7")] * 60
    result = find_best_combination(Decimal("100"), amounts, Decimal("0"), 5, max_pool=50)
    assert not result
    assert result.truncated


def test_greedy_only_mode() -> None:
    amounts = _d("119250", "59625", "59625", "120000")
    result = find_best_combination(Decimal("119250"), amounts, Decimal("0.01"), 3, greedy_only=True)
    assert result.indices == (3,)
    assert result.strategy == "greedy"


def test_subset_sum_operation_cap() -> None:
    units = list(range(1, 40))
    found, truncated = subset_sum_pass(units, 5000, 5000, 5000, 5, max_operations=10)
    assert truncated
    assert found is None


def test_subset_sum_state_table_bounded() -> None:
    """L'élagage garde la table sous max_states et la meilleure somme reste trouvée."""
    units = [101 + 7 * i for i in range(40)]
    found, truncated = subset_sum_pass(units, 1000, 990, 1010, 5, max_states=50)
    assert not truncated
    assert found is not None
    assert 990 <= found[0] <= 1010


def test_subset_sum_never_exceeds_max_states(monkeypatch: pytest.MonkeyPatch) -> None:
    """La table n'atteint jamais plus de max_states états, même transitoirement."""
    sizes: list[tuple[int, int]] = []
    original = combinations._prune

    def recording_prune(states, target, keep):
        pruned = original(states, target, keep)
        sizes.append((len(states), len(pruned)))
        return pruned

    monkeypatch.setattr(combinations, "_prune", recording_prune)
    units = [101 + 7 * i for i in range(40)]
    subset_sum_pass(units, 1000, 990, 1010, 5, max_states=50)

    assert sizes
    assert all(before <= 50 for before, _ in sizes)
    assert all(after <= 25 for _, after in sizes)


def test_prune_keeps_empty_sum() -> None:
    states = {(0, 0): (), (500, 1): (0,), (990, 1): (1,), (1005, 1): (2,)}
    pruned = combinations._prune(states, 1000, 2)
    assert pruned == {(0, 0): (), (1005, 1): (2,)}


def test_expired_deadline_truncates() -> None:
    ticks = iter([0.0, 10.0, 10.0, 10.0, 10.0, 10.0])
    deadline = Deadline(1.0, clock=lambda: next(ticks))
    found, truncated = subset_sum_pass([100, 200], 300, 300, 300, 3, deadline=deadline)
    assert truncated
    assert found is None


def test_negative_tolerance_rejected() -> None:
    with pytest.raises(ValueError, match="tolérance négative"):
        find_best_combination(Decimal("100"), _d("100"), Decimal("-0.1"), 3)
