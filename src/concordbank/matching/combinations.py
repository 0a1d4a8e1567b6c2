"""
Recherche combinatoire : sous-ensemble de montants qui explique un montant cible.

Deux stratégies, la moins coûteuse d'abord :
- passe gloutonne (tri décroissant, on saute ce qui dépasse la borne haute) ;
- somme de sous-ensembles bornée, en unités mineures (centimes), qui garde pour
  chaque somme atteignable le plus petit ensemble d'indices (un par taille
  inférieure à min_size, puis un seul au-delà).

La table des sommes ne dépasse jamais max_states états : avant d'en ajouter un
au-delà, elle est réduite de moitié en gardant les sommes les plus proches de
la cible (et toujours la somme vide).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal

from concordbank.matching.budget import CombinatorialBudgetExceeded, Deadline, TimeoutExceeded

logger = logging.getLogger(__name__)

MINOR_UNITS = Decimal(100)
DEFAULT_MAX_STATES = 5000
DEFAULT_MAX_POOL = 50
DEFAULT_MAX_OPERATIONS = 2_000_000

_Found = tuple[int, tuple[int, ...]]  # (somme en centimes, indices)
_States = dict[tuple[int, int], tuple[int, ...]]  # (somme, min(taille, min_size)) -> indices


@dataclass(frozen=True)
class CombinationResult:
    """Combinaison retenue ; vide (falsy) si aucune ne tient dans la tolérance."""

    indices: tuple[int, ...]
    total: Decimal
    deviation: Decimal
    strategy: str  # greedy, subset_sum, none
    truncated: bool = False

    def __bool__(self) -> bool:
        return bool(self.indices)

    @property
    def size(self) -> int:
        return len(self.indices)

    @classmethod
    def empty(cls, *, truncated: bool = False) -> CombinationResult:
        return cls(indices=(), total=Decimal("0"), deviation=Decimal("0"), strategy="none", truncated=truncated)


def to_minor_units(amount: Decimal) -> int:
    """Montant absolu en centimes (arrondi au plus proche)."""
    return int((abs(amount) * MINOR_UNITS).to_integral_value(rounding=ROUND_HALF_UP))


def tolerance_band(target_units: int, tolerance: Decimal) -> tuple[int, int]:
    """Bornes entières [cible x (1 - tol), cible x (1 + tol)], arrondies vers l'intérieur."""
    target = Decimal(target_units)
    low = int((target * (1 - tolerance)).to_integral_value(rounding=ROUND_CEILING))
    high = int((target * (1 + tolerance)).to_integral_value(rounding=ROUND_FLOOR))
    return low, high


def greedy_pass(
    units: Sequence[int],
    low: int,
    high: int,
    max_size: int,
    *,
    min_size: int = 1,
) -> _Found | None:
    """
    Passe gloutonne : montants décroissants, cumul tant que la borne haute n'est pas
    dépassée, arrêt dès que la somme entre dans la bande.
    """
    order = sorted(range(len(units)), key=lambda i: (-units[i], i))
    chosen: list[int] = []
    total = 0
    for i in order:
        if len(chosen) >= max_size:
            break
        if units[i] <= 0 or total + units[i] > high:
            continue
        chosen.append(i)
        total += units[i]
        if total >= low:
            break
    if chosen and low <= total <= high and len(chosen) >= min_size:
        return total, tuple(sorted(chosen))
    return None


def _prune(states: _States, target: int, keep: int) -> _States:
    ranked = sorted(
        ((k, v) for k, v in states.items() if k != (0, 0)),
        key=lambda kv: (abs(kv[0][0] - target), len(kv[1]), kv[0]),
    )
    pruned: _States = {(0, 0): ()}
    pruned.update(ranked[: keep - 1])
    return pruned


def _best_state(
    states: _States,
    target: int,
    low: int,
    high: int,
    min_size: int,
) -> _Found | None:
    best: tuple[int, int, tuple[int, ...], int] | None = None
    for (total, _), idxs in states.items():
        if not low <= total <= high or len(idxs) < min_size:
            continue
        key = (abs(total - target), len(idxs), tuple(sorted(idxs)), total)
        if best is None or key < best:
            best = key
    if best is None:
        return None
    return best[3], best[2]


def subset_sum_pass(
    units: Sequence[int],
    target: int,
    low: int,
    high: int,
    max_size: int,
    *,
    min_size: int = 1,
    max_states: int = DEFAULT_MAX_STATES,
    max_operations: int = DEFAULT_MAX_OPERATIONS,
    deadline: Deadline | None = None,
) -> tuple[_Found | None, bool]:
    """
    Somme de sous-ensembles bornée.

    Returns:
        (meilleure combinaison ou None, tronqué)
    """
    states: _States = {(0, 0): ()}
    limit = max(max_states, 2)
    operations = 0
    truncated = False

    try:
        for i, amount in enumerate(units):
            if deadline is not None:
                deadline.check()
            if amount <= 0 or amount > high:
                continue
            for (total, _), idxs in list(states.items()):
                if len(idxs) >= max_size:
                    continue
                operations += 1
                if operations > max_operations:
                    raise CombinatorialBudgetExceeded(f"{max_operations} opérations atteintes")
                new_total = total + amount
                if new_total > high:
                    continue
                size = len(idxs) + 1
                key = (new_total, min(size, min_size))
                current = states.get(key)
                if current is not None and size >= len(current):
                    continue
                if current is None and len(states) >= limit:
                    states = _prune(states, target, limit // 2)
                states[key] = idxs + (i,)
    except (CombinatorialBudgetExceeded, TimeoutExceeded) as e:
        logger.debug("Recherche combinatoire interrompue: %s", e)
        truncated = True

    return _best_state(states, target, low, high, min_size), truncated


def find_best_combination(
    target: Decimal,
    amounts: Sequence[Decimal],
    tolerance: Decimal | float,
    max_size: int,
    *,
    min_size: int = 1,
    max_states: int = DEFAULT_MAX_STATES,
    max_pool: int = DEFAULT_MAX_POOL,
    max_operations: int = DEFAULT_MAX_OPERATIONS,
    greedy_only: bool = False,
    deadline: Deadline | None = None,
) -> CombinationResult:
    """
    Plus petit sous-ensemble d'amounts dont la somme tient dans
    [target x (1 - tolerance), target x (1 + tolerance)], à écart minimal.

    Args:
        target: Montant cible (valeur absolue utilisée).
        amounts: Montants du vivier (valeurs absolues utilisées) ; non modifiés.
        tolerance: Tolérance relative symétrique (0.01 = 1 %).
        max_size: Taille maximale de la combinaison.
        min_size: Taille minimale de la combinaison.
        max_states: Taille maximale de la table des sommes (2 au minimum).
        max_pool: Au-delà, la somme de sous-ensembles n'est pas tentée.
        max_operations: Plafond d'expansions d'états.
        greedy_only: Passe gloutonne seule (mode haute performance).
        deadline: Échéance du rapprochement.

    Returns:
        CombinationResult (indices dans amounts), vide si rien ne convient.
    """
    tol = tolerance if isinstance(tolerance, Decimal) else Decimal(str(tolerance))
    if tol < 0:
        raise ValueError(f"tolérance négative: {tolerance}")
    if max_size < 1 or min_size > max_size or not amounts:
        return CombinationResult.empty()

    units = [to_minor_units(a) for a in amounts]
    target_units = to_minor_units(target)
    if target_units <= 0:
        return CombinationResult.empty()
    low, high = tolerance_band(target_units, tol)

    best = greedy_pass(units, low, high, max_size, min_size=min_size)
    strategy = "greedy"
    truncated = False

    imprecise = best is None or best[0] != target_units
    if imprecise and not greedy_only:
        if len(units) > max_pool:
            logger.debug("Vivier de %d montants > %d : somme de sous-ensembles ignorée", len(units), max_pool)
            truncated = True
        else:
            found, truncated = subset_sum_pass(
                units,
                target_units,
                low,
                high,
                max_size,
                min_size=min_size,
                max_states=max_states,
                max_operations=max_operations,
                deadline=deadline,
            )
            if found is not None and (
                best is None
                or (abs(found[0] - target_units), len(found[1])) < (abs(best[0] - target_units), len(best[1]))
            ):
                best = found
                strategy = "subset_sum"

    if best is None:
        return CombinationResult.empty(truncated=truncated)

    total, indices = best
    return CombinationResult(
        indices=indices,
        total=Decimal(total) / MINOR_UNITS,
        deviation=Decimal(abs(total - target_units)) / MINOR_UNITS,
        strategy=strategy,
        truncated=truncated,
    )
