"""Moteur de rapprochement heuristique : scoring 1:1, dédoublonnage, combinaisons N:1 et 1:N."""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from collections.abc import Iterable, Sequence
from decimal import Decimal
from typing import Any

from concordbank.config import Config
from concordbank.matching.blockers import build_date_blocks, candidate_indices
from concordbank.matching.budget import Deadline, TimeoutExceeded
from concordbank.matching.combinations import find_best_combination
from concordbank.matching.schema import (
    Candidate,
    CandidateEntry,
    CandidateMovement,
    MatchKind,
    MatchRun,
    MatchSuggestion,
    RunStatistics,
    SuggestionStatus,
    validate_candidates,
)
from concordbank.matching.scorers import (
    PairScore,
    confidence_level,
    contextual_tolerance_rate,
    same_sense,
    score_pair,
)

logger = logging.getLogger(__name__)

# Part minimale d'un élément dans le montant cible d'une combinaison
MIN_SHARE_OF_TARGET = Decimal("0.10")

KIND_PRIORITY = {
    MatchKind.EXACT: 0,
    MatchKind.HEURISTIC: 1,
    MatchKind.LEARNED: 2,
    MatchKind.COMBINATION: 3,
}


def rank_key(suggestion: MatchSuggestion) -> tuple[float, int]:
    return (-suggestion.score, KIND_PRIORITY[suggestion.kind])


def merge_suggestions(*groups: Iterable[MatchSuggestion]) -> list[MatchSuggestion]:
    """
    Fusionne plusieurs jeux de suggestions en un classement sans conflit.

    Tri par score décroissant puis par nature (exact, heuristique, appris,
    combinaison) ; une suggestion qui partage un mouvement ou une écriture avec
    une suggestion mieux classée est écartée.
    """
    flat = [s for group in groups for s in group]
    ordered = sorted(enumerate(flat), key=lambda pair: (*rank_key(pair[1]), pair[0]))
    used_movements: set[str] = set()
    used_entries: set[str] = set()
    kept: list[MatchSuggestion] = []
    for _, s in ordered:
        if used_movements.intersection(s.movement_ids) or used_entries.intersection(s.entry_ids):
            logger.debug("Suggestion %s écartée (conflit)", s.suggestion_id)
            continue
        used_movements.update(s.movement_ids)
        used_entries.update(s.entry_ids)
        kept.append(s)
    return kept


def compute_statistics(
    movements: Sequence[CandidateMovement],
    entries: Sequence[CandidateEntry],
    suggestions: Sequence[MatchSuggestion],
    *,
    invalid_records: int = 0,
    truncated: bool = False,
    warnings: list[str] | None = None,
    elapsed_seconds: float = 0.0,
) -> RunStatistics:
    """Statistiques de rapprochement : paliers, non rapprochés, montants inexpliqués, déséquilibre résiduel."""
    live = [s for s in suggestions if s.status in (SuggestionStatus.PENDING, SuggestionStatus.APPLIED)]
    matched_movements = {mid for s in live for mid in s.movement_ids}
    matched_entries = {eid for s in live for eid in s.entry_ids}
    unmatched_m = [m for m in movements if m.id not in matched_movements]
    unmatched_e = [e for e in entries if e.id not in matched_entries]

    by_level: dict[str, int] = {}
    by_kind: dict[str, int] = {}
    for s in suggestions:
        by_level[s.level.value] = by_level.get(s.level.value, 0) + 1
        by_kind[s.kind.value] = by_kind.get(s.kind.value, 0) + 1

    return RunStatistics(
        nb_movements=len(movements),
        nb_entries=len(entries),
        by_level=by_level,
        by_kind=by_kind,
        unmatched_movements=len(unmatched_m),
        unmatched_entries=len(unmatched_e),
        unexplained_movements_amount=sum((abs(m.amount) for m in unmatched_m), Decimal("0")),
        unexplained_entries_amount=sum((abs(e.amount) for e in unmatched_e), Decimal("0")),
        residual_imbalance=sum((m.amount for m in unmatched_m), Decimal("0"))
        - sum((e.amount for e in unmatched_e), Decimal("0")),
        invalid_records=invalid_records,
        truncated=truncated,
        warnings=list(warnings or []),
        elapsed_seconds=round(elapsed_seconds, 3),
    )


class Linker:
    """Générateur de suggestions heuristiques entre mouvements bancaires et écritures."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.min_score = config.min_score
        self.windows = config.date_thresholds
        self.multiple = config.multiple_matching
        self.performance = config.performance
        self.tolerance = config.amount_tolerance

    def run(
        self,
        movements: Iterable[Any],
        entries: Iterable[Any],
        *,
        tenant_id: str = "default",
        deadline: Deadline | None = None,
        run_id: str | None = None,
    ) -> MatchRun:
        """
        Exécute le rapprochement heuristique.

        Returns:
            MatchRun : suggestions classées (aucun mouvement ni aucune écriture
            dans deux suggestions) et statistiques. En cas de délai dépassé, les
            suggestions déjà construites sont conservées et truncated est levé.
        """
        started_at = dt.datetime.now()
        deadline = deadline or Deadline(self.performance.timeout_seconds)
        run_id = run_id or uuid.uuid4().hex[:12]

        valid_movements, valid_entries, warnings = validate_candidates(movements, entries)
        invalid_records = len(warnings)
        for w in warnings:
            logger.debug(w)

        phase_movements, dropped_m = self._cap(valid_movements)
        phase_entries, dropped_e = self._cap(valid_entries)
        truncated = False
        if dropped_m or dropped_e:
            truncated = True
            warnings.append(
                f"Plafond max_items_per_phase={self.performance.max_items_per_phase}: "
                f"{dropped_m} mouvement(s) et {dropped_e} écriture(s) non traités"
            )

        suggestions: list[MatchSuggestion] = []
        used_m: set[int] = set()
        used_e: set[int] = set()

        pairs: list[PairScore] = []
        try:
            self._score_pairs(phase_movements, phase_entries, pairs, deadline)
        except TimeoutExceeded as e:
            truncated = True
            warnings.append(f"Scoring 1:1 interrompu: {e}")
        self._assign(pairs, phase_movements, phase_entries, suggestions, used_m, used_e, run_id)

        if self.multiple.enabled and not deadline.expired:
            try:
                if self._match_multiple(
                    phase_movements, phase_entries, used_m, used_e, suggestions, run_id, deadline, one_to_many=True
                ):
                    truncated = True
                if self._match_multiple(
                    phase_entries, phase_movements, used_e, used_m, suggestions, run_id, deadline, one_to_many=False
                ):
                    truncated = True
            except TimeoutExceeded as e:
                truncated = True
                warnings.append(f"Recherche de combinaisons interrompue: {e}")
        elif self.multiple.enabled:
            truncated = True
            warnings.append("Recherche de combinaisons ignorée: délai dépassé")

        suggestions.sort(key=rank_key)
        stats = compute_statistics(
            valid_movements,
            valid_entries,
            suggestions,
            invalid_records=invalid_records,
            truncated=truncated,
            warnings=warnings,
            elapsed_seconds=deadline.elapsed(),
        )
        if truncated:
            logger.warning("Rapprochement %s tronqué: %s", run_id, "; ".join(warnings[-3:]))
        logger.info(
            "Rapprochement %s: %d suggestion(s), %d mouvement(s) et %d écriture(s) non rapprochés",
            run_id,
            len(suggestions),
            stats.unmatched_movements,
            stats.unmatched_entries,
        )
        return MatchRun(
            run_id=run_id,
            tenant_id=tenant_id,
            suggestions=suggestions,
            statistics=stats,
            started_at=started_at,
        )

    def _cap(self, items: list[Any]) -> tuple[list[Any], int]:
        """Garde les max_items_per_phase éléments les plus récents (ordre d'entrée conservé)."""
        cap = self.performance.max_items_per_phase
        if len(items) <= cap:
            return items, 0
        recent = sorted(range(len(items)), key=lambda i: (items[i].date, -i), reverse=True)[:cap]
        return [items[i] for i in sorted(recent)], len(items) - cap

    def _score_pairs(
        self,
        movements: Sequence[CandidateMovement],
        entries: Sequence[CandidateEntry],
        out: list[PairScore],
        deadline: Deadline,
    ) -> None:
        blocks = build_date_blocks(entries)
        for mi, movement in enumerate(movements):
            deadline.check()
            for ei in candidate_indices(movement.date, blocks, self.windows.low_match_days):
                scored = score_pair(movement, entries[ei], self.config, movement_index=mi, entry_index=ei)
                if scored is not None and scored.score >= self.min_score:
                    out.append(scored)

    def _assign(
        self,
        pairs: list[PairScore],
        movements: Sequence[CandidateMovement],
        entries: Sequence[CandidateEntry],
        suggestions: list[MatchSuggestion],
        used_m: set[int],
        used_e: set[int],
        run_id: str,
    ) -> None:
        """Affectation gloutonne par score : la meilleure paire l'emporte, les paires en conflit sont écartées."""
        pairs.sort(key=lambda p: (-p.score, p.day_gap, p.amount_gap, p.movement_index, p.entry_index))
        for p in pairs:
            if p.movement_index in used_m or p.entry_index in used_e:
                continue
            used_m.add(p.movement_index)
            used_e.add(p.entry_index)
            suggestions.append(
                MatchSuggestion(
                    suggestion_id=f"{run_id}-{len(suggestions) + 1:04d}",
                    movement_ids=(movements[p.movement_index].id,),
                    entry_ids=(entries[p.entry_index].id,),
                    score=p.score,
                    level=confidence_level(p.score),
                    kind=p.kind,
                    reason=p.reason,
                    details=p.details,
                )
            )

    def _match_multiple(
        self,
        targets: Sequence[Candidate],
        pool_items: Sequence[Candidate],
        used_targets: set[int],
        used_pool: set[int],
        suggestions: list[MatchSuggestion],
        run_id: str,
        deadline: Deadline,
        *,
        one_to_many: bool,
    ) -> bool:
        """
        Cherche, pour chaque cible non rapprochée, une combinaison d'éléments du vivier.

        one_to_many=True : un mouvement expliqué par plusieurs écritures (1:N) ;
        False : une écriture expliquée par plusieurs mouvements (N:1).

        Returns:
            True si au moins une recherche a été tronquée.
        """
        mm = self.multiple
        perf = self.performance
        blocks = build_date_blocks(pool_items)
        score = min(mm.confidence_score, self.config.scores.exact_match - 1)
        truncated = False

        for ti, target in enumerate(targets):
            if ti in used_targets:
                continue
            deadline.check()
            target_amount = abs(target.amount)
            if target_amount == 0:
                continue
            rate = contextual_tolerance_rate(target.amount, self.tolerance)
            upper = target_amount * (1 + rate)
            floor = target_amount * MIN_SHARE_OF_TARGET

            pool = [
                pi
                for pi in candidate_indices(target.date, blocks, mm.max_date_range_days, exclude=used_pool)
                if same_sense(target.amount, pool_items[pi].amount) and floor < abs(pool_items[pi].amount) <= upper
            ]
            if len(pool) < mm.min_transactions:
                continue
            pool.sort(key=lambda pi: (-abs(pool_items[pi].amount), pi))
            pool = pool[: perf.max_candidates_for_multiple_matching]

            result = find_best_combination(
                target_amount,
                [abs(pool_items[pi].amount) for pi in pool],
                rate,
                mm.max_transactions,
                min_size=mm.min_transactions,
                max_states=perf.max_subset_sum_states,
                max_pool=perf.max_subset_sum_pool,
                max_operations=perf.max_subset_sum_operations,
                greedy_only=perf.high_performance_mode,
                deadline=deadline,
            )
            truncated = truncated or result.truncated
            if not result:
                continue

            chosen = [pool[k] for k in result.indices]
            used_targets.add(ti)
            used_pool.update(chosen)
            chosen_ids = tuple(pool_items[pi].id for pi in chosen)
            if one_to_many:
                movement_ids, entry_ids = (target.id,), chosen_ids
                reason = f"{len(chosen_ids)} entries sum to {result.total} for movement {target_amount}"
            else:
                movement_ids, entry_ids = chosen_ids, (target.id,)
                reason = f"{len(chosen_ids)} movements sum to {result.total} for entry {target_amount}"
            suggestions.append(
                MatchSuggestion(
                    suggestion_id=f"{run_id}-{len(suggestions) + 1:04d}",
                    movement_ids=movement_ids,
                    entry_ids=entry_ids,
                    score=score,
                    level=confidence_level(score),
                    kind=MatchKind.COMBINATION,
                    reason=f"{reason} (gap={result.deviation}, {result.strategy}); manual review",
                    details={"deviation": float(result.deviation), "items": float(len(chosen_ids))},
                )
            )
        return truncated
