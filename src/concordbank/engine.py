"""
Moteur de rapprochement : heuristique et modèle appris en parallèle, fusion
des suggestions et retours opérateur.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from concurrent.futures import Future, wait
from pathlib import Path
from typing import Any

from concordbank.config import ConcordBankError, Config
from concordbank.matching.budget import Deadline
from concordbank.matching.linker import Linker, compute_statistics, merge_suggestions
from concordbank.matching.schema import (
    CandidateEntry,
    CandidateMovement,
    MatchKind,
    MatchRun,
    MatchSuggestion,
    validate_candidates,
)
from concordbank.ml.features import HistoricalAggregates, extract
from concordbank.ml.feedback import FeedbackStore, Outcome, PredictionLog
from concordbank.ml.inference import InferenceService, ModelCache
from concordbank.ml.orchestrator import RetrainingOrchestrator
from concordbank.ml.registry import ModelRegistry
from concordbank.ml.store import ModelStore
from concordbank.ml.training import TrainingPipeline
from concordbank.ml.workers import WorkerPools

logger = logging.getLogger(__name__)


class UnknownSuggestion(ConcordBankError, KeyError):
    """Suggestion inconnue de ce moteur."""


class ReconciliationEngine:
    """Point d'entrée du cœur de rapprochement pour un ensemble de tenants."""

    def __init__(
        self,
        config: Config,
        *,
        store: ModelStore | None = None,
        registry: ModelRegistry | None = None,
        feedback: FeedbackStore | None = None,
        predictions: PredictionLog | None = None,
        pools: WorkerPools | None = None,
    ) -> None:
        ml = config.ml
        state_dir = Path(ml.resolved_state_dir)
        self.config = config
        self.store = store or ModelStore(ml.models_base_dir)
        self.registry = registry or ModelRegistry(state_dir)
        self.feedback = feedback or FeedbackStore(state_dir, retention_days=ml.example_retention_days)
        self.predictions = predictions or PredictionLog(state_dir)
        self.pools = pools or WorkerPools.from_config(ml)
        self.cache = ModelCache(self.store, self.registry, ttl_seconds=ml.model_cache_ttl_seconds)
        self.linker = Linker(config)
        self.inference = InferenceService(config, self.cache, self.predictions)
        self.pipeline = TrainingPipeline(ml, self.store, self.registry, self.feedback, cache=self.cache)
        self.orchestrator = RetrainingOrchestrator(
            ml,
            self.pipeline,
            self.store,
            self.registry,
            self.predictions,
            self.feedback,
            self.cache,
            pools=self.pools,
        )
        self._runs: dict[str, MatchRun] = {}
        self._suggestions: dict[str, tuple[MatchRun, MatchSuggestion]] = {}
        self._candidates: dict[str, tuple[dict[str, CandidateMovement], dict[str, CandidateEntry]]] = {}
        self._historical: dict[str, HistoricalAggregates | None] = {}

    def close(self) -> None:
        self.pools.shutdown()

    def __enter__(self) -> ReconciliationEngine:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def run(
        self,
        tenant_id: str,
        movements: Iterable[Any],
        entries: Iterable[Any],
        *,
        historical: HistoricalAggregates | None = None,
        auto_apply: bool = False,
    ) -> MatchRun:
        """
        Rapprochement complet d'un tenant.

        Les prédictions du modèle sont calculées sur le pool d'inférence pendant
        que l'heuristique tourne ; les prédictions non terminées à l'échéance
        sont annulées et le résultat est marqué tronqué.
        """
        deadline = Deadline(self.config.performance.timeout_seconds)
        run_id = uuid.uuid4().hex[:12]
        valid_m, valid_e, warnings = validate_candidates(movements, entries)
        invalid_records = len(warnings)

        futures: list[Future] = []
        if self.config.ml.enabled and self._has_active_model(tenant_id, warnings):
            for n, movement in enumerate(valid_m, start=1):
                futures.append(
                    self.pools.inference.submit(
                        self.inference.predict_best_match,
                        movement,
                        valid_e,
                        tenant_id,
                        historical=historical,
                        suggestion_id=f"{run_id}-L{n:04d}",
                    )
                )

        heuristic = self.linker.run(valid_m, valid_e, tenant_id=tenant_id, deadline=deadline, run_id=run_id)

        learned: list[MatchSuggestion] = []
        truncated = heuristic.statistics.truncated
        if futures:
            done, not_done = wait(futures, timeout=deadline.remaining())
            for future in not_done:
                future.cancel()
            if not_done:
                truncated = True
                warnings.append(f"{len(not_done)} prédiction(s) non terminée(s) à l'échéance")
            for future in futures:
                if future not in done:
                    continue
                try:
                    suggestion = future.result()
                except ConcordBankError as e:
                    logger.warning("Prédiction abandonnée pour %s: %s", tenant_id, e)
                    warnings.append(f"prédiction abandonnée: {e}")
                    continue
                if suggestion is not None:
                    learned.append(suggestion)

        merged = merge_suggestions(heuristic.suggestions, learned)
        statistics = compute_statistics(
            valid_m,
            valid_e,
            merged,
            invalid_records=invalid_records,
            truncated=truncated,
            warnings=warnings + heuristic.statistics.warnings,
            elapsed_seconds=deadline.elapsed(),
        )
        run = MatchRun(
            run_id=run_id,
            tenant_id=tenant_id,
            suggestions=merged,
            statistics=statistics,
            started_at=heuristic.started_at,
        )
        self._runs[run_id] = run
        self._candidates[run_id] = ({m.id: m for m in valid_m}, {e.id: e for e in valid_e})
        self._historical[run_id] = historical
        for s in merged:
            self._suggestions[s.suggestion_id] = (run, s)

        if auto_apply:
            for s in run.auto_approvable(self.config.auto_approve_threshold):
                s.apply()
        logger.info(
            "Rapprochement %s (%s): %d suggestion(s) dont %d apprise(s)",
            run_id,
            tenant_id,
            len(merged),
            sum(1 for s in merged if s.kind is MatchKind.LEARNED),
        )
        return run

    def _has_active_model(self, tenant_id: str, warnings: list[str]) -> bool:
        try:
            return self.registry.active(tenant_id) is not None
        except ConcordBankError as e:
            logger.warning("Registre indisponible pour %s, heuristique seule: %s", tenant_id, e)
            warnings.append(f"modèle ignoré: {e}")
            return False

    def get_run(self, run_id: str) -> MatchRun:
        try:
            return self._runs[run_id]
        except KeyError as e:
            raise UnknownSuggestion(f"Rapprochement inconnu: {run_id}") from e

    def record_resolution(
        self,
        tenant_id: str,
        suggestion_id: str,
        outcome: Outcome | str,
        corrected_match: tuple[str, str] | None = None,
    ) -> MatchSuggestion:
        """
        Enregistre la décision de l'opérateur sur une suggestion.

        Une suggestion 1:1 devient un exemple étiqueté (1 si appliquée, 0 si
        rejetée) ; corrected_match=(movement_id, entry_id) ajoute un exemple
        positif pour la bonne paire. Les suggestions apprises alimentent aussi
        le journal des prédictions.
        """
        outcome = Outcome(outcome)
        try:
            run, suggestion = self._suggestions[suggestion_id]
        except KeyError as e:
            raise UnknownSuggestion(f"Suggestion inconnue: {suggestion_id}") from e
        if run.tenant_id != tenant_id:
            raise UnknownSuggestion(f"Suggestion {suggestion_id} inconnue pour le tenant {tenant_id}")

        if outcome is Outcome.APPLIED:
            suggestion.apply()
        else:
            suggestion.reject()

        movements, entries = self._candidates[run.run_id]
        historical = self._historical.get(run.run_id)
        if self.config.ml.enabled and suggestion.is_one_to_one:
            movement = movements[suggestion.movement_ids[0]]
            entry = entries[suggestion.entry_ids[0]]
            label = 1 if outcome is Outcome.APPLIED else 0
            self.feedback.add(tenant_id, extract(movement, entry, historical), label, suggestion_id=suggestion_id)

        if corrected_match is not None and self.config.ml.enabled:
            movement_id, entry_id = corrected_match
            if movement_id in movements and entry_id in entries:
                self.feedback.add(
                    tenant_id,
                    extract(movements[movement_id], entries[entry_id], historical),
                    1,
                    suggestion_id=suggestion_id,
                )
            else:
                logger.warning("Correction ignorée, paire inconnue: %s / %s", movement_id, entry_id)

        if suggestion.prediction_id is not None:
            correct = outcome is Outcome.APPLIED
            if corrected_match is not None:
                correct = correct and corrected_match == (suggestion.movement_ids[0], suggestion.entry_ids[0])
            self.predictions.record_outcome(tenant_id, suggestion.prediction_id, correct)
        return suggestion

    def close_run(self, run_id: str) -> int:
        """
        Clôture un rapprochement : les suggestions encore en attente expirent
        et le moteur oublie le rapprochement (ses suggestions ne peuvent plus
        être résolues).
        """
        run = self.get_run(run_id)
        expired = 0
        for s in run.pending():
            s.expire()
            expired += 1
        run.closed = True
        del self._runs[run_id]
        self._candidates.pop(run_id, None)
        self._historical.pop(run_id, None)
        for s in run.suggestions:
            self._suggestions.pop(s.suggestion_id, None)
        logger.info("Rapprochement %s clôturé: %d suggestion(s) expirée(s)", run_id, expired)
        return expired
