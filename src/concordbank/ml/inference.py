"""Inférence : meilleur candidat d'un mouvement selon le modèle actif du tenant."""

from __future__ import annotations

import datetime as dt
import logging
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import numpy as np

from concordbank.config import Config
from concordbank.matching.schema import CandidateEntry, CandidateMovement, MatchKind, MatchSuggestion
from concordbank.matching.scorers import confidence_level
from concordbank.ml.features import HistoricalAggregates, explain, extract
from concordbank.ml.feedback import FeedbackStoreError, PredictionLog, PredictionRecord
from concordbank.ml.registry import ModelRegistry, TrainedModel
from concordbank.ml.store import ModelLoadError, ModelStore

logger = logging.getLogger(__name__)

MATCH_LABEL = 1


@dataclass(frozen=True)
class LoadedModel:
    """Modèle actif et classifieur désérialisé (remplacés ensemble)."""

    model: TrainedModel
    classifier: Any
    loaded_at: float


class ModelCache:
    """
    Cache du classifieur actif par tenant.

    Invalidation explicite à chaque promotion ; durée de vie optionnelle.
    Une entrée est remplacée en une affectation : un lecteur voit l'ancien ou
    le nouveau modèle, jamais un état intermédiaire.
    """

    def __init__(
        self,
        store: ModelStore,
        registry: ModelRegistry,
        *,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.registry = registry
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, LoadedModel] = {}
        self._load_lock = threading.Lock()

    def _fresh(self, entry: LoadedModel | None, active: TrainedModel) -> bool:
        if entry is None or entry.model.version != active.version:
            return False
        if self.ttl_seconds is not None and self._clock() - entry.loaded_at > self.ttl_seconds:
            return False
        return True

    def get(self, tenant_id: str) -> LoadedModel | None:
        """
        Modèle actif chargé, ou None s'il n'y en a pas.

        Raises:
            ModelLoadError: Si l'artefact actif est absent ou corrompu.
        """
        active = self.registry.active(tenant_id)
        if active is None:
            return None
        entry = self._entries.get(tenant_id)
        if self._fresh(entry, active):
            return entry
        with self._load_lock:
            entry = self._entries.get(tenant_id)
            if self._fresh(entry, active):
                return entry
            classifier = self.store.load(active.artifact_location)
            entry = LoadedModel(model=active, classifier=classifier, loaded_at=self._clock())
            self._entries[tenant_id] = entry
            logger.debug("Modèle %s/%s chargé en cache", tenant_id, active.version)
            return entry

    def invalidate(self, tenant_id: str | None = None) -> None:
        """Vide le cache d'un tenant (ou de tous)."""
        if tenant_id is None:
            self._entries.clear()
        else:
            self._entries.pop(tenant_id, None)


def match_probabilities(classifier: Any, X: np.ndarray) -> np.ndarray:
    """Probabilité de la classe « correspondance » pour chaque ligne."""
    proba = classifier.predict_proba(X)
    classes = list(getattr(classifier, "classes_", []))
    if MATCH_LABEL not in classes:
        return np.zeros(len(X))
    return proba[:, classes.index(MATCH_LABEL)]


class InferenceService:
    """Propose le meilleur candidat d'un mouvement à partir du modèle actif."""

    def __init__(
        self,
        config: Config,
        cache: ModelCache,
        predictions: PredictionLog,
    ) -> None:
        self.config = config
        self.ml = config.ml
        self.cache = cache
        self.predictions = predictions

    def prefilter(self, movement: CandidateMovement, entries: Sequence[CandidateEntry]) -> list[CandidateEntry]:
        """
        Candidats « raisonnables » : rapport de montants dans [min_ratio, max_ratio]
        et écart de dates <= prefilter_max_days.
        """
        low = Decimal(str(self.ml.prefilter_min_ratio))
        high = Decimal(str(self.ml.prefilter_max_ratio))
        m_amount = abs(movement.amount)
        kept: list[CandidateEntry] = []
        for entry in entries:
            e_amount = abs(entry.amount)
            if e_amount == 0:
                continue
            if not low <= m_amount / e_amount <= high:
                continue
            if abs((movement.date - entry.date).days) > self.ml.prefilter_max_days:
                continue
            kept.append(entry)
        return kept

    def predict_best_match(
        self,
        movement: CandidateMovement,
        entry_candidates: Sequence[CandidateEntry],
        tenant_id: str,
        *,
        historical: HistoricalAggregates | None = None,
        suggestion_id: str | None = None,
    ) -> MatchSuggestion | None:
        """
        Meilleure écriture pour le mouvement selon le modèle, ou None.

        None sans modèle actif, si le chargement échoue (repli heuristique),
        sans candidat après pré-filtrage ou sous le seuil de confiance.
        """
        if not self.ml.enabled:
            return None
        try:
            loaded = self.cache.get(tenant_id)
        except ModelLoadError as e:
            logger.warning("Modèle indisponible pour %s, repli heuristique: %s", tenant_id, e)
            return None
        if loaded is None:
            return None

        candidates = self.prefilter(movement, entry_candidates)
        if not candidates:
            return None

        start = time.perf_counter()
        vectors = [extract(movement, entry, historical) for entry in candidates]
        X = np.array([v.to_list() for v in vectors], dtype=float)
        probabilities = match_probabilities(loaded.classifier, X)
        best = int(np.argmax(probabilities))
        probability = float(probabilities[best])
        confidence = round(probability * 100, 2)
        accepted = confidence >= self.ml.min_confidence
        latency_ms = (time.perf_counter() - start) * 1000

        prediction_id = uuid.uuid4().hex
        logged = True
        try:
            self.predictions.append(
                PredictionRecord(
                    prediction_id=prediction_id,
                    tenant_id=tenant_id,
                    movement_id=movement.id,
                    entry_id=candidates[best].id if accepted else None,
                    candidate_count=len(candidates),
                    confidence=confidence,
                    model_version=loaded.model.version,
                    latency_ms=round(latency_ms, 3),
                    created_at=dt.datetime.now(),
                )
            )
        except FeedbackStoreError as e:
            # suggestion conservée, sans suivi
            logger.warning("Journal des prédictions indisponible pour %s: %s", tenant_id, e)
            logged = False
        if not accepted:
            return None

        return MatchSuggestion(
            suggestion_id=suggestion_id or prediction_id,
            movement_ids=(movement.id,),
            entry_ids=(candidates[best].id,),
            score=confidence,
            level=confidence_level(confidence),
            kind=MatchKind.LEARNED,
            reason=f"{explain(vectors[best], probability)} (model {loaded.model.version})",
            details=vectors[best].to_dict(),
            prediction_id=prediction_id if logged else None,
        )

    def predict_many(
        self,
        movements: Sequence[CandidateMovement],
        entries: Sequence[CandidateEntry],
        tenant_id: str,
        *,
        historical: HistoricalAggregates | None = None,
    ) -> list[MatchSuggestion]:
        """Prédictions séquentielles pour une liste de mouvements."""
        out: list[MatchSuggestion] = []
        for movement in movements:
            suggestion = self.predict_best_match(movement, entries, tenant_id, historical=historical)
            if suggestion is not None:
                out.append(suggestion)
        return out
