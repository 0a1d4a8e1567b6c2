"""
Réentraînement périodique, suivi de dérive et nettoyage des modèles.

Les points d'entrée train, cleanup et monitor sont appelés par un ordonnanceur
externe selon ml.training_schedule, ml.cleanup_schedule et ml.monitoring_schedule.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from concordbank.config import MLConfig
from concordbank.ml.feedback import FeedbackStore, PredictionLog
from concordbank.ml.inference import ModelCache
from concordbank.ml.registry import ModelRegistry, TrainedModel
from concordbank.ml.store import ModelStore
from concordbank.ml.training import TrainingPipeline, TrainingSkipped
from concordbank.ml.workers import WorkerPools

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    IDLE = "IDLE"
    EVALUATING = "EVALUATING"
    TRAINING = "TRAINING"
    DEPLOYING = "DEPLOYING"


@dataclass(frozen=True)
class RetrainingDecision:
    needed: bool
    reasons: tuple[str, ...] = ()
    real_world_accuracy: float | None = None
    drift: float | None = None


@dataclass(frozen=True)
class ModelStats:
    """Indicateurs du modèle actif d'un tenant."""

    tenant_id: str
    version: str
    recorded_accuracy: float
    real_world_accuracy: float | None
    drift: float | None
    average_latency_ms: float | None
    prediction_count: int
    age_days: float
    needs_retraining: bool


class RetrainingOrchestrator:
    """Machine d'états par tenant : IDLE -> EVALUATING -> TRAINING -> DEPLOYING -> IDLE."""

    def __init__(
        self,
        config: MLConfig,
        pipeline: TrainingPipeline,
        store: ModelStore,
        registry: ModelRegistry,
        predictions: PredictionLog,
        feedback: FeedbackStore,
        cache: ModelCache,
        *,
        pools: WorkerPools | None = None,
        clock: Callable[[], dt.datetime] = dt.datetime.now,
    ) -> None:
        self.config = config
        self.pipeline = pipeline
        self.store = store
        self.registry = registry
        self.predictions = predictions
        self.feedback = feedback
        self.cache = cache
        self.pools = pools
        self.clock = clock
        self._states: dict[str, OrchestratorState] = {}
        self._states_lock = threading.Lock()

    def state(self, tenant_id: str) -> OrchestratorState:
        with self._states_lock:
            return self._states.get(tenant_id, OrchestratorState.IDLE)

    def _set_state(self, tenant_id: str, state: OrchestratorState) -> None:
        with self._states_lock:
            self._states[tenant_id] = state

    def _begin(self, tenant_id: str) -> bool:
        with self._states_lock:
            if self._states.get(tenant_id, OrchestratorState.IDLE) is not OrchestratorState.IDLE:
                return False
            self._states[tenant_id] = OrchestratorState.EVALUATING
            return True

    def needs_retraining(self, tenant_id: str, *, now: dt.datetime | None = None) -> RetrainingDecision:
        """
        Réentraînement nécessaire si : aucun modèle actif, modèle trop ancien,
        accuracy enregistrée sous le seuil, ou dérive |enregistrée - réelle|
        au-delà de drift_threshold sur les drift_window_days derniers jours.
        """
        now = now or self.clock()
        active = self.registry.active(tenant_id)
        if active is None:
            return RetrainingDecision(True, ("no active model",))

        reasons: list[str] = []
        age = active.age_days(now)
        if age > self.config.max_model_age_days:
            reasons.append(f"model age {age:.0f}d > {self.config.max_model_age_days}d")
        if active.accuracy < self.config.retrain_accuracy_threshold:
            reasons.append(f"accuracy {active.accuracy:.3f} < {self.config.retrain_accuracy_threshold:.3f}")

        since = now - dt.timedelta(days=self.config.drift_window_days)
        real = self.predictions.real_world_accuracy(tenant_id, since=since, model_version=active.version)
        drift = None
        if real is not None:
            drift = round(abs(active.accuracy - real), 6)
            if drift > self.config.drift_threshold:
                reasons.append(f"drift {drift:.3f} > {self.config.drift_threshold:.3f}")

        return RetrainingDecision(bool(reasons), tuple(reasons), real, drift)

    def train(self, tenant_id: str, *, force: bool = False) -> TrainedModel | TrainingSkipped | None:
        """
        Point d'entrée périodique d'entraînement.

        Returns:
            None si rien n'a été lancé (tâche déjà en cours, entraînement
            automatique désactivé ou modèle encore valide).
        """
        if not force and not self.config.auto_training_enabled:
            logger.info("Entraînement automatique désactivé pour %s", tenant_id)
            return None
        if not self._begin(tenant_id):
            logger.info("Entraînement %s déjà en cours, ignoré", tenant_id)
            return None

        try:
            decision = self.needs_retraining(tenant_id)
            if not force and not decision.needed:
                logger.info("Modèle %s à jour, pas de réentraînement", tenant_id)
                return None
            logger.info("Réentraînement %s: %s", tenant_id, "; ".join(decision.reasons) or "forcé")

            self._set_state(tenant_id, OrchestratorState.TRAINING)
            result = self.pipeline.train(tenant_id)
            if isinstance(result, TrainedModel):
                if result.is_active:
                    self._set_state(tenant_id, OrchestratorState.DEPLOYING)
                    self.cache.invalidate(tenant_id)
                self._apply_retention(tenant_id)
            return result
        finally:
            self._set_state(tenant_id, OrchestratorState.IDLE)

    def submit_train(self, tenant_id: str, *, force: bool = False) -> Future:
        """Planifie train() sur le pool d'entraînement."""
        if self.pools is None:
            raise RuntimeError("Aucun pool de travailleurs configuré")
        return self.pools.training.submit(self.train, tenant_id, force=force)

    def _apply_retention(self, tenant_id: str) -> list[Path]:
        with self.registry.lock(tenant_id):
            active = self.registry.active(tenant_id)
            protected = [active.artifact_location] if active is not None else []
            deleted = self.store.retain(tenant_id, self.config.keep_last_models, protected=protected)
            if deleted:
                self.registry.forget(tenant_id, deleted)
        return deleted

    def cleanup(self, tenant_id: str) -> list[Path]:
        """Point d'entrée périodique de nettoyage : rétention des artefacts et purge des exemples consommés."""
        deleted = self._apply_retention(tenant_id)
        self.feedback.purge(tenant_id, now=self.clock())
        return deleted

    def monitor(self, tenant_id: str) -> ModelStats | None:
        """Point d'entrée périodique de suivi : statistiques du modèle actif, avertit si un réentraînement s'impose."""
        now = self.clock()
        active = self.registry.active(tenant_id)
        if active is None:
            logger.warning("Aucun modèle actif pour %s", tenant_id)
            return None
        decision = self.needs_retraining(tenant_id, now=now)
        since = now - dt.timedelta(days=self.config.drift_window_days)
        stats = ModelStats(
            tenant_id=tenant_id,
            version=active.version,
            recorded_accuracy=active.accuracy,
            real_world_accuracy=decision.real_world_accuracy,
            drift=decision.drift,
            average_latency_ms=self.predictions.average_latency_ms(
                tenant_id, since=since, model_version=active.version
            ),
            prediction_count=self.predictions.count(tenant_id, since=since, model_version=active.version),
            age_days=round(active.age_days(now), 2),
            needs_retraining=decision.needed,
        )
        if decision.needed:
            logger.warning("Réentraînement recommandé pour %s: %s", tenant_id, "; ".join(decision.reasons))
        return stats
