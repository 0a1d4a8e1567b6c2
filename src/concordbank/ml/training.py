"""Entraînement, évaluation et déploiement du classifieur de correspondances."""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import numpy as np
from sklearn.ensemble import RandomForestClassifier
from sklearn.metrics import accuracy_score, f1_score, precision_score, recall_score
from sklearn.model_selection import train_test_split

from concordbank.config import MLConfig
from concordbank.matching.budget import Deadline, TimeoutExceeded
from concordbank.ml.feedback import FeedbackStore, TrainingExample
from concordbank.ml.registry import ModelRegistry, ModelStatus, TrainedModel
from concordbank.ml.store import ModelStore

if TYPE_CHECKING:
    from concordbank.ml.inference import ModelCache

logger = logging.getLogger(__name__)


class SkipReason(str, Enum):
    INSUFFICIENT_DATA = "insufficient_data"
    SINGLE_CLASS = "single_class"
    ACCURACY_BELOW_THRESHOLD = "accuracy_below_threshold"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class TrainingSkipped:
    """Entraînement non abouti ; le modèle actif reste en place."""

    tenant_id: str
    reason: SkipReason
    detail: str
    example_count: int = 0


@dataclass(frozen=True)
class EvaluationMetrics:
    accuracy: float
    precision: float
    recall: float
    f1: float


def build_dataset(examples: list[TrainingExample]) -> tuple[np.ndarray, np.ndarray]:
    """Matrice de caractéristiques et vecteur d'étiquettes."""
    X = np.array([ex.features.to_list() for ex in examples], dtype=float)
    y = np.array([ex.label for ex in examples], dtype=int)
    return X, y


def new_classifier(config: MLConfig) -> RandomForestClassifier:
    """Arbres de décision en bagging : toutes les caractéristiques à chaque nœud, échantillons bootstrap."""
    return RandomForestClassifier(
        n_estimators=config.num_trees,
        max_depth=config.max_depth,
        min_samples_split=config.min_samples_split,
        min_samples_leaf=config.min_samples_leaf,
        max_features=None,
        bootstrap=True,
        random_state=config.random_state,
        n_jobs=1,
    )


def evaluate(classifier: RandomForestClassifier, X: np.ndarray, y: np.ndarray) -> EvaluationMetrics:
    predicted = classifier.predict(X)
    return EvaluationMetrics(
        accuracy=float(accuracy_score(y, predicted)),
        precision=float(precision_score(y, predicted, zero_division=0)),
        recall=float(recall_score(y, predicted, zero_division=0)),
        f1=float(f1_score(y, predicted, zero_division=0)),
    )


class TrainingPipeline:
    """Construit le jeu étiqueté, entraîne, évalue sur un échantillon réservé et déploie si meilleur."""

    def __init__(
        self,
        config: MLConfig,
        store: ModelStore,
        registry: ModelRegistry,
        feedback: FeedbackStore,
        *,
        cache: ModelCache | None = None,
        clock: Callable[[], dt.datetime] = dt.datetime.now,
    ) -> None:
        self.config = config
        self.store = store
        self.registry = registry
        self.feedback = feedback
        self.cache = cache
        self.clock = clock

    def _new_version(self, tenant_id: str, now: dt.datetime) -> str:
        base = f"v{now:%Y%m%d-%H%M%S}"
        version, n = base, 1
        while self.registry.get(tenant_id, version) is not None:
            n += 1
            version = f"{base}-{n}"
        return version

    def train(self, tenant_id: str, *, deadline: Deadline | None = None) -> TrainedModel | TrainingSkipped:
        """
        Entraîne un modèle pour le tenant.

        Returns:
            TrainedModel (DEPLOYED s'il a été promu, TRAINED sinon) ou TrainingSkipped.

        Raises:
            ArtifactStoreError: Si l'enregistrement de l'artefact échoue.
        """
        deadline = deadline or Deadline(self.config.training_timeout_seconds)
        now = self.clock()
        examples = self.feedback.examples(tenant_id, now=now)
        count = len(examples)

        if count < self.config.min_training_data:
            logger.info(
                "Entraînement %s ignoré: %d exemple(s) < %d", tenant_id, count, self.config.min_training_data
            )
            return TrainingSkipped(
                tenant_id,
                SkipReason.INSUFFICIENT_DATA,
                f"{count} exemple(s), minimum {self.config.min_training_data}",
                count,
            )

        X, y = build_dataset(examples)
        classes, class_counts = np.unique(y, return_counts=True)
        if len(classes) < 2:
            return TrainingSkipped(tenant_id, SkipReason.SINGLE_CLASS, "une seule étiquette présente", count)

        try:
            metrics = self._fit_and_evaluate(X, y, class_counts, deadline)
            if metrics.accuracy < self.config.min_accuracy:
                logger.warning(
                    "Modèle %s écarté: accuracy %.3f < %.3f", tenant_id, metrics.accuracy, self.config.min_accuracy
                )
                return TrainingSkipped(
                    tenant_id,
                    SkipReason.ACCURACY_BELOW_THRESHOLD,
                    f"accuracy {metrics.accuracy:.3f} < {self.config.min_accuracy:.3f}",
                    count,
                )
            classifier = new_classifier(self.config)
            classifier.fit(X, y)
            deadline.check()
        except TimeoutExceeded as e:
            logger.warning("Entraînement %s abandonné: %s", tenant_id, e)
            return TrainingSkipped(tenant_id, SkipReason.TIMEOUT, str(e), count)

        version = self._new_version(tenant_id, now)
        location = self.store.save(
            classifier,
            tenant_id,
            version,
            metadata={
                "accuracy": metrics.accuracy,
                "precision": metrics.precision,
                "recall": metrics.recall,
                "f1": metrics.f1,
                "training_example_count": count,
            },
        )
        model = self.registry.register(
            TrainedModel(
                tenant_id=tenant_id,
                version=version,
                created_at=now,
                accuracy=metrics.accuracy,
                precision=metrics.precision,
                recall=metrics.recall,
                f1=metrics.f1,
                training_example_count=count,
                artifact_location=location,
                status=ModelStatus.TRAINED,
            )
        )
        logger.info(
            "Modèle %s/%s entraîné sur %d exemples (accuracy=%.3f, f1=%.3f)",
            tenant_id,
            version,
            count,
            metrics.accuracy,
            metrics.f1,
        )

        with self.registry.lock(tenant_id):
            active = self.registry.active(tenant_id)
            if active is None or model.accuracy > active.accuracy:
                model = self.registry.promote(tenant_id, version)
                if self.cache is not None:
                    self.cache.invalidate(tenant_id)
            else:
                logger.info(
                    "Modèle %s/%s conservé sans déploiement (accuracy %.3f <= %.3f du modèle actif %s)",
                    tenant_id,
                    version,
                    model.accuracy,
                    active.accuracy,
                    active.version,
                )

        self.feedback.mark_consumed(tenant_id, examples)
        return model

    def _fit_and_evaluate(
        self,
        X: np.ndarray,
        y: np.ndarray,
        class_counts: np.ndarray,
        deadline: Deadline,
    ) -> EvaluationMetrics:
        stratify = y if class_counts.min() >= 2 else None
        X_train, X_test, y_train, y_test = train_test_split(
            X,
            y,
            test_size=self.config.holdout_fraction,
            random_state=self.config.random_state,
            stratify=stratify,
        )
        deadline.check()
        candidate = new_classifier(self.config)
        candidate.fit(X_train, y_train)
        deadline.check()
        return evaluate(candidate, X_test, y_test)
