"""Apprentissage : caractéristiques, stockage, entraînement, inférence et réentraînement."""

from concordbank.ml.features import FEATURE_NAMES, FeatureVector, HistoricalAggregates, extract
from concordbank.ml.inference import InferenceService, ModelCache
from concordbank.ml.orchestrator import RetrainingOrchestrator
from concordbank.ml.registry import ModelRegistry, ModelStatus, TrainedModel
from concordbank.ml.store import ArtifactStoreError, ModelLoadError, ModelStore
from concordbank.ml.training import SkipReason, TrainingPipeline, TrainingSkipped

__all__ = [
    "FEATURE_NAMES",
    "ArtifactStoreError",
    "FeatureVector",
    "HistoricalAggregates",
    "InferenceService",
    "ModelCache",
    "ModelLoadError",
    "ModelRegistry",
    "ModelStatus",
    "ModelStore",
    "RetrainingOrchestrator",
    "SkipReason",
    "TrainedModel",
    "TrainingPipeline",
    "TrainingSkipped",
    "extract",
]
