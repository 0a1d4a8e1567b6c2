"""Configuration et chargement du fichier config JSON."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

VALID_ALGORITHMS = frozenset({"advanced", "jaro_winkler", "levenshtein", "jaccard"})
MAX_TRAINING_WORKERS = 4
MAX_INFERENCE_WORKERS = 8


class ConcordBankError(Exception):
    """Exception de base pour ConcordBank."""


class ConfigError(ConcordBankError, ValueError):
    """Erreur de validation de la configuration."""


class ConfigFileError(ConcordBankError):
    """Erreur de chargement du fichier de configuration (fichier absent, JSON invalide)."""


def _section(d: dict[str, Any], key: str) -> dict[str, Any]:
    value = d.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key} doit être un objet JSON (got {type(value).__name__})")
    return value


def _check_cron(name: str, expr: str) -> str:
    fields = str(expr).split()
    if not 5 <= len(fields) <= 7:
        raise ConfigError(f"{name} invalide: {expr!r} (5 à 7 champs attendus)")
    return str(expr)


@dataclass
class Scores:
    """Points attribués par palier de correspondance."""

    exact_match: float = 100.0
    good_match: float = 90.0
    fair_match: float = 70.0
    low_match: float = 50.0
    reference_bonus: float = 10.0
    sign_penalty: float = 30.0

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Scores:
        scores = cls(
            exact_match=float(d.get("exact_match", 100.0)),
            good_match=float(d.get("good_match", 90.0)),
            fair_match=float(d.get("fair_match", 70.0)),
            low_match=float(d.get("low_match", 50.0)),
            reference_bonus=float(d.get("reference_bonus", 10.0)),
            sign_penalty=float(d.get("sign_penalty", 30.0)),
        )
        for name in ("exact_match", "good_match", "fair_match", "low_match"):
            value = getattr(scores, name)
            if not 0 <= value <= 100:
                raise ConfigError(f"scores.{name} doit être entre 0 et 100 (got {value})")
        if not scores.exact_match >= scores.good_match >= scores.fair_match >= scores.low_match:
            raise ConfigError("scores: ordre attendu exact_match >= good_match >= fair_match >= low_match")
        if scores.reference_bonus < 0 or scores.sign_penalty < 0:
            raise ConfigError("scores: reference_bonus et sign_penalty doivent être >= 0")
        return scores


@dataclass
class DateThresholds:
    """Écart maximal en jours pour chaque palier."""

    exact_match_days: int = 0
    good_match_days: int = 3
    fair_match_days: int = 7
    low_match_days: int = 15

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> DateThresholds:
        th = cls(
            exact_match_days=int(d.get("exact_match_days", 0)),
            good_match_days=int(d.get("good_match_days", 3)),
            fair_match_days=int(d.get("fair_match_days", 7)),
            low_match_days=int(d.get("low_match_days", 15)),
        )
        if th.exact_match_days < 0:
            raise ConfigError(f"date_thresholds.exact_match_days doit être >= 0 (got {th.exact_match_days})")
        if not th.exact_match_days <= th.good_match_days <= th.fair_match_days <= th.low_match_days:
            raise ConfigError("date_thresholds: seuils croissants attendus (exact <= good <= fair <= low)")
        return th


@dataclass
class AmountTolerance:
    """
    Tolérance contextuelle sur les montants.

    Les pourcentages sont des fractions (0.05 = 5 %). Petits montants : pourcentage
    élevé avec plancher minimum_absolute. Gros montants (>= large_amount_threshold) :
    pourcentage faible plafonné par maximum_absolute.
    """

    small_amount_percent: float = 0.05
    large_amount_percent: float = 0.01
    minimum_absolute: float = 500.0
    maximum_absolute: float = 10000.0
    large_amount_threshold: float = 1_000_000.0

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> AmountTolerance:
        tol = cls(
            small_amount_percent=float(d.get("small_amount_percent", 0.05)),
            large_amount_percent=float(d.get("large_amount_percent", 0.01)),
            minimum_absolute=float(d.get("minimum_absolute", 500.0)),
            maximum_absolute=float(d.get("maximum_absolute", 10000.0)),
            large_amount_threshold=float(d.get("large_amount_threshold", 1_000_000.0)),
        )
        for name in ("small_amount_percent", "large_amount_percent"):
            value = getattr(tol, name)
            if not 0 <= value <= 1:
                raise ConfigError(f"amount_tolerance.{name} doit être entre 0 et 1 (got {value})")
        if tol.minimum_absolute < 0:
            raise ConfigError(f"amount_tolerance.minimum_absolute doit être >= 0 (got {tol.minimum_absolute})")
        if tol.minimum_absolute > tol.maximum_absolute:
            raise ConfigError("amount_tolerance: minimum_absolute doit être <= maximum_absolute")
        if tol.large_amount_threshold <= 0:
            raise ConfigError(
                f"amount_tolerance.large_amount_threshold doit être > 0 (got {tol.large_amount_threshold})"
            )
        return tol


@dataclass
class MultipleMatching:
    """Recherche de correspondances N:1 et 1:N."""

    enabled: bool = True
    min_transactions: int = 2
    max_transactions: int = 5
    max_date_range_days: int = 7
    confidence_score: float = 75.0

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> MultipleMatching:
        mm = cls(
            enabled=bool(d.get("enabled", True)),
            min_transactions=int(d.get("min_transactions", 2)),
            max_transactions=int(d.get("max_transactions", 5)),
            max_date_range_days=int(d.get("max_date_range_days", 7)),
            confidence_score=float(d.get("confidence_score", 75.0)),
        )
        if mm.min_transactions < 2:
            raise ConfigError(f"multiple_matching.min_transactions doit être >= 2 (got {mm.min_transactions})")
        if mm.max_transactions < mm.min_transactions:
            raise ConfigError("multiple_matching: max_transactions doit être >= min_transactions")
        if mm.max_date_range_days < 0:
            raise ConfigError(
                f"multiple_matching.max_date_range_days doit être >= 0 (got {mm.max_date_range_days})"
            )
        if not 0 <= mm.confidence_score <= 100:
            raise ConfigError(
                f"multiple_matching.confidence_score doit être entre 0 et 100 (got {mm.confidence_score})"
            )
        return mm


@dataclass
class Performance:
    """Budgets d'exécution d'un rapprochement."""

    timeout_seconds: float = 90.0
    max_candidates_for_multiple_matching: int = 30
    max_items_per_phase: int = 200
    high_performance_mode: bool = False  # True = passe gloutonne seule
    max_subset_sum_states: int = 5000
    max_subset_sum_pool: int = 50
    max_subset_sum_operations: int = 2_000_000

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Performance:
        perf = cls(
            timeout_seconds=float(d.get("timeout_seconds", 90.0)),
            max_candidates_for_multiple_matching=int(d.get("max_candidates_for_multiple_matching", 30)),
            max_items_per_phase=int(d.get("max_items_per_phase", 200)),
            high_performance_mode=bool(d.get("high_performance_mode", False)),
            max_subset_sum_states=int(d.get("max_subset_sum_states", 5000)),
            max_subset_sum_pool=int(d.get("max_subset_sum_pool", 50)),
            max_subset_sum_operations=int(d.get("max_subset_sum_operations", 2_000_000)),
        )
        if perf.timeout_seconds <= 0:
            raise ConfigError(f"performance.timeout_seconds doit être > 0 (got {perf.timeout_seconds})")
        for name in (
            "max_candidates_for_multiple_matching",
            "max_items_per_phase",
            "max_subset_sum_states",
            "max_subset_sum_pool",
            "max_subset_sum_operations",
        ):
            value = getattr(perf, name)
            if value < 1:
                raise ConfigError(f"performance.{name} doit être >= 1 (got {value})")
        return perf


@dataclass
class TextSimilarity:
    """Contribution de la similarité des libellés au score."""

    algorithm: str = "advanced"  # advanced, jaro_winkler, levenshtein, jaccard
    threshold: float = 0.70
    weight: float = 5.0
    normalize: bool = True

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TextSimilarity:
        algorithm = str(d.get("algorithm", "advanced")).lower()
        threshold = float(d.get("threshold", 0.70))
        weight = float(d.get("weight", 5.0))
        if algorithm not in VALID_ALGORITHMS:
            raise ConfigError(
                f"text_similarity.algorithm invalide: {algorithm!r}. Valides: {sorted(VALID_ALGORITHMS)}"
            )
        if not 0 <= threshold <= 1:
            raise ConfigError(f"text_similarity.threshold doit être entre 0 et 1 (got {threshold})")
        if weight < 0:
            raise ConfigError(f"text_similarity.weight doit être >= 0 (got {weight})")
        return cls(
            algorithm=algorithm,
            threshold=threshold,
            weight=weight,
            normalize=bool(d.get("normalize", True)),
        )


@dataclass
class MLConfig:
    """Apprentissage, inférence et réentraînement du classifieur."""

    enabled: bool = True
    auto_training_enabled: bool = True
    min_training_data: int = 50
    min_accuracy: float = 0.70
    num_trees: int = 100
    max_depth: int = 20
    min_samples_split: int = 5
    min_samples_leaf: int = 2
    random_state: int = 42
    holdout_fraction: float = 0.25

    # Expressions cron lues par l'ordonnanceur externe
    training_schedule: str = "0 0 3 * * ?"
    cleanup_schedule: str = "0 0 4 * * SUN"
    monitoring_schedule: str = "0 0 9 * * MON"

    models_base_dir: str = "./ml-models"
    state_dir: str | None = None  # None = models_base_dir

    min_confidence: float = 85.0
    prefilter_max_days: int = 30
    prefilter_min_ratio: float = 0.5
    prefilter_max_ratio: float = 2.0

    max_model_age_days: int = 30
    retrain_accuracy_threshold: float = 0.85
    drift_threshold: float = 0.10
    drift_window_days: int = 7
    keep_last_models: int = 5
    training_timeout_seconds: float = 600.0
    example_retention_days: int = 365

    training_workers: int = 2
    inference_workers: int = 4
    model_cache_ttl_seconds: float | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> MLConfig:
        ttl = d.get("model_cache_ttl_seconds")
        ml = cls(
            enabled=bool(d.get("enabled", True)),
            auto_training_enabled=bool(d.get("auto_training_enabled", True)),
            min_training_data=int(d.get("min_training_data", 50)),
            min_accuracy=float(d.get("min_accuracy", 0.70)),
            num_trees=int(d.get("num_trees", 100)),
            max_depth=int(d.get("max_depth", 20)),
            min_samples_split=int(d.get("min_samples_split", 5)),
            min_samples_leaf=int(d.get("min_samples_leaf", 2)),
            random_state=int(d.get("random_state", 42)),
            holdout_fraction=float(d.get("holdout_fraction", 0.25)),
            training_schedule=_check_cron("ml.training_schedule", d.get("training_schedule", "0 0 3 * * ?")),
            cleanup_schedule=_check_cron("ml.cleanup_schedule", d.get("cleanup_schedule", "0 0 4 * * SUN")),
            monitoring_schedule=_check_cron(
                "ml.monitoring_schedule", d.get("monitoring_schedule", "0 0 9 * * MON")
            ),
            models_base_dir=str(d.get("models_base_dir", "./ml-models")),
            state_dir=d.get("state_dir"),
            min_confidence=float(d.get("min_confidence", 85.0)),
            prefilter_max_days=int(d.get("prefilter_max_days", 30)),
            prefilter_min_ratio=float(d.get("prefilter_min_ratio", 0.5)),
            prefilter_max_ratio=float(d.get("prefilter_max_ratio", 2.0)),
            max_model_age_days=int(d.get("max_model_age_days", 30)),
            retrain_accuracy_threshold=float(d.get("retrain_accuracy_threshold", 0.85)),
            drift_threshold=float(d.get("drift_threshold", 0.10)),
            drift_window_days=int(d.get("drift_window_days", 7)),
            keep_last_models=int(d.get("keep_last_models", 5)),
            training_timeout_seconds=float(d.get("training_timeout_seconds", 600.0)),
            example_retention_days=int(d.get("example_retention_days", 365)),
            training_workers=int(d.get("training_workers", 2)),
            inference_workers=int(d.get("inference_workers", 4)),
            model_cache_ttl_seconds=float(ttl) if ttl is not None else None,
        )
        ml.validate()
        return ml

    def validate(self) -> None:
        if self.min_training_data < 2:
            raise ConfigError(f"ml.min_training_data doit être >= 2 (got {self.min_training_data})")
        for name in ("min_accuracy", "retrain_accuracy_threshold", "drift_threshold"):
            value = getattr(self, name)
            if not 0 <= value <= 1:
                raise ConfigError(f"ml.{name} doit être entre 0 et 1 (got {value})")
        if not 0 < self.holdout_fraction < 1:
            raise ConfigError(f"ml.holdout_fraction doit être entre 0 et 1 exclus (got {self.holdout_fraction})")
        if self.num_trees < 1 or self.max_depth < 1:
            raise ConfigError("ml: num_trees et max_depth doivent être >= 1")
        if self.min_samples_split < 2 or self.min_samples_leaf < 1:
            raise ConfigError("ml: min_samples_split doit être >= 2 et min_samples_leaf >= 1")
        if not 0 <= self.min_confidence <= 100:
            raise ConfigError(f"ml.min_confidence doit être entre 0 et 100 (got {self.min_confidence})")
        if not 0 < self.prefilter_min_ratio <= self.prefilter_max_ratio:
            raise ConfigError("ml: 0 < prefilter_min_ratio <= prefilter_max_ratio attendu")
        if self.keep_last_models < 1:
            raise ConfigError(f"ml.keep_last_models doit être >= 1 (got {self.keep_last_models})")
        if self.training_timeout_seconds <= 0:
            raise ConfigError(
                f"ml.training_timeout_seconds doit être > 0 (got {self.training_timeout_seconds})"
            )
        if not 1 <= self.training_workers <= MAX_TRAINING_WORKERS:
            raise ConfigError(
                f"ml.training_workers doit être entre 1 et {MAX_TRAINING_WORKERS} (got {self.training_workers})"
            )
        if not 1 <= self.inference_workers <= MAX_INFERENCE_WORKERS:
            raise ConfigError(
                f"ml.inference_workers doit être entre 1 et {MAX_INFERENCE_WORKERS} (got {self.inference_workers})"
            )
        if self.model_cache_ttl_seconds is not None and self.model_cache_ttl_seconds <= 0:
            raise ConfigError("ml.model_cache_ttl_seconds doit être > 0 ou null")

    @property
    def resolved_state_dir(self) -> str:
        return self.state_dir or self.models_base_dir


@dataclass
class ColumnMapping:
    """Noms des colonnes d'un tableau de mouvements ou d'écritures."""

    id: str = "id"
    amount: str = "amount"
    date: str = "date"
    description: str = "description"
    reference: str = "reference"

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ColumnMapping:
        mapping = cls(
            id=d.get("id", "id"),
            amount=d.get("amount", "amount"),
            date=d.get("date", "date"),
            description=d.get("description", "description"),
            reference=d.get("reference", "reference"),
        )
        for name in ("id", "amount", "date"):
            if not getattr(mapping, name):
                raise ConfigError(f"colonne {name} requise")
        return mapping


@dataclass
class Config:
    """Configuration principale (par tenant) de ConcordBank."""

    min_score: float = 50.0
    auto_approve_threshold: float = 95.0

    scores: Scores = field(default_factory=Scores)
    date_thresholds: DateThresholds = field(default_factory=DateThresholds)
    amount_tolerance: AmountTolerance = field(default_factory=AmountTolerance)
    multiple_matching: MultipleMatching = field(default_factory=MultipleMatching)
    performance: Performance = field(default_factory=Performance)
    text_similarity: TextSimilarity = field(default_factory=TextSimilarity)
    ml: MLConfig = field(default_factory=MLConfig)

    movement_columns: ColumnMapping = field(default_factory=ColumnMapping)
    entry_columns: ColumnMapping = field(default_factory=ColumnMapping)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Config:
        min_score = float(d.get("min_score", 50.0))
        auto_approve_threshold = float(d.get("auto_approve_threshold", 95.0))

        if not 0 <= min_score <= 100:
            raise ConfigError(f"min_score doit être entre 0 et 100 (got {min_score})")
        if not 0 <= auto_approve_threshold <= 100:
            raise ConfigError(f"auto_approve_threshold doit être entre 0 et 100 (got {auto_approve_threshold})")

        scores = Scores.from_dict(_section(d, "scores"))
        multiple_matching = MultipleMatching.from_dict(_section(d, "multiple_matching"))
        if multiple_matching.confidence_score >= scores.exact_match:
            raise ConfigError(
                "multiple_matching.confidence_score doit rester < scores.exact_match "
                f"(got {multiple_matching.confidence_score} >= {scores.exact_match})"
            )

        return cls(
            min_score=min_score,
            auto_approve_threshold=auto_approve_threshold,
            scores=scores,
            date_thresholds=DateThresholds.from_dict(_section(d, "date_thresholds")),
            amount_tolerance=AmountTolerance.from_dict(_section(d, "amount_tolerance")),
            multiple_matching=multiple_matching,
            performance=Performance.from_dict(_section(d, "performance")),
            text_similarity=TextSimilarity.from_dict(_section(d, "text_similarity")),
            ml=MLConfig.from_dict(_section(d, "ml")),
            movement_columns=ColumnMapping.from_dict(_section(d, "movement_columns")),
            entry_columns=ColumnMapping.from_dict(_section(d, "entry_columns")),
        )

    @classmethod
    def load(cls, path: str | Path) -> Config:
        """
        Charge la configuration depuis un fichier JSON.

        Raises:
            ConfigFileError: Si le fichier est absent ou le JSON invalide.
            ConfigError: Si la configuration est invalide.
        """
        path = Path(path).resolve()
        if not path.exists():
            raise ConfigFileError(f"Fichier de configuration introuvable: {path}")

        try:
            with open(path, encoding="utf-8") as f:
                d = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigFileError(f"JSON invalide dans {path}: {e}") from e
        except OSError as e:
            raise ConfigFileError(f"Impossible de lire {path}: {e}") from e

        if not isinstance(d, dict):
            raise ConfigFileError(f"Fichier de configuration invalide: {path} doit contenir un objet JSON")

        config = cls.from_dict(d)
        config.resolve_paths(path.parent)
        return config

    def resolve_paths(self, base_dir: Path) -> None:
        """
        Résout les chemins relatifs par rapport au répertoire de base (ex. dossier du fichier config).

        Modifie ml.models_base_dir et ml.state_dir en place.
        """
        base = Path(base_dir)
        if self.ml.models_base_dir and not Path(self.ml.models_base_dir).is_absolute():
            self.ml.models_base_dir = str((base / self.ml.models_base_dir).resolve())
        if self.ml.state_dir and not Path(self.ml.state_dir).is_absolute():
            self.ml.state_dir = str((base / self.ml.state_dir).resolve())
