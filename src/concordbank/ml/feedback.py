"""Retours opérateur : exemples d'apprentissage et journal des prédictions."""

from __future__ import annotations

import datetime as dt
import logging
import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

import pandas as pd

from concordbank.config import ConcordBankError
from concordbank.ml.features import FEATURE_NAMES, FeatureVector

logger = logging.getLogger(__name__)

EXAMPLES_FILE = "training_examples.csv"
PREDICTIONS_FILE = "predictions.csv"
OUTCOMES_FILE = "prediction_outcomes.csv"

_PREDICTION_COLUMNS = [
    "prediction_id",
    "tenant_id",
    "movement_id",
    "entry_id",
    "candidate_count",
    "confidence",
    "model_version",
    "latency_ms",
    "created_at",
]
_OUTCOME_COLUMNS = ["prediction_id", "correct", "recorded_at"]


class FeedbackStoreError(ConcordBankError):
    """Lecture ou écriture impossible du stockage des retours."""


class Outcome(str, Enum):
    APPLIED = "applied"
    REJECTED = "rejected"


@dataclass(frozen=True)
class TrainingExample:
    """Vecteur étiqueté (1 = accepté, 0 = rejeté) issu de la résolution d'une suggestion."""

    example_id: str
    tenant_id: str
    features: FeatureVector
    label: int
    suggestion_id: str
    created_at: dt.datetime
    consumed: bool = False


@dataclass(frozen=True)
class PredictionRecord:
    """Trace d'un appel d'inférence."""

    prediction_id: str
    tenant_id: str
    movement_id: str
    entry_id: str | None
    candidate_count: int
    confidence: float
    model_version: str
    latency_ms: float
    created_at: dt.datetime


def _read_csv(path: Path) -> pd.DataFrame | None:
    if not path.exists():
        return None
    try:
        return pd.read_csv(path, dtype={"prediction_id": str, "movement_id": str, "entry_id": str})
    except (OSError, ValueError) as e:
        raise FeedbackStoreError(f"Impossible de lire {path}: {e}") from e


def _write_csv(df: pd.DataFrame, path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(path, index=False, encoding="utf-8")
    except OSError as e:
        raise FeedbackStoreError(f"Impossible d'écrire {path}: {e}") from e


def _append_csv(df: pd.DataFrame, path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(path, mode="a", header=not path.exists(), index=False, encoding="utf-8")
    except OSError as e:
        raise FeedbackStoreError(f"Impossible d'écrire {path}: {e}") from e


def _prediction_frame(records: Iterable[PredictionRecord]) -> pd.DataFrame:
    rows = [
        {
            "prediction_id": r.prediction_id,
            "tenant_id": r.tenant_id,
            "movement_id": r.movement_id,
            "entry_id": r.entry_id,
            "candidate_count": r.candidate_count,
            "confidence": r.confidence,
            "model_version": r.model_version,
            "latency_ms": r.latency_ms,
            "created_at": r.created_at.isoformat(),
        }
        for r in records
    ]
    return pd.DataFrame(rows, columns=_PREDICTION_COLUMNS)


def _outcome_frame(outcomes: Iterable[tuple[str, bool, dt.datetime]]) -> pd.DataFrame:
    rows = [{"prediction_id": pid, "correct": correct, "recorded_at": at.isoformat()} for pid, correct, at in outcomes]
    return pd.DataFrame(rows, columns=_OUTCOME_COLUMNS)


class FeedbackStore:
    """
    Exemples d'apprentissage par tenant.

    Un exemple reste disponible jusqu'à son utilisation par un entraînement ;
    les exemples consommés plus anciens que retention_days sont purgés, les
    exemples hors fenêtre ne sont plus proposés à l'entraînement.
    """

    def __init__(self, state_dir: str | Path | None = None, *, retention_days: int = 365) -> None:
        self.state_dir = Path(state_dir) if state_dir is not None else None
        self.retention_days = retention_days
        self._examples: dict[str, list[TrainingExample]] = {}
        self._lock = threading.RLock()

    def _path(self, tenant_id: str) -> Path | None:
        if self.state_dir is None:
            return None
        return self.state_dir / tenant_id / EXAMPLES_FILE

    def _load(self, tenant_id: str) -> list[TrainingExample]:
        if tenant_id in self._examples:
            return self._examples[tenant_id]
        examples: list[TrainingExample] = []
        path = self._path(tenant_id)
        df = _read_csv(path) if path is not None else None
        if df is not None:
            for row in df.to_dict("records"):
                examples.append(
                    TrainingExample(
                        example_id=str(row["example_id"]),
                        tenant_id=tenant_id,
                        features=FeatureVector.from_list([row[name] for name in FEATURE_NAMES]),
                        label=int(row["label"]),
                        suggestion_id=str(row["suggestion_id"]),
                        created_at=dt.datetime.fromisoformat(str(row["created_at"])),
                        consumed=bool(row["consumed"]),
                    )
                )
        self._examples[tenant_id] = examples
        return examples

    def _save(self, tenant_id: str) -> None:
        path = self._path(tenant_id)
        if path is None:
            return
        rows = []
        for ex in self._examples.get(tenant_id, []):
            row = {
                "example_id": ex.example_id,
                "suggestion_id": ex.suggestion_id,
                "label": ex.label,
                "created_at": ex.created_at.isoformat(),
                "consumed": ex.consumed,
            }
            row.update(ex.features.to_dict())
            rows.append(row)
        columns = ["example_id", "suggestion_id", "label", "created_at", "consumed", *FEATURE_NAMES]
        _write_csv(pd.DataFrame(rows, columns=columns), path)

    def add(
        self,
        tenant_id: str,
        features: FeatureVector,
        label: int,
        *,
        suggestion_id: str,
        created_at: dt.datetime | None = None,
    ) -> TrainingExample:
        if label not in (0, 1):
            raise ValueError(f"label doit valoir 0 ou 1 (got {label})")
        example = TrainingExample(
            example_id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            features=features,
            label=label,
            suggestion_id=suggestion_id,
            created_at=created_at or dt.datetime.now(),
        )
        with self._lock:
            self._load(tenant_id).append(example)
            self._save(tenant_id)
        return example

    def examples(self, tenant_id: str, *, now: dt.datetime | None = None) -> list[TrainingExample]:
        """Exemples utilisables (dans la fenêtre de rétention)."""
        cutoff = (now or dt.datetime.now()) - dt.timedelta(days=self.retention_days)
        with self._lock:
            return [ex for ex in self._load(tenant_id) if ex.created_at >= cutoff]

    def mark_consumed(self, tenant_id: str, examples: Iterable[TrainingExample]) -> None:
        ids = {ex.example_id for ex in examples}
        with self._lock:
            self._examples[tenant_id] = [
                replace(ex, consumed=True) if ex.example_id in ids else ex for ex in self._load(tenant_id)
            ]
            self._save(tenant_id)

    def purge(self, tenant_id: str, *, now: dt.datetime | None = None) -> int:
        """Supprime les exemples consommés sortis de la fenêtre de rétention."""
        cutoff = (now or dt.datetime.now()) - dt.timedelta(days=self.retention_days)
        with self._lock:
            before = self._load(tenant_id)
            kept = [ex for ex in before if not (ex.consumed and ex.created_at < cutoff)]
            self._examples[tenant_id] = kept
            removed = len(before) - len(kept)
            if removed:
                self._save(tenant_id)
                logger.info("Purge %s: %d exemple(s) supprimé(s)", tenant_id, removed)
        return removed


class PredictionLog:
    """
    Journal des prédictions (ajout seul) et de leurs issues réelles.

    La précision réelle et la latence moyenne sont calculées avec pandas sur une
    fenêtre glissante.
    """

    def __init__(self, state_dir: str | Path | None = None) -> None:
        self.state_dir = Path(state_dir) if state_dir is not None else None
        self._records: dict[str, list[PredictionRecord]] = {}
        self._outcomes: dict[str, list[tuple[str, bool, dt.datetime]]] = {}
        self._lock = threading.RLock()

    def _dir(self, tenant_id: str) -> Path | None:
        return self.state_dir / tenant_id if self.state_dir is not None else None

    def _load(self, tenant_id: str) -> None:
        if tenant_id in self._records:
            return
        records: list[PredictionRecord] = []
        outcomes: list[tuple[str, bool, dt.datetime]] = []
        directory = self._dir(tenant_id)
        if directory is not None:
            df = _read_csv(directory / PREDICTIONS_FILE)
            odf = _read_csv(directory / OUTCOMES_FILE)
            try:
                for row in [] if df is None else df.to_dict("records"):
                    entry_id = row["entry_id"]
                    records.append(
                        PredictionRecord(
                            prediction_id=str(row["prediction_id"]),
                            tenant_id=tenant_id,
                            movement_id=str(row["movement_id"]),
                            entry_id=None if pd.isna(entry_id) else str(entry_id),
                            candidate_count=int(row["candidate_count"]),
                            confidence=float(row["confidence"]),
                            model_version=str(row["model_version"]),
                            latency_ms=float(row["latency_ms"]),
                            created_at=dt.datetime.fromisoformat(str(row["created_at"])),
                        )
                    )
                for row in [] if odf is None else odf.to_dict("records"):
                    outcomes.append(
                        (
                            str(row["prediction_id"]),
                            bool(row["correct"]),
                            dt.datetime.fromisoformat(str(row["recorded_at"])),
                        )
                    )
            except (KeyError, TypeError, ValueError) as e:
                raise FeedbackStoreError(f"Journal des prédictions illisible pour {tenant_id}: {e!r}") from e
        self._records[tenant_id] = records
        self._outcomes[tenant_id] = outcomes

    def append(self, record: PredictionRecord) -> None:
        """Ajoute une prédiction ; seule la nouvelle ligne est écrite sur disque."""
        with self._lock:
            self._load(record.tenant_id)
            directory = self._dir(record.tenant_id)
            if directory is not None:
                _append_csv(_prediction_frame([record]), directory / PREDICTIONS_FILE)
            self._records[record.tenant_id].append(record)

    def record_outcome(
        self,
        tenant_id: str,
        prediction_id: str,
        correct: bool,
        *,
        recorded_at: dt.datetime | None = None,
    ) -> None:
        outcome = (prediction_id, bool(correct), recorded_at or dt.datetime.now())
        with self._lock:
            self._load(tenant_id)
            directory = self._dir(tenant_id)
            if directory is not None:
                _append_csv(_outcome_frame([outcome]), directory / OUTCOMES_FILE)
            self._outcomes[tenant_id].append(outcome)

    def records(self, tenant_id: str) -> list[PredictionRecord]:
        with self._lock:
            self._load(tenant_id)
            return list(self._records[tenant_id])

    def frame(self, tenant_id: str) -> pd.DataFrame:
        """Prédictions du tenant sous forme de DataFrame."""
        return _prediction_frame(self.records(tenant_id))

    def outcomes_frame(self, tenant_id: str) -> pd.DataFrame:
        with self._lock:
            self._load(tenant_id)
            outcomes = list(self._outcomes[tenant_id])
        return _outcome_frame(outcomes)

    def _window(self, tenant_id: str, since: dt.datetime | None, model_version: str | None) -> pd.DataFrame:
        df = self.frame(tenant_id)
        if df.empty:
            return df
        df["created_at"] = pd.to_datetime(df["created_at"])
        if since is not None:
            df = df[df["created_at"] >= pd.Timestamp(since)]
        if model_version is not None:
            df = df[df["model_version"] == model_version]
        return df

    def real_world_accuracy(
        self,
        tenant_id: str,
        *,
        since: dt.datetime | None = None,
        model_version: str | None = None,
    ) -> float | None:
        """Part des prédictions avec issue connue qui étaient correctes (None sans issue)."""
        df = self._window(tenant_id, since, model_version)
        if df.empty:
            return None
        outcomes = self.outcomes_frame(tenant_id).drop_duplicates("prediction_id", keep="last")
        merged = df.merge(outcomes, on="prediction_id", how="inner")
        if merged.empty:
            return None
        return float(merged["correct"].astype(bool).mean())

    def average_latency_ms(
        self,
        tenant_id: str,
        *,
        since: dt.datetime | None = None,
        model_version: str | None = None,
    ) -> float | None:
        df = self._window(tenant_id, since, model_version)
        if df.empty:
            return None
        return float(df["latency_ms"].mean())

    def count(self, tenant_id: str, *, since: dt.datetime | None = None, model_version: str | None = None) -> int:
        return len(self._window(tenant_id, since, model_version))
