"""Registre des modèles par tenant et pointeur vers le modèle actif."""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any

from concordbank.config import ConcordBankError

logger = logging.getLogger(__name__)

REGISTRY_FILE = "registry.json"


class RegistryError(ConcordBankError):
    """Registre de modèles illisible ou incohérent."""


class ModelStatus(str, Enum):
    TRAINING = "TRAINING"
    TRAINED = "TRAINED"
    DEPLOYED = "DEPLOYED"
    DEPRECATED = "DEPRECATED"


@dataclass(frozen=True)
class TrainedModel:
    """Modèle entraîné (immuable ; une promotion produit de nouveaux enregistrements)."""

    tenant_id: str
    version: str
    created_at: dt.datetime
    accuracy: float
    precision: float
    recall: float
    f1: float
    training_example_count: int
    artifact_location: Path
    status: ModelStatus = ModelStatus.TRAINED
    deployed_at: dt.datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is ModelStatus.DEPLOYED

    def age_days(self, now: dt.datetime | None = None) -> float:
        now = now or dt.datetime.now()
        return (now - (self.deployed_at or self.created_at)).total_seconds() / 86400

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "accuracy": self.accuracy,
            "precision": self.precision,
            "recall": self.recall,
            "f1": self.f1,
            "training_example_count": self.training_example_count,
            "artifact_location": str(self.artifact_location),
            "status": self.status.value,
            "deployed_at": self.deployed_at.isoformat() if self.deployed_at else None,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TrainedModel:
        deployed_at = d.get("deployed_at")
        return cls(
            tenant_id=str(d["tenant_id"]),
            version=str(d["version"]),
            created_at=dt.datetime.fromisoformat(d["created_at"]),
            accuracy=float(d["accuracy"]),
            precision=float(d["precision"]),
            recall=float(d["recall"]),
            f1=float(d["f1"]),
            training_example_count=int(d["training_example_count"]),
            artifact_location=Path(d["artifact_location"]),
            status=ModelStatus(d.get("status", ModelStatus.TRAINED.value)),
            deployed_at=dt.datetime.fromisoformat(deployed_at) if deployed_at else None,
        )


class ModelRegistry:
    """
    Modèles connus et modèle actif de chaque tenant.

    Un seul écrivain par tenant (verrou) ; les lecteurs lisent le pointeur actif
    sans verrou et voient soit l'ancien modèle, soit le nouveau.
    """

    def __init__(self, state_dir: str | Path | None = None) -> None:
        self.state_dir = Path(state_dir) if state_dir is not None else None
        self._models: dict[str, dict[str, TrainedModel]] = {}
        self._active: dict[str, TrainedModel] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def lock(self, tenant_id: str) -> Iterator[None]:
        """Verrou d'écriture du tenant (réentrant)."""
        with self._locks_guard:
            tenant_lock = self._locks.setdefault(tenant_id, threading.RLock())
        with tenant_lock:
            yield

    def _path(self, tenant_id: str) -> Path | None:
        if self.state_dir is None:
            return None
        return self.state_dir / tenant_id / REGISTRY_FILE

    def _ensure_loaded(self, tenant_id: str) -> None:
        if tenant_id in self._models:
            return
        with self.lock(tenant_id):
            if tenant_id in self._models:
                return
            models: dict[str, TrainedModel] = {}
            path = self._path(tenant_id)
            if path is not None and path.exists():
                try:
                    with open(path, encoding="utf-8") as f:
                        raw = json.load(f)
                    for item in raw.get("models", []):
                        model = TrainedModel.from_dict(item)
                        models[model.version] = model
                except (OSError, json.JSONDecodeError, KeyError, ValueError) as e:
                    raise RegistryError(f"Registre illisible {path}: {e}") from e
            for model in models.values():
                if model.is_active:
                    self._active[tenant_id] = model
            self._models[tenant_id] = models

    def _persist(self, tenant_id: str) -> None:
        path = self._path(tenant_id)
        if path is None:
            return
        payload = {"models": [m.to_dict() for m in self.models(tenant_id)]}
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            os.replace(tmp, path)
        except OSError as e:
            raise RegistryError(f"Impossible d'écrire le registre {path}: {e}") from e

    def models(self, tenant_id: str) -> list[TrainedModel]:
        """Modèles du tenant, du plus ancien au plus récent."""
        self._ensure_loaded(tenant_id)
        return sorted(self._models[tenant_id].values(), key=lambda m: (m.created_at, m.version))

    def get(self, tenant_id: str, version: str) -> TrainedModel | None:
        self._ensure_loaded(tenant_id)
        return self._models[tenant_id].get(version)

    def active(self, tenant_id: str) -> TrainedModel | None:
        """Modèle actif du tenant, ou None."""
        self._ensure_loaded(tenant_id)
        return self._active.get(tenant_id)

    def register(self, model: TrainedModel) -> TrainedModel:
        with self.lock(model.tenant_id):
            self._ensure_loaded(model.tenant_id)
            if model.version in self._models[model.tenant_id]:
                raise RegistryError(f"Version déjà enregistrée: {model.tenant_id}/{model.version}")
            self._models[model.tenant_id][model.version] = model
            self._persist(model.tenant_id)
        return model

    def promote(self, tenant_id: str, version: str) -> TrainedModel:
        """
        Active une version : l'ancien modèle actif passe DEPRECATED, puis le
        pointeur actif est remplacé en une affectation.
        """
        with self.lock(tenant_id):
            self._ensure_loaded(tenant_id)
            models = self._models[tenant_id]
            if version not in models:
                raise RegistryError(f"Version inconnue: {tenant_id}/{version}")
            deployed = replace(models[version], status=ModelStatus.DEPLOYED, deployed_at=dt.datetime.now())
            previous = self._active.get(tenant_id)
            if previous is not None and previous.version != version:
                models[previous.version] = replace(previous, status=ModelStatus.DEPRECATED)
            models[version] = deployed
            self._active[tenant_id] = deployed
            self._persist(tenant_id)
        logger.info(
            "Modèle %s/%s déployé (accuracy=%.3f, remplace %s)",
            tenant_id,
            version,
            deployed.accuracy,
            previous.version if previous else "aucun",
        )
        return deployed

    def forget(self, tenant_id: str, locations: list[Path]) -> None:
        """Retire du registre les modèles dont l'artefact a été supprimé (jamais le modèle actif)."""
        targets = {Path(p).resolve() for p in locations}
        with self.lock(tenant_id):
            self._ensure_loaded(tenant_id)
            models = self._models[tenant_id]
            active = self._active.get(tenant_id)
            for version, model in list(models.items()):
                if model.artifact_location.resolve() in targets and model is not active:
                    del models[version]
            self._persist(tenant_id)
