"""
Stockage versionné des classifieurs entraînés.

Disposition : {base_dir}/{tenant_id}/model-{version}.joblib, accompagné d'un
fichier de métadonnées model-{version}.json (schema_version, empreinte sha256,
noms des caractéristiques, métriques, nombre d'exemples, horodatage).
"""

from __future__ import annotations

import datetime as dt
import hashlib
import json
import logging
import os
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import joblib

from concordbank.config import ConcordBankError
from concordbank.ml.features import FEATURE_NAMES

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
ARTIFACT_FORMAT = "joblib"
ARTIFACT_SUFFIX = ".joblib"
SIDECAR_SUFFIX = ".json"

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")


class ModelLoadError(ConcordBankError):
    """Artefact absent, corrompu ou incompatible."""


class ArtifactStoreError(ConcordBankError):
    """Échec d'écriture ou de suppression d'un artefact."""


@dataclass(frozen=True)
class ArtifactInfo:
    """Artefact présent sur disque et ses métadonnées."""

    location: Path
    tenant_id: str
    version: str
    created_at: dt.datetime
    metadata: dict[str, Any] = field(default_factory=dict)


def _check_name(kind: str, value: str) -> str:
    if not value or not _SAFE_NAME_RE.match(value):
        raise ArtifactStoreError(f"{kind} invalide: {value!r}")
    return value


def sidecar_path(location: Path) -> Path:
    return Path(location).with_suffix(SIDECAR_SUFFIX)


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)
    os.replace(tmp, path)


class ModelStore:
    """Persistance, intégrité et rétention des artefacts de modèles par tenant."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)

    def tenant_dir(self, tenant_id: str) -> Path:
        return self.base_dir / _check_name("tenant_id", tenant_id)

    def save(
        self,
        classifier: Any,
        tenant_id: str,
        version: str,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> Path:
        """
        Sérialise le classifieur et écrit ses métadonnées.

        Returns:
            Emplacement de l'artefact.

        Raises:
            ArtifactStoreError: En cas d'échec d'écriture (propagée à l'appelant).
        """
        _check_name("version", version)
        directory = self.tenant_dir(tenant_id)
        location = directory / f"model-{version}{ARTIFACT_SUFFIX}"
        tmp = location.with_name(location.name + ".tmp")
        try:
            directory.mkdir(parents=True, exist_ok=True)
            joblib.dump(classifier, tmp)
            os.replace(tmp, location)
            payload = {
                "schema_version": SCHEMA_VERSION,
                "format": ARTIFACT_FORMAT,
                "tenant_id": tenant_id,
                "version": version,
                "created_at": dt.datetime.now().isoformat(),
                "sha256": _sha256(location),
                "feature_names": list(FEATURE_NAMES),
                **(metadata or {}),
            }
            _write_json_atomic(sidecar_path(location), payload)
        except OSError as e:
            raise ArtifactStoreError(f"Impossible d'écrire le modèle {location}: {e}") from e
        logger.info("Modèle %s/%s enregistré: %s", tenant_id, version, location)
        return location

    def read_metadata(self, location: str | Path) -> dict[str, Any]:
        """
        Lit et valide le fichier de métadonnées d'un artefact.

        Raises:
            ModelLoadError: Si le fichier est absent, illisible ou d'un autre schéma.
        """
        sidecar = sidecar_path(Path(location))
        if not sidecar.exists():
            raise ModelLoadError(f"Métadonnées introuvables: {sidecar}")
        try:
            with open(sidecar, encoding="utf-8") as f:
                meta = json.load(f)
        except json.JSONDecodeError as e:
            raise ModelLoadError(f"Métadonnées JSON invalides dans {sidecar}: {e}") from e
        except OSError as e:
            raise ModelLoadError(f"Impossible de lire {sidecar}: {e}") from e
        if not isinstance(meta, dict):
            raise ModelLoadError(f"Métadonnées invalides: {sidecar} doit contenir un objet JSON")
        if meta.get("schema_version") != SCHEMA_VERSION:
            raise ModelLoadError(
                f"schema_version non supportée dans {sidecar}: {meta.get('schema_version')!r}"
            )
        return meta

    def load(self, location: str | Path) -> Any:
        """
        Charge un classifieur après contrôle d'intégrité.

        Raises:
            ModelLoadError: Artefact absent, empreinte incorrecte, caractéristiques
                incompatibles ou objet inutilisable.
        """
        location = Path(location)
        if not location.exists():
            raise ModelLoadError(f"Modèle introuvable: {location}")
        meta = self.read_metadata(location)

        try:
            checksum = _sha256(location)
        except OSError as e:
            raise ModelLoadError(f"Impossible de lire {location}: {e}") from e
        if checksum != meta.get("sha256"):
            raise ModelLoadError(f"Empreinte sha256 incorrecte pour {location} (artefact corrompu)")
        if tuple(meta.get("feature_names") or ()) != FEATURE_NAMES:
            raise ModelLoadError(f"Caractéristiques incompatibles pour {location}")

        try:
            classifier = joblib.load(location)
        except Exception as e:
            raise ModelLoadError(f"Impossible de désérialiser {location}: {e}") from e

        if not hasattr(classifier, "predict_proba"):
            raise ModelLoadError(f"{location}: objet sans predict_proba")
        n_features = getattr(classifier, "n_features_in_", None)
        if n_features != len(FEATURE_NAMES):
            raise ModelLoadError(
                f"{location}: {n_features} caractéristiques attendues par le modèle, {len(FEATURE_NAMES)} fournies"
            )
        return classifier

    def delete(self, location: str | Path) -> None:
        """Supprime l'artefact et ses métadonnées (sans erreur s'ils sont déjà absents)."""
        location = Path(location)
        for path in (location, sidecar_path(location)):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise ArtifactStoreError(f"Impossible de supprimer {path}: {e}") from e
        logger.info("Modèle supprimé: %s", location)

    def list_artifacts(self, tenant_id: str) -> list[ArtifactInfo]:
        """Artefacts du tenant, du plus ancien au plus récent."""
        directory = self.tenant_dir(tenant_id)
        if not directory.exists():
            return []
        infos: list[ArtifactInfo] = []
        for path in directory.glob(f"model-*{ARTIFACT_SUFFIX}"):
            try:
                meta = self.read_metadata(path)
                created_at = dt.datetime.fromisoformat(str(meta.get("created_at")))
            except (ModelLoadError, ValueError) as e:
                logger.warning("Métadonnées illisibles pour %s: %s", path, e)
                meta = {}
                created_at = dt.datetime.fromtimestamp(path.stat().st_mtime)
            version = str(meta.get("version") or path.stem.removeprefix("model-"))
            infos.append(
                ArtifactInfo(location=path, tenant_id=tenant_id, version=version, created_at=created_at, metadata=meta)
            )
        infos.sort(key=lambda info: (info.created_at, info.version))
        return infos

    def retain(
        self,
        tenant_id: str,
        keep_last: int,
        *,
        protected: Iterable[str | Path] = (),
    ) -> list[Path]:
        """
        Supprime les artefacts les plus anciens au-delà de keep_last.

        Les emplacements protégés (modèle actif) ne sont jamais supprimés.

        Returns:
            Emplacements supprimés.
        """
        keep = {Path(p).resolve() for p in protected}
        artifacts = self.list_artifacts(tenant_id)
        excess = len(artifacts) - max(keep_last, 0)
        deleted: list[Path] = []
        for info in artifacts:
            if excess <= 0:
                break
            if info.location.resolve() in keep:
                continue
            self.delete(info.location)
            deleted.append(info.location)
            excess -= 1
        if deleted:
            logger.info("Rétention %s: %d modèle(s) supprimé(s)", tenant_id, len(deleted))
        return deleted
