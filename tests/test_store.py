"""Tests du stockage des modèles."""

import hashlib
import json
from pathlib import Path

import joblib
import numpy as np
import pytest
from sklearn.ensemble import RandomForestClassifier

from concordbank.ml.features import FEATURE_NAMES
from concordbank.ml.store import ArtifactStoreError, ModelLoadError, ModelStore, sidecar_path


def _classifier(n_features: int = len(FEATURE_NAMES)) -> RandomForestClassifier:
    rng = np.random.default_rng(0)
    X = rng.random((20, n_features))
    y = np.array([0, 1] * 10)
    return RandomForestClassifier(n_estimators=3, random_state=0).fit(X, y)


@pytest.fixture
def store(tmp_path: Path) -> ModelStore:
    return ModelStore(tmp_path / "models")


def test_save_and_load(store: ModelStore) -> None:
    location = store.save(_classifier(), "acme", "v1", metadata={"accuracy": 0.9})
    assert location == store.base_dir / "acme" / "model-v1.joblib"
    meta = json.loads(sidecar_path(location).read_text(encoding="utf-8"))
    assert meta["schema_version"] == 1
    assert meta["feature_names"] == list(FEATURE_NAMES)
    assert meta["accuracy"] == 0.9
    loaded = store.load(location)
    assert loaded.predict_proba(np.zeros((1, len(FEATURE_NAMES)))).shape == (1, 2)


def test_load_missing(store: ModelStore, tmp_path: Path) -> None:
    with pytest.raises(ModelLoadError, match="introuvable"):
        store.load(tmp_path / "absent.joblib")


def test_load_corrupted_checksum(store: ModelStore) -> None:
    location = store.save(_classifier(), "acme", "v1")
    with open(location, "ab") as f:
        f.write(b"garbage")
    with pytest.raises(ModelLoadError, match="sha256"):
        store.load(location)


def test_load_feature_mismatch(store: ModelStore) -> None:
    location = store.save(_classifier(), "acme", "v1")
    sidecar = sidecar_path(location)
    meta = json.loads(sidecar.read_text(encoding="utf-8"))
    meta["feature_names"] = ["a", "b"]
    sidecar.write_text(json.dumps(meta), encoding="utf-8")
    with pytest.raises(ModelLoadError, match="Caractéristiques incompatibles"):
        store.load(location)


def test_load_wrong_arity(store: ModelStore) -> None:
    location = store.save(_classifier(n_features=3), "acme", "v1")
    with pytest.raises(ModelLoadError, match="caractéristiques attendues"):
        store.load(location)


def test_load_object_without_predict_proba(store: ModelStore) -> None:
    location = store.save({"not": "a model"}, "acme", "v1")
    with pytest.raises(ModelLoadError, match="predict_proba"):
        store.load(location)


def test_load_unreadable_payload(store: ModelStore) -> None:
    location = store.save(_classifier(), "acme", "v1")
    location.write_bytes(b"not a joblib file")
    meta = json.loads(sidecar_path(location).read_text(encoding="utf-8"))
    meta["sha256"] = hashlib.sha256(b"not a joblib file").hexdigest()
    sidecar_path(location).write_text(json.dumps(meta), encoding="utf-8")
    with pytest.raises(ModelLoadError, match="désérialiser"):
        store.load(location)


def test_save_invalid_tenant(store: ModelStore) -> None:
    with pytest.raises(ArtifactStoreError, match="tenant_id invalide"):
        store.save(_classifier(), "../evil", "v1")


def test_save_write_failure(tmp_path: Path) -> None:
    blocker = tmp_path / "models"
    blocker.write_text("pas un dossier", encoding="utf-8")
    with pytest.raises(ArtifactStoreError, match="Impossible d'écrire"):
        ModelStore(blocker).save(_classifier(), "acme", "v1")


def test_list_and_retain_keeps_protected(store: ModelStore) -> None:
    clf = _classifier()
    locations = [
        store.save(clf, "acme", f"v{i}", metadata={"created_at": f"2024-01-0{i}T00:00:00"}) for i in range(1, 5)
    ]
    assert [a.version for a in store.list_artifacts("acme")] == ["v1", "v2", "v3", "v4"]

    deleted = store.retain("acme", 2, protected=[locations[0]])
    assert deleted == [locations[1], locations[2]]
    assert [a.version for a in store.list_artifacts("acme")] == ["v1", "v4"]
    assert not sidecar_path(locations[1]).exists()


def test_delete_is_idempotent(store: ModelStore) -> None:
    location = store.save(_classifier(), "acme", "v1")
    store.delete(location)
    store.delete(location)
    assert store.list_artifacts("acme") == []


def test_saved_artifact_is_plain_joblib(store: ModelStore) -> None:
    location = store.save(_classifier(), "acme", "v1")
    assert hasattr(joblib.load(location), "predict_proba")
