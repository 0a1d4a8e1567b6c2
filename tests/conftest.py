"""Jeux de données partagés par les tests d'apprentissage."""

import datetime as dt
from decimal import Decimal

import pytest

from concordbank.config import Config, MLConfig
from concordbank.matching.schema import CandidateEntry, CandidateMovement
from concordbank.ml.features import FeatureVector, extract
from concordbank.ml.feedback import FeedbackStore

D0 = dt.date(2024, 3, 4)


def matching_pair(i: int) -> tuple[CandidateMovement, CandidateEntry]:
    """Mouvement et écriture qui se correspondent (même montant, libellé, référence)."""
    amount = Decimal(150 + 37 * i) + Decimal("0.45")
    label = f"Facture client {i}"
    movement = CandidateMovement(f"m{i}", amount, D0 + dt.timedelta(days=i % 20), label, f"F{i:03d}")
    entry = CandidateEntry(f"e{i}", amount, D0 + dt.timedelta(days=i % 20 + i % 3), label, f"F{i:03d}")
    return movement, entry


def unrelated_pair(i: int) -> tuple[CandidateMovement, CandidateEntry]:
    """Mouvement et écriture sans rapport (montant, date, libellé et référence différents)."""
    movement = CandidateMovement(
        f"m{i}", Decimal(150 + 37 * i), D0 + dt.timedelta(days=i % 20), f"Prélèvement fournisseur {i}", f"P{i:03d}"
    )
    entry = CandidateEntry(
        f"e{i}",
        Decimal(150 + 37 * i) * Decimal("1.8"),
        D0 + dt.timedelta(days=i % 20 + 12 + i % 9),
        f"Cotisation {i}",
        f"C{i:03d}",
    )
    return movement, entry


def labelled_vectors(n_per_class: int = 30) -> list[tuple[FeatureVector, int]]:
    out: list[tuple[FeatureVector, int]] = []
    for i in range(n_per_class):
        out.append((extract(*matching_pair(i)), 1))
        out.append((extract(*unrelated_pair(i)), 0))
    return out


def fill_feedback(feedback: FeedbackStore, tenant_id: str, n_per_class: int = 30) -> None:
    for k, (features, label) in enumerate(labelled_vectors(n_per_class)):
        feedback.add(tenant_id, features, label, suggestion_id=f"s{k}")


@pytest.fixture
def ml_config(tmp_path) -> MLConfig:
    return MLConfig(models_base_dir=str(tmp_path / "models"), num_trees=15, training_workers=1, inference_workers=2)


@pytest.fixture
def engine_config(tmp_path) -> Config:
    return Config.from_dict(
        {
            "ml": {
                "models_base_dir": str(tmp_path / "models"),
                "num_trees": 15,
                "training_workers": 1,
                "inference_workers": 2,
            }
        }
    )
