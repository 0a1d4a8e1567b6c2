"""Tests du moteur de rapprochement (heuristique + modèle, retours opérateur)."""

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
from conftest import fill_feedback, matching_pair

from concordbank.config import Config
from concordbank.engine import ReconciliationEngine, UnknownSuggestion
from concordbank.matching.schema import MatchKind, SuggestionStateError, SuggestionStatus
from concordbank.ml.feedback import FeedbackStoreError
from concordbank.ml.registry import TrainedModel


def _rec(rid: str, amount: str, date: str, description: str = "", reference: str = "") -> dict[str, str]:
    return {"id": rid, "amount": amount, "date": date, "description": description, "reference": reference}


MOVEMENTS = [
    _rec("m1", "1250.00", "2024-03-15", "Loyer mars", "L-03"),
    _rec("m2", "-89.90", "2024-03-18", "PRLV EDF"),
    _rec("bad", "abc", "2024-03-18"),
]
ENTRIES = [
    _rec("e1", "1250.00", "2024-03-15", "Loyer mars", "L-03"),
    _rec("e2", "-89.90", "2024-03-18", "EDF facture"),
    _rec("e3", "42.00", "2024-03-20", "Divers"),
]


def _config(tmp_path: Path, **overrides) -> Config:
    d = {"ml": {"models_base_dir": str(tmp_path / "models"), "num_trees": 15, "training_workers": 1}}
    d.update(overrides)
    return Config.from_dict(d)


@pytest.fixture
def engine(tmp_path: Path) -> Iterator[ReconciliationEngine]:
    with ReconciliationEngine(_config(tmp_path)) as eng:
        yield eng


def test_heuristic_only_run(engine: ReconciliationEngine) -> None:
    run = engine.run("acme", MOVEMENTS, ENTRIES)
    pairs = {(s.movement_ids, s.entry_ids) for s in run.suggestions}
    assert pairs == {(("m1",), ("e1",)), (("m2",), ("e2",))}
    assert all(s.kind is MatchKind.EXACT for s in run.suggestions)
    assert run.statistics.invalid_records == 1
    assert run.statistics.unmatched_entries == 1
    assert not run.statistics.truncated
    assert engine.predictions.records("acme") == []
    assert engine.get_run(run.run_id) is run


def test_resolution_records_training_examples(engine: ReconciliationEngine) -> None:
    run = engine.run("acme", MOVEMENTS, ENTRIES)
    by_movement = {s.movement_ids[0]: s for s in run.suggestions}
    engine.record_resolution("acme", by_movement["m1"].suggestion_id, "applied")
    engine.record_resolution("acme", by_movement["m2"].suggestion_id, "rejected")

    assert by_movement["m1"].status is SuggestionStatus.APPLIED
    assert by_movement["m2"].status is SuggestionStatus.REJECTED
    labels = sorted(ex.label for ex in engine.feedback.examples("acme"))
    assert labels == [0, 1]

    with pytest.raises(SuggestionStateError):
        engine.record_resolution("acme", by_movement["m1"].suggestion_id, "rejected")


def test_corrected_match_adds_positive_example(engine: ReconciliationEngine, caplog: pytest.LogCaptureFixture) -> None:
    run = engine.run("acme", MOVEMENTS, ENTRIES)
    s = next(s for s in run.suggestions if s.movement_ids == ("m2",))
    engine.record_resolution("acme", s.suggestion_id, "rejected", corrected_match=("m2", "e3"))
    examples = engine.feedback.examples("acme")
    assert sorted(ex.label for ex in examples) == [0, 1]

    other = next(s for s in run.suggestions if s.movement_ids == ("m1",))
    with caplog.at_level(logging.WARNING, logger="concordbank.engine"):
        engine.record_resolution("acme", other.suggestion_id, "rejected", corrected_match=("m1", "zzz"))
    assert "Correction ignorée" in caplog.text
    assert len(engine.feedback.examples("acme")) == 3


def test_unknown_suggestion(engine: ReconciliationEngine) -> None:
    run = engine.run("acme", MOVEMENTS, ENTRIES)
    with pytest.raises(UnknownSuggestion):
        engine.record_resolution("acme", "nope", "applied")
    with pytest.raises(UnknownSuggestion):
        engine.record_resolution("globex", run.suggestions[0].suggestion_id, "applied")
    with pytest.raises(KeyError):
        engine.get_run("nope")
    with pytest.raises(ValueError):
        engine.record_resolution("acme", run.suggestions[0].suggestion_id, "maybe")


def test_close_run_expires_pending(engine: ReconciliationEngine) -> None:
    run = engine.run("acme", MOVEMENTS, ENTRIES)
    engine.record_resolution("acme", run.suggestions[0].suggestion_id, "applied")
    assert engine.close_run(run.run_id) == 1
    assert run.closed
    assert run.suggestions[1].status is SuggestionStatus.EXPIRED
    assert run.pending() == []


def test_auto_apply(engine: ReconciliationEngine) -> None:
    run = engine.run("acme", MOVEMENTS, ENTRIES, auto_apply=True)
    assert {s.status for s in run.suggestions} == {SuggestionStatus.APPLIED}


def test_learned_suggestion_and_outcome(tmp_path: Path) -> None:
    config = _config(tmp_path, min_score=100, multiple_matching={"enabled": False})
    movement, entry = matching_pair(1)  # écriture passée le lendemain : pas de correspondance exacte
    with ReconciliationEngine(config) as engine:
        fill_feedback(engine.feedback, "acme")
        model = engine.pipeline.train("acme")
        assert isinstance(model, TrainedModel) and model.is_active

        run = engine.run("acme", [movement], [entry])
        assert len(run.suggestions) == 1
        learned = run.suggestions[0]
        assert learned.kind is MatchKind.LEARNED
        assert learned.suggestion_id == f"{run.run_id}-L0001"
        assert learned.entry_ids == (entry.id,)
        assert learned.prediction_id is not None
        assert run.statistics.by_kind == {"LEARNED": 1}

        engine.record_resolution("acme", learned.suggestion_id, "applied")
        assert engine.predictions.real_world_accuracy("acme", model_version=model.version) == 1.0


def test_ml_disabled_skips_feedback(tmp_path: Path) -> None:
    config = _config(tmp_path)
    config.ml.enabled = False
    with ReconciliationEngine(config) as engine:
        run = engine.run("acme", MOVEMENTS, ENTRIES)
        engine.record_resolution("acme", run.suggestions[0].suggestion_id, "applied")
        assert engine.feedback.examples("acme") == []


def test_state_persists_between_engines(tmp_path: Path) -> None:
    config = _config(tmp_path)
    with ReconciliationEngine(config) as engine:
        run = engine.run("acme", MOVEMENTS, ENTRIES)
        engine.record_resolution("acme", run.suggestions[0].suggestion_id, "applied")
    with ReconciliationEngine(config) as engine:
        assert len(engine.feedback.examples("acme")) == 1


def test_unreadable_registry_falls_back_to_heuristic(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    registry_path = tmp_path / "models" / "acme" / "registry.json"
    registry_path.parent.mkdir(parents=True)
    registry_path.write_text("{not json", encoding="utf-8")

    with ReconciliationEngine(_config(tmp_path)) as engine:
        with caplog.at_level(logging.WARNING, logger="concordbank.engine"):
            run = engine.run("acme", MOVEMENTS, ENTRIES)

    pairs = {(s.movement_ids, s.entry_ids) for s in run.suggestions}
    assert pairs == {(("m1",), ("e1",)), (("m2",), ("e2",))}
    assert run.statistics.invalid_records == 1
    assert any(w.startswith("modèle ignoré") for w in run.statistics.warnings)
    assert "Registre indisponible" in caplog.text


def test_unreadable_prediction_log_keeps_learned_suggestion(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    config = _config(tmp_path, min_score=100, multiple_matching={"enabled": False})
    movement, entry = matching_pair(1)
    with ReconciliationEngine(config) as engine:
        fill_feedback(engine.feedback, "acme")
        assert engine.pipeline.train("acme").is_active
        predictions = tmp_path / "models" / "acme" / "predictions.csv"
        garbage = b"\x00\xff\xfe\x81\x9f binaire \xc3\x28"
        predictions.write_bytes(garbage)

        with caplog.at_level(logging.WARNING, logger="concordbank.ml.inference"):
            run = engine.run("acme", [movement], [entry])

        assert len(run.suggestions) == 1
        learned = run.suggestions[0]
        assert learned.kind is MatchKind.LEARNED
        assert learned.prediction_id is None
        assert "Journal des prédictions indisponible" in caplog.text
        engine.record_resolution("acme", learned.suggestion_id, "applied")
        assert predictions.read_bytes() == garbage


def test_failed_prediction_task_does_not_abort_run(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    with ReconciliationEngine(_config(tmp_path)) as engine:
        fill_feedback(engine.feedback, "acme")
        assert engine.pipeline.train("acme").is_active

        def failing_prediction(*args, **kwargs):
            raise FeedbackStoreError("disque plein")

        monkeypatch.setattr(engine.inference, "predict_best_match", failing_prediction)
        with caplog.at_level(logging.WARNING, logger="concordbank.engine"):
            run = engine.run("acme", MOVEMENTS, ENTRIES)

    assert {s.kind for s in run.suggestions} == {MatchKind.EXACT}
    assert len(run.suggestions) == 2
    assert run.statistics.warnings.count("prédiction abandonnée: disque plein") == 2
    assert "Prédiction abandonnée" in caplog.text


def test_close_run_forgets_run(engine: ReconciliationEngine) -> None:
    closed = engine.run("acme", MOVEMENTS, ENTRIES)
    kept = engine.run("acme", MOVEMENTS, ENTRIES)
    engine.close_run(closed.run_id)

    with pytest.raises(UnknownSuggestion):
        engine.get_run(closed.run_id)
    with pytest.raises(UnknownSuggestion):
        engine.record_resolution("acme", closed.suggestions[0].suggestion_id, "applied")
    with pytest.raises(UnknownSuggestion):
        engine.close_run(closed.run_id)

    assert engine.get_run(kept.run_id) is kept
    engine.record_resolution("acme", kept.suggestions[0].suggestion_id, "applied")
    assert kept.suggestions[0].status is SuggestionStatus.APPLIED
