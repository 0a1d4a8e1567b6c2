"""Tests des cas d'erreur."""

import sys
from pathlib import Path

import pandas as pd
import pytest

from concordbank import ConcordBankError, TableFileError
from concordbank.config import Config, ConfigError, ConfigFileError
from concordbank.io_tables import load_table
from concordbank.matching.budget import CombinatorialBudgetExceeded, TimeoutExceeded
from concordbank.matching.schema import InvalidCandidate, SuggestionStateError
from concordbank.ml.store import ArtifactStoreError, ModelLoadError


def test_error_hierarchy() -> None:
    """Toutes les erreurs métier dérivent de ConcordBankError."""
    for exc in (
        ConfigError,
        ConfigFileError,
        TableFileError,
        InvalidCandidate,
        SuggestionStateError,
        TimeoutExceeded,
        CombinatorialBudgetExceeded,
        ModelLoadError,
        ArtifactStoreError,
    ):
        assert issubclass(exc, ConcordBankError)
    assert issubclass(ConfigError, ValueError)


def test_config_load_file_not_found(tmp_path: Path) -> None:
    """Config.load() lève ConfigFileError si le fichier n'existe pas."""
    with pytest.raises(ConfigFileError, match="introuvable"):
        Config.load(tmp_path / "inexistant.json")


def test_config_load_invalid_json(tmp_path: Path) -> None:
    """Config.load() lève ConfigFileError si le JSON est invalide."""
    bad_json = tmp_path / "config.json"
    bad_json.write_text("{ invalid json }", encoding="utf-8")
    with pytest.raises(ConfigFileError, match="JSON invalide"):
        Config.load(bad_json)


def test_config_load_not_dict(tmp_path: Path) -> None:
    """Config.load() lève ConfigFileError si le JSON n'est pas un objet."""
    bad_config = tmp_path / "config.json"
    bad_config.write_text("[1, 2, 3]", encoding="utf-8")
    with pytest.raises(ConfigFileError, match="objet JSON"):
        Config.load(bad_config)


def test_load_table_file_not_found(tmp_path: Path) -> None:
    with pytest.raises(TableFileError, match="introuvable"):
        load_table(tmp_path / "inexistant.xlsx")


def test_load_table_missing_sheet(tmp_path: Path) -> None:
    """load_table() lève TableFileError si la feuille n'existe pas."""
    xlsx = tmp_path / "releve.xlsx"
    pd.DataFrame({"a": [1]}).to_excel(xlsx, sheet_name="Feuille1", index=False, engine="openpyxl")
    with pytest.raises(TableFileError, match="Feuille 'Inexistante' introuvable"):
        load_table(xlsx, sheet_name="Inexistante")


def test_load_table_unsupported_format(tmp_path: Path) -> None:
    path = tmp_path / "releve.txt"
    path.write_text("a", encoding="utf-8")
    with pytest.raises(TableFileError, match="Format non supporté"):
        load_table(path)


def test_cli_config_error_exit_code() -> None:
    """La CLI retourne 1 et affiche un message en cas d'erreur."""
    from concordbank.cli import main

    old_argv = sys.argv
    try:
        sys.argv = [
            "concordbank",
            "run",
            "--config",
            "/chemin/inexistant.json",
            "--movements",
            "bank.csv",
            "--entries",
            "ledger.csv",
            "--dry-run",
        ]
        exit_code = main()
        assert exit_code == 1
    finally:
        sys.argv = old_argv
