"""I/O tableurs : relevés bancaires et grands livres (CSV, xlsx)."""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any

import pandas as pd

from concordbank.config import ColumnMapping, ConcordBankError

SUPPORTED_INPUT_EXTENSIONS = (".xlsx", ".csv")
CSV_DELIMITERS = [",", ";", "\t", "|"]


class TableFileError(ConcordBankError):
    """Erreur de chargement d'un tableau (fichier absent, feuille inexistante, format non supporté)."""


def _detect_csv_delimiter(path: Path, encoding: str) -> str | None:
    try:
        with path.open("r", encoding=encoding, errors="replace") as f:
            sample_lines: list[str] = []
            for line in f:
                if line.strip() == "":
                    continue
                sample_lines.append(line)
                if len(sample_lines) >= 5:
                    break
    except OSError:
        return None
    if not sample_lines:
        return None
    try:
        return csv.Sniffer().sniff("".join(sample_lines), delimiters=CSV_DELIMITERS).delimiter
    except csv.Error:
        first = sample_lines[0]
        counts = {d: first.count(d) for d in CSV_DELIMITERS}
        best = max(counts, key=counts.get)
        return best if counts[best] > 0 else None


def _read_csv(path: Path) -> pd.DataFrame:
    for encoding in ("utf-8", "latin-1"):
        delimiter = _detect_csv_delimiter(path, encoding) or ","
        try:
            return pd.read_csv(path, dtype=str, encoding=encoding, sep=delimiter, keep_default_na=False)
        except UnicodeDecodeError:
            continue
        except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise TableFileError(f"Erreur CSV {path}: {e}. Vérifiez l'en-tête et le séparateur.") from e
    raise TableFileError(f"Encodage non reconnu: {path}")


def load_table(filepath: str | Path, sheet_name: str | None = None) -> pd.DataFrame:
    """
    Charge un tableau en préservant le texte (toutes les colonnes en str).

    Args:
        filepath: Fichier .csv ou .xlsx.
        sheet_name: Feuille xlsx (None = première). Ignoré pour CSV.

    Raises:
        TableFileError: Si le fichier est absent, illisible ou si la feuille n'existe pas.
    """
    path = Path(filepath)
    if not path.exists():
        raise TableFileError(f"Fichier introuvable: {path}")
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_INPUT_EXTENSIONS:
        raise TableFileError(f"Format non supporté: {suffix}. Valides: {list(SUPPORTED_INPUT_EXTENSIONS)}")

    if suffix == ".csv":
        return _read_csv(path)

    try:
        xl = pd.ExcelFile(path, engine="openpyxl")
    except Exception as e:
        raise TableFileError(f"Impossible de lire le fichier {path}: {e}") from e

    if sheet_name is None:
        sheet_name = str(xl.sheet_names[0])
    elif sheet_name not in xl.sheet_names:
        sheets = [str(s) for s in xl.sheet_names]
        raise TableFileError(f"Feuille '{sheet_name}' introuvable dans {path}. Feuilles: {', '.join(sheets)}")

    try:
        df = pd.read_excel(xl, sheet_name=sheet_name, dtype=str)
    except Exception as e:
        raise TableFileError(f"Erreur feuille '{sheet_name}' dans {path}: {e}") from e
    return df.fillna("")


def frame_to_records(df: pd.DataFrame, columns: ColumnMapping) -> list[dict[str, Any]]:
    """
    Convertit un DataFrame en enregistrements {id, amount, date, description, reference}.

    Les colonnes description et reference sont optionnelles ; id, amount et
    date doivent exister.
    """
    missing = [c for c in (columns.id, columns.amount, columns.date) if c not in df.columns]
    if missing:
        raise TableFileError(f"Colonnes absentes: {', '.join(missing)}. Disponibles: {list(df.columns)}")

    renames = {
        columns.id: "id",
        columns.amount: "amount",
        columns.date: "date",
        columns.description: "description",
        columns.reference: "reference",
    }
    present = {src: dst for src, dst in renames.items() if src in df.columns}
    return df[list(present)].rename(columns=present).to_dict(orient="records")


def save_xlsx(filepath: str | Path, dataframes: dict[str, pd.DataFrame], *, index: bool = False) -> None:
    """Sauvegarde plusieurs DataFrames dans un xlsx (une feuille par DataFrame)."""
    with pd.ExcelWriter(filepath, engine="openpyxl") as writer:
        for sheet_name, df in dataframes.items():
            # Excel limite les noms de feuille à 31 caractères
            df.to_excel(writer, sheet_name=str(sheet_name)[:31], index=index)
