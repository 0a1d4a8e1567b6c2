"""Génération du rapport : onglet REPORT, liste des suggestions et mapping.csv."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pandas as pd

from concordbank import __version__
from concordbank.config import Config
from concordbank.matching.schema import MatchRun

SUGGESTION_COLUMNS = ["suggestion_id", "movement_ids", "entry_ids", "score", "level", "kind", "status", "reason"]


def build_report_df(run: MatchRun, config: Config) -> pd.DataFrame:
    """
    Construit le DataFrame pour l'onglet REPORT.

    Contient : volumes, répartition par niveau et par type, montants non
    expliqués, avertissements, paramètres, horodatage, version.
    """
    stats = run.statistics
    rows: list[tuple[str, object]] = [
        ("Metric", "Value"),
        ("run_id", run.run_id),
        ("tenant_id", run.tenant_id),
        ("nb_movements", stats.nb_movements),
        ("nb_entries", stats.nb_entries),
        ("nb_suggestions", len(run.suggestions)),
        ("nb_pending", len(run.pending())),
        ("unmatched_movements", stats.unmatched_movements),
        ("unmatched_entries", stats.unmatched_entries),
        ("unexplained_movements_amount", str(stats.unexplained_movements_amount)),
        ("unexplained_entries_amount", str(stats.unexplained_entries_amount)),
        ("residual_imbalance", str(stats.residual_imbalance)),
        ("invalid_records", stats.invalid_records),
        ("truncated", stats.truncated),
        ("elapsed_seconds", round(stats.elapsed_seconds, 3)),
        ("", ""),
        ("By level", ""),
    ]
    rows.extend((f"level_{k}", v) for k, v in sorted(stats.by_level.items()))
    rows.append(("By kind", ""))
    rows.extend((f"kind_{k}", v) for k, v in sorted(stats.by_kind.items()))
    rows.extend(
        [
            ("", ""),
            ("Parameters", ""),
            ("min_score", config.min_score),
            ("auto_approve_threshold", config.auto_approve_threshold),
            ("low_match_days", config.date_thresholds.low_match_days),
            ("multiple_matching", config.multiple_matching.enabled),
            ("text_similarity", config.text_similarity.algorithm),
            ("ml_enabled", config.ml.enabled),
        ]
    )
    if stats.warnings:
        rows.append(("", ""))
        rows.append(("Warnings", ""))
        rows.extend((f"warning_{i}", w) for i, w in enumerate(stats.warnings))
    rows.extend(
        [
            ("", ""),
            ("timestamp", datetime.now().isoformat()),
            ("version", __version__),
        ]
    )
    return pd.DataFrame(rows, columns=["Key", "Value"])


def build_suggestions_df(run: MatchRun) -> pd.DataFrame:
    """Une ligne par suggestion, dans l'ordre de classement."""
    rows = [
        {
            "suggestion_id": s.suggestion_id,
            "movement_ids": ";".join(s.movement_ids),
            "entry_ids": ";".join(s.entry_ids),
            "score": round(s.score, 2),
            "level": s.level.value,
            "kind": s.kind.value,
            "status": s.status.value,
            "reason": s.reason,
        }
        for s in run.suggestions
    ]
    return pd.DataFrame(rows, columns=SUGGESTION_COLUMNS)


def build_mapping_csv(run: MatchRun, output_path: str | Path) -> None:
    """Génère mapping.csv avec une ligne par couple (mouvement, écriture) suggéré."""
    rows = []
    for s in run.suggestions:
        for movement_id in s.movement_ids:
            for entry_id in s.entry_ids:
                rows.append(
                    {
                        "movement_id": movement_id,
                        "entry_id": entry_id,
                        "suggestion_id": s.suggestion_id,
                        "score": round(s.score, 2),
                        "kind": s.kind.value,
                        "status": s.status.value,
                    }
                )
    df = pd.DataFrame(rows, columns=["movement_id", "entry_id", "suggestion_id", "score", "kind", "status"])
    df.to_csv(output_path, index=False, encoding="utf-8")


def print_report_console(run: MatchRun, config: Config) -> None:
    """Affiche un résumé du rapport en console."""
    stats = run.statistics
    print("\n=== ConcordBank Report ===")
    print(f"  Tenant:               {run.tenant_id}")
    print(f"  Mouvements:           {stats.nb_movements}")
    print(f"  Écritures:            {stats.nb_entries}")
    print(f"  Suggestions:          {len(run.suggestions)}")
    for kind, n in sorted(stats.by_kind.items()):
        print(f"    {kind:<18}  {n}")
    auto = len(run.auto_approvable(config.auto_approve_threshold))
    print(f"  Auto-applicables:     {auto}")
    print(f"  Mouvements seuls:     {stats.unmatched_movements}")
    print(f"  Écritures seules:     {stats.unmatched_entries}")
    print(f"  Écart résiduel:       {stats.residual_imbalance}")
    print(f"  Rejetés (invalides):  {stats.invalid_records}")
    if stats.truncated:
        print("  Résultat tronqué (délai ou plafond atteint)")
    print(f"  Version:              {__version__}")
    print(f"  Timestamp:            {datetime.now().isoformat()}")
    print("==========================\n")
