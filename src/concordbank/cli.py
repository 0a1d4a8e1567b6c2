"""Interface en ligne de commande ConcordBank."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from concordbank import __version__
from concordbank.config import ConcordBankError, Config
from concordbank.engine import ReconciliationEngine
from concordbank.io_tables import frame_to_records, load_table, save_xlsx
from concordbank.ml.registry import TrainedModel
from concordbank.report import build_mapping_csv, build_report_df, build_suggestions_df, print_report_console

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def cmd_run(
    config_path: str,
    tenant_id: str,
    movements_path: str,
    entries_path: str,
    output_path: str | None,
    *,
    mapping_path: str | None = None,
    auto_apply: bool = False,
    dry_run: bool = False,
) -> int:
    """Rapproche un relevé bancaire et un grand livre."""
    config = Config.load(config_path)
    movements = frame_to_records(load_table(movements_path), config.movement_columns)
    entries = frame_to_records(load_table(entries_path), config.entry_columns)

    with ReconciliationEngine(config) as engine:
        run = engine.run(tenant_id, movements, entries, auto_apply=auto_apply)

    # --mapping prime s'il est fourni
    map_path = (
        Path(mapping_path)
        if mapping_path
        else (Path(output_path).parent / "mapping.csv" if output_path else Path(config_path).parent / "mapping.csv")
    )
    build_mapping_csv(run, map_path)
    print(f"Mapping écrit: {map_path}")

    print_report_console(run, config)

    if dry_run:
        print("Mode dry-run: pas d'écriture du fichier de sortie.")
        return 0

    if not output_path:
        print("Erreur: --output requis en mode non dry-run.")
        return 1

    save_xlsx(output_path, {"Suggestions": build_suggestions_df(run), "REPORT": build_report_df(run, config)})
    print(f"Fichier de sortie: {output_path}")
    return 0


def cmd_train(config_path: str, tenant_id: str, *, force: bool = False) -> int:
    config = Config.load(config_path)
    with ReconciliationEngine(config) as engine:
        result = engine.orchestrator.train(tenant_id, force=force)
    if result is None:
        print(f"Aucun entraînement lancé pour {tenant_id}.")
    elif isinstance(result, TrainedModel):
        state = "actif" if result.is_active else "non promu"
        print(f"Modèle {result.version} ({state}) accuracy={result.accuracy:.3f} f1={result.f1:.3f}")
    else:
        print(f"Entraînement ignoré: {result.reason.value} ({result.detail})")
    return 0


def cmd_monitor(config_path: str, tenant_id: str) -> int:
    config = Config.load(config_path)
    with ReconciliationEngine(config) as engine:
        stats = engine.orchestrator.monitor(tenant_id)
    if stats is None:
        print(f"Aucun modèle actif pour {tenant_id}.")
        return 0
    print(f"\n=== Modèle {stats.tenant_id} / {stats.version} ===")
    print(f"  Accuracy enregistrée: {stats.recorded_accuracy:.3f}")
    if stats.real_world_accuracy is not None:
        print(f"  Accuracy réelle:      {stats.real_world_accuracy:.3f} (dérive {stats.drift:.3f})")
    if stats.average_latency_ms is not None:
        print(f"  Latence moyenne:      {stats.average_latency_ms:.1f} ms")
    print(f"  Prédictions:          {stats.prediction_count}")
    print(f"  Âge:                  {stats.age_days} j")
    print(f"  Réentraînement:       {'oui' if stats.needs_retraining else 'non'}")
    return 0


def cmd_cleanup(config_path: str, tenant_id: str) -> int:
    config = Config.load(config_path)
    with ReconciliationEngine(config) as engine:
        deleted = engine.orchestrator.cleanup(tenant_id)
    print(f"{len(deleted)} artefact(s) supprimé(s) pour {tenant_id}.")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="concordbank",
        description="Rapprochement bancaire : suggestions heuristiques et apprises",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Journalisation détaillée (DEBUG)")

    subparsers = parser.add_subparsers(dest="command", help="Commandes")

    def _common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", "-c", required=True, help="Fichier config JSON")
        p.add_argument("--tenant", "-t", default="default", help="Identifiant du tenant")

    # run
    p_run = subparsers.add_parser("run", help="Rapprocher mouvements et écritures")
    _common(p_run)
    p_run.add_argument("--movements", required=True, help="Relevé bancaire (csv, xlsx)")
    p_run.add_argument("--entries", required=True, help="Écritures comptables (csv, xlsx)")
    p_run.add_argument("--output", "-o", help="Fichier xlsx de sortie")
    p_run.add_argument("--mapping", "-m", help="Chemin pour mapping.csv")
    p_run.add_argument("--auto-apply", action="store_true", help="Appliquer les suggestions au-dessus du seuil")
    p_run.add_argument("--dry-run", action="store_true", help="Ne pas écrire le fichier de sortie")

    # train
    p_train = subparsers.add_parser("train", help="Entraîner le modèle du tenant")
    _common(p_train)
    p_train.add_argument("--force", action="store_true", help="Entraîner même si le modèle est à jour")

    # monitor / cleanup
    _common(subparsers.add_parser("monitor", help="Indicateurs du modèle actif"))
    _common(subparsers.add_parser("cleanup", help="Rétention des modèles et purge des exemples"))

    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)

    try:
        if args.command == "run":
            if not args.dry_run and not args.output:
                parser.error("--output requis sauf en --dry-run")
            return cmd_run(
                args.config,
                args.tenant,
                args.movements,
                args.entries,
                args.output,
                mapping_path=args.mapping,
                auto_apply=args.auto_apply,
                dry_run=args.dry_run,
            )
        if args.command == "train":
            return cmd_train(args.config, args.tenant, force=args.force)
        if args.command == "monitor":
            return cmd_monitor(args.config, args.tenant)
        if args.command == "cleanup":
            return cmd_cleanup(args.config, args.tenant)
    except ConcordBankError as e:
        print(f"Erreur: {e}")
        return 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
