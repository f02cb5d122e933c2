"""Command line interface for running sync batches against a JSON entity store."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .canonical import Canonicalizer
from .config import EngineConfig, load_configuration
from .factory import build_providers
from .ingestion import export_audit, export_entities
from .merge import MergeEngine
from .models import Stage, SyncCursor
from .orchestrator import SyncOrchestrator
from .providers import FileProvider
from .sinks import ListAuditSink, ListSuppressionSink
from .store import InMemoryEntityStore


def build_parser(prog: Optional[str] = None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Resolve, merge, and promote provider records into Leads, Prospects, and Opportunities",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync = subparsers.add_parser("sync", help="Run one sync batch")
    sync.add_argument("inputs", nargs="*", help="Provider export files (CSV or XLSX)")
    sync.add_argument("--config", help="Path to the engine configuration file (YAML or JSON)")
    sync.add_argument("--store", required=True, help="Path to the JSON entity store (created if missing)")
    sync.add_argument("--provider", help="Provider name for the input files (defaults to each file's stem)")
    sync.add_argument("--confidence", type=int, default=50, help="Source confidence for the input files (0-100)")
    sync.add_argument("--cursor", help="Path to a JSON checkpoint file read before and written after the run")
    sync.add_argument("--audit", help="Write this batch's audit trail to a CSV or XLSX file")
    sync.add_argument("--promote", action="store_true", help="Promote eligible leads and prospects after merging")
    sync.add_argument(
        "--mode",
        choices=["sequential", "concurrent"],
        default="sequential",
        help="Whether to resolve records sequentially or concurrently",
    )
    sync.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Maximum number of workers to use in concurrent mode",
    )
    _add_log_level(sync)

    export = subparsers.add_parser("export", help="Export entities from the store")
    export.add_argument("output", help="Destination CSV or XLSX file")
    export.add_argument("--store", required=True, help="Path to the JSON entity store")
    export.add_argument("--config", help="Path to the engine configuration file (YAML or JSON)")
    export.add_argument("--stage", choices=[stage.value for stage in Stage], help="Only export this stage")
    export.add_argument("--include-sources", action="store_true", help="Add the provider of every field")
    _add_log_level(export)
    return parser


def _add_log_level(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (e.g. DEBUG, INFO, WARNING)",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    raw_config: Dict[str, Any] = load_configuration(args.config) if args.config else {}
    engine_config = EngineConfig.from_mapping(raw_config)
    store = InMemoryEntityStore.load_json(
        args.store,
        canonicalizer=Canonicalizer(engine_config.canonicalization),
        merge_engine=MergeEngine(engine_config.policy, engine_config.workflow),
    )

    if args.command == "export":
        return _export(args, store)
    return _sync(args, raw_config, engine_config, store)


def _sync(
    args: argparse.Namespace,
    raw_config: Dict[str, Any],
    engine_config: EngineConfig,
    store: InMemoryEntityStore,
) -> int:
    providers: List[Any] = list(build_providers(raw_config))
    providers.extend(
        FileProvider(path, name=args.provider, confidence=args.confidence) for path in args.inputs
    )
    if not providers:
        logging.warning("No providers configured and no input files given - nothing to do")
        return 0

    audit_sink = ListAuditSink()
    orchestrator = SyncOrchestrator(
        store,
        config=engine_config,
        audit_sink=audit_sink,
        suppression_sink=ListSuppressionSink(),
        concurrent=args.mode == "concurrent",
        max_workers=args.max_workers,
    )

    cursor = _read_cursor(args.cursor)
    report = orchestrator.run(providers, cursor)
    summary: Dict[str, Any] = report.summary()

    if args.promote:
        promotion = orchestrator.advance_eligible()
        summary.update(
            promoted=len(promotion.promoted),
            promotion_blocked=len(promotion.blocked),
            promotion_held=len(promotion.held),
        )

    store.dump_json(args.store)
    if args.cursor:
        _write_cursor(args.cursor, report.cursor)
    if args.audit:
        export_audit(audit_sink.entries, args.audit)
        logging.info("Audit trail written to %s", Path(args.audit).resolve())

    for key, value in summary.items():
        print(f"{key}: {value}")
    logging.info("Entity store saved to %s", Path(args.store).resolve())
    return 0


def _export(args: argparse.Namespace, store: InMemoryEntityStore) -> int:
    entities = store.entities(stage=Stage(args.stage) if args.stage else None)
    export_entities(entities, args.output, include_sources=args.include_sources)
    logging.info("Exported %s entities to %s", len(entities), Path(args.output).resolve())
    return 0


def _read_cursor(path: Optional[str]) -> SyncCursor:
    if not path or not Path(path).exists():
        return SyncCursor()
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    stamp = data.get("last_retrieved_at")
    return SyncCursor(last_retrieved_at=datetime.fromisoformat(stamp) if stamp else None)


def _write_cursor(path: str, cursor: SyncCursor) -> None:
    stamp = cursor.last_retrieved_at.isoformat() if cursor.last_retrieved_at else None
    Path(path).write_text(json.dumps({"last_retrieved_at": stamp}), encoding="utf-8")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
