# FinShadow - Command Line Entry Point
#
#   finshadow run                 start the scheduler and block
#   finshadow ingest [--force]    one ingestion run (--force polls every source)
#   finshadow score               one scoring run plus threat alerts
#   finshadow detect-spikes       one baseline run plus spike alerts
#   finshadow stats               store counts and source registry

import argparse
import json
import logging
import signal
import sys
import threading

from . import __version__
from .core import AuditLog, Settings, load_settings
from .intel.alerts import AlertEmitter
from .intel.baseline import BaselineTracker, default_metrics
from .intel.fetcher import FeedFetcher
from .intel.ingestion import IngestionOrchestrator
from .intel.risk_scorer import RiskScorer
from .intel.scheduler import (
    STAGE_INGESTION,
    STAGE_SCORING,
    STAGE_SPIKES,
    PipelineScheduler,
)
from .intel.sources import SourceConfigError, load_sources
from .intel.store import IntelStore, PersistenceError

logger = logging.getLogger("finshadow")


def build_pipeline(settings: Settings) -> PipelineScheduler:
    """Wire the store, stages and scheduler from settings."""
    registry = load_sources(settings.sources_file)
    store = IntelStore(settings.db_path)
    audit = AuditLog(settings.audit_log)

    orchestrator = IngestionOrchestrator(
        registry,
        store,
        fetcher=FeedFetcher(timeout_seconds=settings.fetch_timeout_seconds),
        audit=audit,
        max_workers=settings.max_workers,
        keywords=settings.domain_keywords,
    )
    scorer = RiskScorer(
        store,
        window_days=settings.scoring_window_days,
        keywords=settings.domain_keywords,
        audit=audit,
    )
    tracker = BaselineTracker(store, default_metrics(settings.domain_keywords), audit=audit)
    emitter = AlertEmitter(store, audit=audit)
    return PipelineScheduler(settings, orchestrator, scorer, tracker, emitter)


def _print(data) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="finshadow",
        description="FinShadow - threat intelligence ingestion and risk scoring",
    )
    parser.add_argument("--env-file", help="dotenv file to load before reading settings")
    parser.add_argument("--sources", help="JSON feed source list (overrides FINSHADOW_SOURCES_FILE)")
    parser.add_argument("--db", help="SQLite database path (overrides FINSHADOW_DB_PATH)")
    parser.add_argument(
        "--version", action="version", version=f"FinShadow v{__version__}"
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Start the background scheduler and block")
    ingest = sub.add_parser("ingest", help="Run one ingestion cycle")
    ingest.add_argument("--force", action="store_true", help="Poll every source, due or not")
    sub.add_parser("score", help="Score recent records and emit alerts")
    sub.add_parser("detect-spikes", help="Recalculate baselines and emit spike alerts")
    sub.add_parser("stats", help="Show store statistics")

    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.env_file)
    except ValueError as exc:
        parser.error(str(exc))
    if args.sources:
        settings.sources_file = args.sources
    if args.db:
        settings.db_path = args.db

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        pipeline = build_pipeline(settings)
    except (SourceConfigError, PersistenceError) as exc:
        logger.error("Startup failed: %s", exc)
        return 2

    try:
        if args.command == "run":
            stop = threading.Event()
            signal.signal(signal.SIGINT, lambda *_: stop.set())
            signal.signal(signal.SIGTERM, lambda *_: stop.set())
            pipeline.start()
            stop.wait()
            pipeline.stop()
        elif args.command == "ingest":
            report = pipeline.run_stage(STAGE_INGESTION, force=args.force)
            _print(report.to_dict())
            return 1 if report.aborted else 0
        elif args.command == "score":
            _print(pipeline.run_stage(STAGE_SCORING))
        elif args.command == "detect-spikes":
            _print(pipeline.run_stage(STAGE_SPIKES))
        elif args.command == "stats":
            _print({
                "store": pipeline.scorer.store.stats(),
                "sources": [s.to_dict() for s in pipeline.orchestrator.registry],
                "settings_from_env": settings.loaded_from,
            })
    except PersistenceError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        pipeline.scorer.store.close()
        pipeline.orchestrator.audit.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
